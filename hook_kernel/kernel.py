"""
Hook Kernel: wires the Learning Store, Parameter Store, Execution Engine,
Tuner, Scheduler and Chain Analyzer into one process-local object.
"""

import logging
import random
from typing import Any, Optional

from hook_kernel.analysis.chain import ChainAnalyzer
from hook_kernel.engine.executor import ExecutionEngine
from hook_kernel.engine.registry import RuleRegistry
from hook_kernel.learning.recorder import AsyncRecorder
from hook_kernel.learning.store import LearningStore
from hook_kernel.models.action import Action, Decision
from hook_kernel.models.config import KernelConfig
from hook_kernel.tuning.ab_testing import ABTestManager
from hook_kernel.tuning.monitor import ChangeMonitor
from hook_kernel.tuning.parameters import ParameterStore
from hook_kernel.tuning.scheduler import TuningScheduler
from hook_kernel.tuning.tuner import AdaptiveTuner

logger = logging.getLogger(__name__)


class HookKernel:
    def __init__(
        self,
        config: Optional[KernelConfig] = None,
        registry: Optional[RuleRegistry] = None,
        store: Optional[LearningStore] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or KernelConfig()
        self.registry = registry or RuleRegistry()
        self.store = store or LearningStore(self.config.store.db_path)

        self.parameters = ParameterStore(self.store)
        self.parameters.hydrate()
        self.ab_tests = ABTestManager(self.config.tuner, rng=rng)
        self.recorder = AsyncRecorder(self.store, max_queue=self.config.store.recorder_queue_size)
        self.engine = ExecutionEngine(
            self.registry,
            self.parameters,
            store=self.store,
            recorder=self.recorder,
            ab_tests=self.ab_tests,
            config=self.config.engine,
        )
        self.engine.seed_parameters()
        self.monitor = ChangeMonitor(self.store, self.parameters, self.config.tuner)
        self.monitor.hydrate()
        self.tuner = AdaptiveTuner(
            self.store,
            self.parameters,
            self.ab_tests,
            self.monitor,
            config=self.config.tuner,
            registry=self.registry,
            default_timeout_ms=self.config.engine.default_timeout_ms,
        )
        self.scheduler = TuningScheduler(
            self.tuner,
            self.store,
            self.config.tuner,
            retention_days=self.config.store.retention_days,
        )
        self.chain = ChainAnalyzer(self.registry, self.store)

    def register_rule(self, rule: Any) -> Any:
        """Register a rule and seed its default parameters."""
        self.registry.register(rule)
        self.parameters.register_defaults(rule.name, self.engine.default_parameters(rule))
        return rule

    def discover_rules(self) -> int:
        loaded = self.registry.discover()
        self.engine.seed_parameters()
        return len(loaded)

    def submit(self, action: Action) -> Decision:
        return self.engine.submit(action)

    async def submit_async(self, action: Action) -> Decision:
        return await self.engine.submit_async(action)

    def close(self) -> None:
        self.engine.shutdown()
        self.store.close()
