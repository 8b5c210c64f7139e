"""
Execution Engine: runs every applicable rule against an Action and
aggregates their verdicts into one Decision.

Behavioral Contract:
- All applicable rules run concurrently, each under its own timeout parameter
- A rule that times out or raises never fails the submission; the configured
  FailurePolicy decides what it contributes (fail-open by default)
- Exactly one ExecutionRecord per applicable rule is queued for persistence,
  whatever the rule did; submit() never waits on the write
- A cancelled submission cancels its in-flight rules and records nothing
"""

import asyncio
import inspect
import logging
import math
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from hook_kernel.engine.registry import RuleRegistry
from hook_kernel.errors import RuleExecutionError, RuleTimeout
from hook_kernel.learning.recorder import AsyncRecorder
from hook_kernel.learning.store import LearningStore
from hook_kernel.models.action import (
    Action,
    Decision,
    RuleReport,
    RuleResult,
    Verdict,
    strongest,
)
from hook_kernel.models.config import EngineConfig, FailurePolicy
from hook_kernel.models.execution import ExecutionOutcome, ExecutionRecord
from hook_kernel.models.patterns import PatternDelta, PatternType
from hook_kernel.timeutils import utcnow
from hook_kernel.tuning.ab_testing import ABTestManager
from hook_kernel.tuning.parameters import ParameterStore

logger = logging.getLogger(__name__)


class _Evaluation:
    """Outcome of one rule on one action, before persistence."""

    def __init__(self, report: RuleReport, record: ExecutionRecord, assignments: List[Tuple[str, str]]):
        self.report = report
        self.record = record
        self.assignments = assignments


class ExecutionEngine:
    def __init__(
        self,
        registry: RuleRegistry,
        parameters: ParameterStore,
        store: Optional[LearningStore] = None,
        recorder: Optional[AsyncRecorder] = None,
        ab_tests: Optional[ABTestManager] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.registry = registry
        self.parameters = parameters
        self.config = config or EngineConfig()
        self.store = store if store is not None else (recorder.store if recorder else None)
        if recorder is None and self.store is not None:
            recorder = AsyncRecorder(self.store)
        self.recorder = recorder
        self.ab_tests = ab_tests
        self._pool = ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="hook-rule"
        )
        self._recent: "OrderedDict[str, Decision]" = OrderedDict()
        self._recent_lock = threading.Lock()

    # --- Parameters ---

    def default_parameters(self, rule: Any) -> Dict[str, Any]:
        defaults = {"timeout": self.config.default_timeout_ms}
        defaults.update(getattr(rule, "default_parameters", {}) or {})
        return defaults

    def seed_parameters(self) -> int:
        """Persist defaults for every registered rule parameter that has no value yet."""
        seeded = 0
        for rule in self.registry.all():
            seeded += len(self.parameters.register_defaults(rule.name, self.default_parameters(rule)))
        return seeded

    def _resolve_parameters(self, rule: Any) -> Tuple[Dict[str, Any], List[Tuple[str, str]]]:
        params = self.default_parameters(rule)
        params.update(self.parameters.for_rule(rule.name))
        if self.ab_tests is None:
            return params, []
        return self.ab_tests.resolve(rule.name, params)

    def _timeout_ms(self, rule: Any, params: Dict[str, Any]) -> float:
        """The rule's timeout parameter; unusable values fall back to the default."""
        raw = params.get("timeout")
        try:
            timeout_ms = float(raw)
        except (TypeError, ValueError):
            timeout_ms = 0.0
        if timeout_ms > 0 and math.isfinite(timeout_ms):
            return timeout_ms
        logger.warning(
            "Rule %s has unusable timeout %r; using %.0fms",
            rule.name, raw, self.config.default_timeout_ms,
        )
        return self.config.default_timeout_ms

    # --- Submission ---

    def submit(self, action: Action) -> Decision:
        """Validate an action synchronously. Must not be called from a running event loop."""
        return asyncio.run(self.submit_async(action))

    async def submit_async(self, action: Action) -> Decision:
        started = time.monotonic()
        category = action.effective_category
        rules = self.registry.rules_for(category)
        action_hash = action.context_hash()

        tasks = [
            asyncio.ensure_future(self._run_rule(rule, action, category, action_hash))
            for rule in rules
        ]
        try:
            evaluations: List[_Evaluation] = await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            logger.info("Submission of action %s cancelled; no records written", action.id)
            raise

        reports = [e.report for e in evaluations]
        messages = [r.message for r in reports if r.message]
        decision = Decision(
            action_id=action.id,
            outcome=strongest([r.outcome for r in reports]),
            messages=messages,
            rule_results=reports,
            duration_ms=round((time.monotonic() - started) * 1000, 3),
            decided_at=utcnow(),
        )

        for evaluation in evaluations:
            if self.recorder is not None:
                self.recorder.submit(evaluation.record)
            if self.ab_tests is not None:
                for test_id, arm in evaluation.assignments:
                    self.ab_tests.record(
                        test_id, arm, evaluation.record.success, evaluation.record.latency_ms
                    )
        self._remember(decision)

        logger.debug(
            "Action %s (%s): %s from %d rules in %.1fms",
            action.id, category, decision.outcome.value, len(rules), decision.duration_ms,
        )
        return decision

    async def _invoke(self, rule: Any, action: Action, params: Dict[str, Any]) -> Any:
        """
        Run the rule body. A TimeoutError or CancelledError raised by the rule
        itself is a rule error; only the engine's own timeout and a cancelled
        submission propagate.
        """
        try:
            if inspect.iscoroutinefunction(rule.evaluate):
                return await rule.evaluate(action, params)
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(self._pool, rule.evaluate, action, params)
            if inspect.isawaitable(result):
                result = await result
            return result
        except TimeoutError as e:
            raise RuleExecutionError(rule.name, action.id, cause=e) from e
        except asyncio.CancelledError as e:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            raise RuleExecutionError(rule.name, action.id, cause=e) from e

    def _coerce(self, rule: Any, action: Action, raw: Any) -> RuleResult:
        """Accept a RuleResult, a dict shaped like one, or a bare verdict."""
        try:
            if isinstance(raw, RuleResult):
                return raw
            if isinstance(raw, dict):
                return RuleResult.model_validate(raw)
            if isinstance(raw, (Verdict, str)):
                return RuleResult(outcome=Verdict(raw))
        except (ValidationError, ValueError) as e:
            raise RuleExecutionError(rule.name, action.id, cause=e) from e
        raise RuleExecutionError(
            rule.name, action.id, detail=f"returned {type(raw).__name__}, expected a RuleResult"
        )

    def _policy_verdict(self, policy: FailurePolicy) -> Verdict:
        return Verdict.ALLOW if policy == FailurePolicy.FAIL_OPEN else Verdict.BLOCK

    async def _run_rule(
        self,
        rule: Any,
        action: Action,
        category: str,
        action_hash: str,
    ) -> _Evaluation:
        try:
            params, assignments = self._resolve_parameters(rule)
        except Exception:
            logger.exception("Failed to resolve parameters of rule %s; using defaults", rule.name)
            params, assignments = self.default_parameters(rule), []
        timeout_ms = self._timeout_ms(rule, params)
        result: Optional[RuleResult] = None
        error: Optional[str] = None
        timed_out = False
        message: Optional[str] = None

        start = time.monotonic()
        try:
            raw = await asyncio.wait_for(
                self._invoke(rule, action, dict(params)), timeout=timeout_ms / 1000
            )
            result = self._coerce(rule, action, raw)
            verdict = result.outcome
            outcome = ExecutionOutcome(verdict.value)
            if verdict != Verdict.ALLOW:
                message = result.message or f"{rule.name}: {verdict.value}"
        except asyncio.TimeoutError:
            timed_out = True
            err = RuleTimeout(rule.name, action.id, timeout_ms)
            error = str(err)
            policy = self.config.timeout_policy
            verdict = self._policy_verdict(policy)
            outcome = ExecutionOutcome(verdict.value)
            message = f"{rule.name}: timed out after {timeout_ms:.0f}ms ({policy.value})"
            logger.warning("%s; %s", err, policy.value)
        except RuleExecutionError as err:
            error = str(err)
            policy = self.config.error_policy
            verdict = self._policy_verdict(policy)
            outcome = ExecutionOutcome.ERROR
            message = f"{rule.name}: rule error ({policy.value})"
            logger.error("%s; %s", err, policy.value)
        except Exception as e:
            err = RuleExecutionError(rule.name, action.id, cause=e)
            error = str(err)
            policy = self.config.error_policy
            verdict = self._policy_verdict(policy)
            outcome = ExecutionOutcome.ERROR
            message = f"{rule.name}: rule error ({policy.value})"
            logger.error("%s; %s", err, policy.value, exc_info=True)
        latency_ms = round((time.monotonic() - start) * 1000, 3)

        pattern_key = result.pattern_key if result else None
        pattern_type = result.pattern_type if result else None
        report = RuleReport(
            rule=rule.name,
            outcome=verdict,
            latency_ms=latency_ms,
            timed_out=timed_out,
            error=error,
            message=message,
            pattern_key=pattern_key,
            pattern_type=pattern_type,
        )
        record = ExecutionRecord(
            rule=rule.name,
            category=category,
            action_id=action.id,
            action_hash=action_hash,
            outcome=outcome,
            latency_ms=latency_ms,
            timed_out=timed_out,
            error=error,
            pattern_key=pattern_key,
            ts=utcnow(),
        )
        return _Evaluation(report, record, assignments)

    # --- Pattern feedback ---

    def _remember(self, decision: Decision) -> None:
        with self._recent_lock:
            self._recent[decision.action_id] = decision
            self._recent.move_to_end(decision.action_id)
            while len(self._recent) > self.config.feedback_cache_size:
                self._recent.popitem(last=False)

    def recent_decision(self, action_id: str) -> Optional[Decision]:
        with self._recent_lock:
            return self._recent.get(action_id)

    def report_feedback(self, action_id: str, should_block: bool) -> bool:
        """
        Ground truth for a past action: was blocking it correct?
        Every rule result that named a pattern is scored against it.
        Returns False when the action is no longer in the recent-decision cache.
        """
        with self._recent_lock:
            decision = self._recent.get(action_id)
            if decision is not None:
                self._recent.move_to_end(action_id)
        if decision is None:
            logger.debug("Feedback for unknown or evicted action %s ignored", action_id)
            return False
        if self.store is None:
            return False

        for report in decision.rule_results:
            if not report.pattern_key:
                continue
            try:
                pattern_type = PatternType(report.pattern_type or PatternType.CONTENT)
            except ValueError:
                logger.warning(
                    "Rule %s reported unknown pattern type %r; counted as %s",
                    report.rule, report.pattern_type, PatternType.CONTENT.value,
                )
                pattern_type = PatternType.CONTENT
            delta = PatternDelta.from_feedback(
                predicted_block=report.outcome == Verdict.BLOCK and not report.error,
                should_block=should_block,
            )
            self.store.record_pattern_outcome(report.rule, pattern_type, report.pattern_key, delta)
        return True

    def flush(self, timeout: Optional[float] = 5.0) -> bool:
        """Wait for queued execution records to reach the store."""
        if self.recorder is None:
            return True
        return self.recorder.flush(timeout)

    def shutdown(self) -> None:
        """Stop the worker pool without waiting for hung rules, then drain the recorder."""
        self._pool.shutdown(wait=False, cancel_futures=True)
        if self.recorder is not None:
            self.recorder.close()
