"""Hook Kernel data models."""

from hook_kernel.models.ab_test import ABTest, ABTestResult, ArmMetrics
from hook_kernel.models.action import (
    Action,
    Decision,
    RuleReport,
    RuleResult,
    Verdict,
)
from hook_kernel.models.chain import (
    ChainReport,
    ChainStatistics,
    DependencyReport,
    RuleEntry,
    RuleUsage,
)
from hook_kernel.models.config import (
    EngineConfig,
    FailurePolicy,
    KernelConfig,
    StoreConfig,
    TunerConfig,
)
from hook_kernel.models.execution import (
    ExecutionOutcome,
    ExecutionRecord,
    RuleMetrics,
    SystemMetrics,
)
from hook_kernel.models.parameters import (
    MetricsSnapshot,
    OptimizationProposal,
    OptimizationResult,
    ParameterChange,
    ProposalStatus,
    parameter_key,
)
from hook_kernel.models.patterns import (
    PatternDelta,
    PatternEffectiveness,
    PatternStat,
    PatternType,
)

__all__ = [
    "ABTest",
    "ABTestResult",
    "Action",
    "ArmMetrics",
    "ChainReport",
    "ChainStatistics",
    "Decision",
    "DependencyReport",
    "EngineConfig",
    "ExecutionOutcome",
    "ExecutionRecord",
    "FailurePolicy",
    "KernelConfig",
    "MetricsSnapshot",
    "OptimizationProposal",
    "OptimizationResult",
    "ParameterChange",
    "PatternDelta",
    "PatternEffectiveness",
    "PatternStat",
    "PatternType",
    "ProposalStatus",
    "RuleEntry",
    "RuleMetrics",
    "RuleReport",
    "RuleResult",
    "RuleUsage",
    "StoreConfig",
    "SystemMetrics",
    "TunerConfig",
    "Verdict",
    "parameter_key",
]
