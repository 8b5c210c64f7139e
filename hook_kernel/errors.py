"""
Error taxonomy for the Hook Kernel.

Only the aggregate Decision crosses the Execution Engine boundary. Rule
faults are raised and caught internally so they can be logged with context;
persistence faults are raised only where the caller must keep in-memory
state consistent (parameter writes).

Skipped optimizations (insufficient sample, active cooldown) are routine
outcomes and are reported as SkipReason values, not exceptions.
"""

from enum import Enum
from typing import Optional


class HookKernelError(Exception):
    """Base class for kernel errors."""
    pass


class RuleTimeout(HookKernelError):
    """A rule did not finish within its timeout parameter."""

    def __init__(self, rule: str, action_id: str, timeout_ms: float):
        self.rule = rule
        self.action_id = action_id
        self.timeout_ms = timeout_ms
        super().__init__(
            f"RuleTimeout: rule {rule} exceeded {timeout_ms:.0f}ms on action {action_id}"
        )


class RuleExecutionError(HookKernelError):
    """A rule raised or returned something that is not a verdict."""

    def __init__(self, rule: str, action_id: str, cause: Optional[BaseException] = None, detail: str = ""):
        self.rule = rule
        self.action_id = action_id
        self.cause = cause
        reason = detail or (f"{type(cause).__name__}: {cause}" if cause else "unknown error")
        super().__init__(f"RuleExecutionError: rule {rule} on action {action_id}: {reason}")


class PersistenceWriteError(HookKernelError):
    """A write to the Learning Store failed."""
    pass


class InvalidTransition(HookKernelError):
    """An optimization proposal was moved along an edge the lifecycle does not allow."""
    pass


class UnknownABTest(HookKernelError):
    pass


class ABTestConflict(HookKernelError):
    """An A/B test is already running for the parameter."""
    pass


class SkipReason(str, Enum):
    INSUFFICIENT_SAMPLE = "insufficient_sample"
    COOLDOWN_ACTIVE = "cooldown_active"
    BELOW_NOISE_THRESHOLD = "below_noise_threshold"
    NO_CHANGE = "no_change"
    NO_BASELINE = "no_baseline"
