"""Execution Record: one durable log entry per (rule, action)."""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel


class ExecutionOutcome(str, Enum):
    ALLOW = "allow"
    WARN = "warn"
    BLOCK = "block"
    ERROR = "error"                         # Rule raised; fail policy decided the verdict


class ExecutionRecord(BaseModel):
    """Append-only. Exactly one per rule per submitted action."""

    rule: str
    category: str
    action_id: str
    action_hash: str
    outcome: ExecutionOutcome
    latency_ms: float
    timed_out: bool = False
    error: Optional[str] = None
    pattern_key: Optional[str] = None
    ts: datetime

    @property
    def success(self) -> bool:
        """A clean run that did not block the action."""
        return self.error is None and self.outcome != ExecutionOutcome.BLOCK


class RuleMetrics(BaseModel):
    executions: int = 0
    successes: int = 0
    errors: int = 0
    timeouts: int = 0
    blocks: int = 0
    success_rate: float = 0.0
    error_rate: float = 0.0
    avg_latency_ms: float = 0.0


class SystemMetrics(RuleMetrics):
    """Aggregate over a trailing window, with a per-rule breakdown."""

    block_rate: float = 0.0
    window_seconds: float
    since: datetime
    per_rule: Dict[str, RuleMetrics] = {}
