"""Parameters, their change history, and optimization proposals."""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Union

from pydantic import BaseModel, Field

ParameterValue = Union[int, float, str]


def parameter_key(rule: str, parameter: str) -> str:
    """Fully qualified parameter name, e.g. ``no-secrets.timeout``."""
    return f"{rule}.{parameter}"


def split_parameter_key(name: str) -> tuple:
    rule, _, parameter = name.rpartition(".")
    return rule, parameter


class ProposalStatus(str, Enum):
    PROPOSED = "proposed"
    APPLIED = "applied"
    MONITORING = "monitoring"
    ACCEPTED = "accepted"
    ROLLED_BACK = "rolled_back"
    SUPERSEDED = "superseded"              # Replaced by a newer change before resolution


class ParameterChange(BaseModel):
    """One row of the versioned parameter history."""

    name: str
    old_value: Optional[ParameterValue] = None
    new_value: ParameterValue
    reason: str                             # e.g. "execution_time_optimization", "rollback"
    confidence: float = 1.0
    proposal_id: Optional[str] = None
    ts: datetime


class MetricsSnapshot(BaseModel):
    """Rolling performance of a rule at a point in time."""

    success_rate: float = 0.0
    error_rate: float = 0.0
    avg_latency_ms: float = 0.0
    executions: int = 0
    captured_at: Optional[datetime] = None


class OptimizationProposal(BaseModel):
    """A candidate parameter change with its supporting evidence."""

    id: str
    rule: str
    parameter: str                          # Short name, e.g. "timeout"
    old_value: Optional[ParameterValue] = None
    new_value: ParameterValue
    confidence: float = Field(ge=0.0, le=1.0)
    reason: str
    stats: dict = {}
    target_pattern: Optional[str] = None
    status: ProposalStatus = ProposalStatus.PROPOSED
    baseline: Optional[MetricsSnapshot] = None
    created_at: datetime
    applied_at: Optional[datetime] = None
    checkpoints: int = 0                    # Monitor checks with enough samples
    superseded_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_detail: Dict[str, float] = {}

    @property
    def name(self) -> str:
        return parameter_key(self.rule, self.parameter)


class OptimizationResult(BaseModel):
    """Terminal outcome of a monitored proposal."""

    proposal_id: str
    rule: str
    parameter: str
    status: ProposalStatus
    success_rate_before: Optional[float] = None
    success_rate_after: Optional[float] = None
    detail: dict = {}
    ts: datetime
