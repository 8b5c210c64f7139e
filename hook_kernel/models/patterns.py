"""Pattern statistics: how well a rule's patterns separate good from bad actions."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class PatternType(str, Enum):
    FILE = "file_pattern"                   # Path / extension based
    CONTENT = "content_pattern"             # Payload based
    ARCHITECTURAL = "architectural_pattern"
    TIME = "time_pattern"                   # Hour of day / weekday


class PatternDelta(BaseModel):
    """Increments applied to a PatternStat in one upsert."""

    tp: int = Field(ge=0, default=0)
    fp: int = Field(ge=0, default=0)
    tn: int = Field(ge=0, default=0)
    fn: int = Field(ge=0, default=0)

    @classmethod
    def from_feedback(cls, predicted_block: bool, should_block: bool) -> "PatternDelta":
        """Classify a single verdict against ground truth."""
        if predicted_block and should_block:
            return cls(tp=1)
        if predicted_block:
            return cls(fp=1)
        if should_block:
            return cls(fn=1)
        return cls(tn=1)


class PatternStat(BaseModel):
    """Aggregate counters per (rule, pattern type, pattern key). Never recomputed."""

    rule: str
    pattern_type: PatternType
    pattern_key: str
    tp: int = 0
    fp: int = 0
    tn: int = 0
    fn: int = 0
    updated_at: Optional[datetime] = None

    @property
    def total(self) -> int:
        return self.tp + self.fp + self.tn + self.fn


class PatternEffectiveness(BaseModel):
    """Derived metrics for one PatternStat. Zero denominators yield 0."""

    precision: float
    recall: float
    f1_score: float
    accuracy: float
    false_positive_rate: float
    false_negative_rate: float
    confidence: float
    total: int
