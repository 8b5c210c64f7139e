"""Action and Decision: what the interceptor submits and what it gets back."""

import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel


class Verdict(str, Enum):
    """Verdict of a single rule or of the aggregate decision."""
    ALLOW = "allow"
    WARN = "warn"
    BLOCK = "block"


# block dominates warn dominates allow
VERDICT_SEVERITY = {
    Verdict.ALLOW: 0,
    Verdict.WARN: 1,
    Verdict.BLOCK: 2,
}


def strongest(verdicts: List[Verdict]) -> Verdict:
    """Aggregate verdicts; an empty list allows."""
    return max(verdicts, key=VERDICT_SEVERITY.__getitem__, default=Verdict.ALLOW)


class Action(BaseModel):
    """A proposed mutation submitted for validation. Transient."""

    id: str
    target: str                             # e.g., "src/app/page.tsx"
    payload: dict = {}                      # e.g., {"content": "..."}
    metadata: dict = {}                     # Tool name, session, etc.
    category: Optional[str] = None          # Falls back to metadata["category"], then "write"

    @property
    def effective_category(self) -> str:
        return self.category or self.metadata.get("category") or "write"

    def context_hash(self) -> str:
        """Stable hash of target + payload, stored with every execution record."""
        body = json.dumps(
            {"target": self.target, "payload": self.payload},
            sort_keys=True,
            default=str,
        ).encode()
        return hashlib.sha256(body).hexdigest()


class RuleResult(BaseModel):
    """What a rule's evaluate() returns."""

    outcome: Verdict
    message: Optional[str] = None
    pattern_key: Optional[str] = None       # Which pattern produced the verdict
    pattern_type: Optional[str] = None      # See PatternType


class RuleReport(BaseModel):
    """Per-rule summary carried on a Decision."""

    rule: str
    outcome: Verdict                        # Contribution to the aggregate
    latency_ms: float
    timed_out: bool = False
    error: Optional[str] = None
    message: Optional[str] = None
    pattern_key: Optional[str] = None
    pattern_type: Optional[str] = None


class Decision(BaseModel):
    """Aggregated verdict for one Action. Never persisted on its own."""

    action_id: str
    outcome: Verdict
    messages: List[str] = []
    rule_results: List[RuleReport] = []
    duration_ms: float = 0.0
    decided_at: datetime

    @property
    def blocked(self) -> bool:
        return self.outcome == Verdict.BLOCK
