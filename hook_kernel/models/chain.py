"""Chain report: read-only view of the rule registry."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel


class RuleEntry(BaseModel):
    name: str
    category: str
    priority: int
    depends_on: List[str] = []
    description: Optional[str] = None


class RuleUsage(BaseModel):
    """Execution statistics for one rule, when a Learning Store is attached."""

    executions: int = 0
    success_rate: float = 0.0
    avg_latency_ms: float = 0.0
    timeouts: int = 0
    errors: int = 0


class DependencyReport(BaseModel):
    per_rule: Dict[str, List[str]] = {}
    shared: Dict[str, List[str]] = {}       # Dependency -> rules using it
    unknown_rules: Dict[str, List[str]] = {}  # Rule -> rule names it depends on that are not registered
    cycles: List[List[str]] = []


class ChainStatistics(BaseModel):
    total_rules: int = 0
    by_category: Dict[str, int] = {}
    category_share: Dict[str, float] = {}   # Percent of all rules
    priority_distribution: Dict[int, int] = {}
    usage: Dict[str, RuleUsage] = {}


class ChainReport(BaseModel):
    stages: Dict[str, List[RuleEntry]] = {}
    execution_order: List[str] = []
    dependencies: DependencyReport
    statistics: ChainStatistics
    generated_at: datetime
