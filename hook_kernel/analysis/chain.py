"""
Chain Analyzer: a read-only report on the registered rule chain.

Groups rules into per-category stages, checks rule dependencies, and
summarizes the registry (with execution usage when a store is attached).
Never mutates the registry or the store.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional

from hook_kernel.engine.registry import ALL_CATEGORIES, RuleRegistry
from hook_kernel.learning.store import LearningStore
from hook_kernel.models.chain import (
    ChainReport,
    ChainStatistics,
    DependencyReport,
    RuleEntry,
    RuleUsage,
)
from hook_kernel.timeutils import utcnow


def _find_cycles(graph: Dict[str, List[str]]) -> List[List[str]]:
    """Every distinct cycle among known rules, each rotated to start at its smallest name."""
    cycles: List[List[str]] = []
    seen = set()
    state: Dict[str, int] = {}  # 1 = on the current path, 2 = done
    path: List[str] = []

    def visit(node: str) -> None:
        state[node] = 1
        path.append(node)
        for dep in graph.get(node, []):
            if dep not in graph:
                continue
            if state.get(dep) == 1:
                cycle = path[path.index(dep):]
                pivot = cycle.index(min(cycle))
                canonical = tuple(cycle[pivot:] + cycle[:pivot])
                if canonical not in seen:
                    seen.add(canonical)
                    cycles.append(list(canonical))
            elif state.get(dep) is None:
                visit(dep)
        path.pop()
        state[node] = 2

    for node in sorted(graph):
        if state.get(node) is None:
            visit(node)
    return cycles


class ChainAnalyzer:
    def __init__(
        self,
        registry: RuleRegistry,
        store: Optional[LearningStore] = None,
        usage_window: timedelta = timedelta(days=30),
    ):
        self.registry = registry
        self.store = store
        self.usage_window = usage_window

    def stages(self, entries: List[RuleEntry]) -> Dict[str, List[RuleEntry]]:
        """Rules per category, priority order. Wildcard rules form their own stage."""
        stages: Dict[str, List[RuleEntry]] = {}
        for entry in entries:
            stages.setdefault(entry.category, []).append(entry)
        for members in stages.values():
            members.sort(key=lambda e: e.priority)
        return dict(sorted(stages.items(), key=lambda kv: (kv[0] != ALL_CATEGORIES, kv[0])))

    def dependencies(self, entries: List[RuleEntry]) -> DependencyReport:
        known = {e.name for e in entries}
        per_rule = {e.name: list(e.depends_on) for e in entries}

        users: Dict[str, List[str]] = {}
        for name, deps in per_rule.items():
            for dep in deps:
                users.setdefault(dep, []).append(name)
        shared = {dep: sorted(names) for dep, names in sorted(users.items()) if len(names) > 1}

        unknown = {
            name: [d for d in deps if d not in known]
            for name, deps in per_rule.items()
            if any(d not in known for d in deps)
        }
        return DependencyReport(
            per_rule=per_rule,
            shared=shared,
            unknown_rules=unknown,
            cycles=_find_cycles(per_rule),
        )

    def statistics(self, entries: List[RuleEntry], now: Optional[datetime] = None) -> ChainStatistics:
        total = len(entries)
        by_category: Dict[str, int] = {}
        priorities: Dict[int, int] = {}
        for entry in entries:
            by_category[entry.category] = by_category.get(entry.category, 0) + 1
            priorities[entry.priority] = priorities.get(entry.priority, 0) + 1

        usage: Dict[str, RuleUsage] = {}
        if self.store is not None:
            metrics = self.store.system_metrics(self.usage_window, now=now)
            for entry in entries:
                m = metrics.per_rule.get(entry.name)
                if m is None:
                    usage[entry.name] = RuleUsage()
                    continue
                usage[entry.name] = RuleUsage(
                    executions=m.executions,
                    success_rate=m.success_rate,
                    avg_latency_ms=m.avg_latency_ms,
                    timeouts=m.timeouts,
                    errors=m.errors,
                )

        return ChainStatistics(
            total_rules=total,
            by_category=dict(sorted(by_category.items())),
            category_share={
                c: round(n / total * 100, 1) for c, n in sorted(by_category.items())
            },
            priority_distribution=dict(sorted(priorities.items())),
            usage=usage,
        )

    def report(self, now: Optional[datetime] = None) -> ChainReport:
        if now is None:
            now = utcnow()
        entries = self.registry.entries()
        return ChainReport(
            stages=self.stages(entries),
            execution_order=[e.name for e in entries],
            dependencies=self.dependencies(entries),
            statistics=self.statistics(entries, now),
            generated_at=now,
        )


def render_text(report: ChainReport) -> str:
    """Plain-text tree of a chain report."""
    lines = ["Rule Chain", "=" * 40]

    for category, members in report.stages.items():
        label = "all actions" if category == ALL_CATEGORIES else category
        lines.append("")
        lines.append(f"Stage: {label} ({len(members)} rules)")
        for i, entry in enumerate(members):
            last = i == len(members) - 1
            branch, stem = ("└─", "  ") if last else ("├─", "│ ")
            lines.append(f"  {branch} {entry.name}")
            lines.append(f"  {stem}   priority {entry.priority}")
            if entry.description:
                lines.append(f"  {stem}   {entry.description}")
            usage = report.statistics.usage.get(entry.name)
            if usage is not None and usage.executions:
                lines.append(
                    f"  {stem}   {usage.executions} runs, "
                    f"{usage.success_rate * 100:.1f}% success, {usage.avg_latency_ms:.1f}ms avg"
                )

    lines.append("")
    lines.append("Execution order: " + (" -> ".join(report.execution_order) or "(empty)"))

    deps = report.dependencies
    if deps.shared:
        lines.append("")
        lines.append("Shared dependencies:")
        for dep, users in deps.shared.items():
            lines.append(f"  {dep} (used by: {', '.join(users)})")
    if deps.unknown_rules:
        lines.append("")
        lines.append("Unknown dependencies:")
        for rule, missing in deps.unknown_rules.items():
            lines.append(f"  {rule} -> {', '.join(missing)}")
    if deps.cycles:
        lines.append("")
        lines.append("Dependency cycles:")
        for cycle in deps.cycles:
            lines.append("  " + " -> ".join(cycle + cycle[:1]))

    stats = report.statistics
    lines.append("")
    lines.append(f"Total rules: {stats.total_rules}")
    for category, count in stats.by_category.items():
        lines.append(f"  {category}: {count} ({stats.category_share[category]}%)")
    if stats.priority_distribution:
        lines.append("Priority distribution:")
        for priority, count in stats.priority_distribution.items():
            lines.append(f"  {priority}: {'#' * count} {count}")
    return "\n".join(lines)
