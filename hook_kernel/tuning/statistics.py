"""
Statistics used by the Adaptive Tuner.

Pure functions over execution records, pattern counters and A/B arms.
Zero denominators yield 0 rather than raising.
"""

import math
from datetime import datetime
from typing import List, Optional, Sequence

from pydantic import BaseModel

from hook_kernel.models.ab_test import ArmMetrics
from hook_kernel.models.execution import ExecutionRecord
from hook_kernel.models.parameters import MetricsSnapshot
from hook_kernel.models.patterns import PatternEffectiveness, PatternStat

CONFIDENCE_CAP = 0.95


class LatencyStats(BaseModel):
    count: int
    mean: float
    stddev: float
    min: float
    max: float
    p50: float
    p90: float
    p95: float
    p99: float
    consistency: float


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0


def percentile(sorted_values: Sequence[float], p: float) -> float:
    """Linear interpolation between closest ranks; ``p`` in [0, 1]."""
    if not sorted_values:
        return 0.0
    index = p * (len(sorted_values) - 1)
    lower = math.floor(index)
    upper = math.ceil(index)
    if lower == upper:
        return float(sorted_values[lower])
    weight = index - lower
    return sorted_values[lower] * (1 - weight) + sorted_values[upper] * weight


def latency_stats(latencies: Sequence[float]) -> LatencyStats:
    if not latencies:
        return LatencyStats(
            count=0, mean=0.0, stddev=0.0, min=0.0, max=0.0,
            p50=0.0, p90=0.0, p95=0.0, p99=0.0, consistency=0.0,
        )
    values = sorted(float(v) for v in latencies)
    n = len(values)
    mean = sum(values) / n
    stddev = math.sqrt(sum((v - mean) ** 2 for v in values) / n)
    # A perfectly flat series is perfectly consistent
    consistency = 1 - min(stddev / mean, 1) if stddev > 0 and mean > 0 else 1.0
    return LatencyStats(
        count=n,
        mean=mean,
        stddev=stddev,
        min=values[0],
        max=values[-1],
        p50=percentile(values, 0.50),
        p90=percentile(values, 0.90),
        p95=percentile(values, 0.95),
        p99=percentile(values, 0.99),
        consistency=consistency,
    )


def sample_confidence(n: int, consistency: float) -> float:
    """Grows with sample size and latency consistency, capped at 0.95."""
    confidence = 0.5
    if n > 50:
        confidence += 0.2
    if n > 100:
        confidence += 0.1
    if n > 500:
        confidence += 0.1
    confidence += 0.1 * consistency
    return min(confidence, CONFIDENCE_CAP)


def bounded_step(current: float, target: float, max_change_rate: float) -> float:
    """Move from current toward target by at most max_change_rate * current."""
    limit = abs(current) * max_change_rate
    delta = max(-limit, min(limit, target - current))
    return current + delta


def pattern_effectiveness(stat: PatternStat) -> PatternEffectiveness:
    tp, fp, tn, fn = stat.tp, stat.fp, stat.tn, stat.fn
    total = stat.total
    precision = _ratio(tp, tp + fp)
    recall = _ratio(tp, tp + fn)
    return PatternEffectiveness(
        precision=precision,
        recall=recall,
        f1_score=_ratio(2 * precision * recall, precision + recall),
        accuracy=_ratio(tp + tn, total),
        false_positive_rate=_ratio(fp, fp + tn),
        false_negative_rate=_ratio(fn, fn + tp),
        confidence=min(total / 100, 1.0),
        total=total,
    )


def snapshot(records: List[ExecutionRecord], now: Optional[datetime] = None) -> MetricsSnapshot:
    """Rolling success rate, error rate and latency of a batch of executions."""
    n = len(records)
    return MetricsSnapshot(
        success_rate=_ratio(sum(1 for r in records if r.success), n),
        error_rate=_ratio(sum(1 for r in records if r.error is not None), n),
        avg_latency_ms=_ratio(sum(r.latency_ms for r in records), n),
        executions=n,
        captured_at=now,
    )


def ab_confidence(control: ArmMetrics, variant: ArmMetrics) -> float:
    total = control.executions + variant.executions
    larger = max(control.executions, variant.executions)
    balance = _ratio(min(control.executions, variant.executions), larger)
    confidence = 0.5
    if total > 100:
        confidence += 0.2
    if total > 500:
        confidence += 0.2
    confidence += 0.1 * balance
    return min(confidence, CONFIDENCE_CAP)


def select_winner(
    control: ArmMetrics,
    variant: ArmMetrics,
    success_margin: float = 0.05,
    latency_gain: float = 0.10,
) -> str:
    """
    Variant wins on a clearly better success rate, or on a comparable
    success rate with clearly lower latency. Ties go to control.
    """
    difference = variant.success_rate - control.success_rate
    if difference > success_margin:
        return "variant"
    if abs(difference) <= success_margin and control.avg_latency_ms > 0:
        if variant.avg_latency_ms <= control.avg_latency_ms * (1 - latency_gain):
            return "variant"
    return "control"
