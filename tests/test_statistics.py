"""Tests for tuner statistics."""

import pytest

from hook_kernel.models.ab_test import ArmMetrics
from hook_kernel.models.patterns import PatternStat, PatternType
from hook_kernel.tuning.statistics import (
    ab_confidence,
    bounded_step,
    latency_stats,
    pattern_effectiveness,
    percentile,
    sample_confidence,
    select_winner,
)


def _uniform_latencies(n: int = 100, low: float = 100.0, high: float = 300.0):
    step = (high - low) / (n - 1)
    return [low + i * step for i in range(n)]


class TestLatencyStats:
    def test_uniform_distribution(self):
        stats = latency_stats(_uniform_latencies())
        assert stats.count == 100
        assert stats.mean == pytest.approx(200.0)
        assert stats.stddev == pytest.approx(58.3, abs=0.5)
        assert stats.p95 == pytest.approx(290.0, abs=0.5)
        assert stats.min == 100.0
        assert stats.max == 300.0
        assert 0.0 < stats.consistency < 1.0

    def test_percentile_interpolates(self):
        assert percentile([0.0, 10.0], 0.5) == 5.0
        assert percentile([1.0, 2.0, 3.0], 0.5) == 2.0
        assert percentile([], 0.9) == 0.0

    def test_flat_series_is_fully_consistent(self):
        stats = latency_stats([50.0] * 10)
        assert stats.stddev == 0.0
        assert stats.consistency == 1.0

    def test_empty(self):
        assert latency_stats([]).count == 0


class TestConfidence:
    def test_sample_confidence_steps(self):
        assert sample_confidence(10, 0.0) == pytest.approx(0.5)
        assert sample_confidence(51, 0.0) == pytest.approx(0.7)
        assert sample_confidence(101, 0.0) == pytest.approx(0.8)
        assert sample_confidence(101, 0.5) == pytest.approx(0.85)

    def test_sample_confidence_capped(self):
        assert sample_confidence(1000, 1.0) == 0.95

    def test_ab_confidence(self):
        control = ArmMetrics(executions=60, successes=48)
        variant = ArmMetrics(executions=60, successes=52)
        # total 120 > 100, perfectly balanced
        assert ab_confidence(control, variant) == pytest.approx(0.8)
        assert ab_confidence(ArmMetrics(executions=300), ArmMetrics(executions=300)) == 0.95


class TestBoundedStep:
    def test_step_up_is_capped(self):
        assert bounded_step(300.0, 374.0, 0.2) == pytest.approx(360.0)

    def test_step_down_is_capped(self):
        assert bounded_step(1000.0, 100.0, 0.2) == pytest.approx(800.0)

    def test_small_move_reaches_target(self):
        assert bounded_step(1000.0, 1100.0, 0.2) == pytest.approx(1100.0)


class TestPatternEffectiveness:
    def test_noisy_pattern(self):
        stat = PatternStat(rule="r", pattern_type=PatternType.FILE, pattern_key="k", tp=2, fp=30, tn=5, fn=0)
        eff = pattern_effectiveness(stat)
        assert eff.precision == pytest.approx(2 / 32)
        assert eff.recall == pytest.approx(1.0)
        assert eff.false_positive_rate == pytest.approx(30 / 35)
        assert eff.false_negative_rate == 0.0
        assert eff.accuracy == pytest.approx(7 / 37)
        assert eff.confidence == pytest.approx(0.37)

    def test_zero_denominators(self):
        stat = PatternStat(rule="r", pattern_type=PatternType.FILE, pattern_key="k", tn=10)
        eff = pattern_effectiveness(stat)
        assert eff.precision == 0.0
        assert eff.recall == 0.0
        assert eff.f1_score == 0.0
        assert eff.false_negative_rate == 0.0


class TestWinnerSelection:
    def _arm(self, rate: float, latency: float = 100.0, n: int = 100) -> ArmMetrics:
        return ArmMetrics(executions=n, successes=int(round(rate * n)), total_latency_ms=latency * n)

    def test_clearly_better_variant_wins(self):
        assert select_winner(self._arm(0.80), self._arm(0.87)) == "variant"

    def test_comparable_but_faster_variant_wins(self):
        assert select_winner(self._arm(0.80, 100.0), self._arm(0.82, 60.0)) == "variant"

    def test_comparable_and_slightly_faster_keeps_control(self):
        assert select_winner(self._arm(0.80, 100.0), self._arm(0.82, 95.0)) == "control"

    def test_worse_variant_keeps_control(self):
        assert select_winner(self._arm(0.90, 100.0), self._arm(0.70, 10.0)) == "control"
