"""
Adaptive Parameter Tuner: learns better rule parameters from the
Learning Store and applies them in bounded, monitored steps.

Algorithms:
- Timeout optimization: move each rule's timeout toward a latency-derived target
- Pattern refinement: lower or raise pattern sensitivity from TP/FP/TN/FN counters
- Strictness adjustment: relax or tighten enforcement as success rates drift
- A/B testing: compare a candidate value live before adopting it

Behavioral Contract:
- A parameter changes at most once per cooldown period
- One timeout step moves the value by at most max_change_rate * current
- Every applied change is handed to the Change Monitor, which may roll it back
- Skips are routine outcomes, reported and logged at DEBUG, never raised
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel

from hook_kernel.engine.registry import RuleRegistry
from hook_kernel.errors import PersistenceWriteError, SkipReason
from hook_kernel.learning.store import LearningStore
from hook_kernel.models.ab_test import ABTest, ABTestResult
from hook_kernel.models.config import TunerConfig
from hook_kernel.models.parameters import (
    OptimizationProposal,
    ParameterValue,
    parameter_key,
)
from hook_kernel.timeutils import as_utc, utcnow
from hook_kernel.tuning.ab_testing import VARIANT, ABTestManager
from hook_kernel.tuning.monitor import ChangeMonitor
from hook_kernel.tuning.parameters import ParameterStore
from hook_kernel.tuning.statistics import (
    bounded_step,
    latency_stats,
    pattern_effectiveness,
    sample_confidence,
)

logger = logging.getLogger(__name__)

DEFAULT_PATTERN_SENSITIVITY = "standard"
DEFAULT_STRICTNESS = "standard"


def _is_positive_number(value) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return 0 < value < float("inf")


class Skip(BaseModel):
    rule: str
    parameter: str
    reason: SkipReason
    detail: str = ""


class TuningReport(BaseModel):
    """What one tuning pass did."""

    applied: List[OptimizationProposal] = []
    concluded_tests: List[ABTestResult] = []
    rolled_back: List[OptimizationProposal] = []
    accepted: List[OptimizationProposal] = []
    skipped: List[Skip] = []
    errors: List[str] = []

    def merge(self, other: "TuningReport") -> "TuningReport":
        self.applied.extend(other.applied)
        self.concluded_tests.extend(other.concluded_tests)
        self.rolled_back.extend(other.rolled_back)
        self.accepted.extend(other.accepted)
        self.skipped.extend(other.skipped)
        self.errors.extend(other.errors)
        return self


class AdaptiveTuner:
    def __init__(
        self,
        store: LearningStore,
        parameters: ParameterStore,
        ab_tests: ABTestManager,
        monitor: ChangeMonitor,
        config: Optional[TunerConfig] = None,
        registry: Optional[RuleRegistry] = None,
        default_timeout_ms: float = 3000.0,
    ):
        self.store = store
        self.parameters = parameters
        self.ab_tests = ab_tests
        self.monitor = monitor
        self.config = config or TunerConfig()
        self.registry = registry
        self.default_timeout_ms = default_timeout_ms

    def initialize(self, now: Optional[datetime] = None) -> int:
        """Capture a strictness baseline for every known rule that has executions."""
        if now is None:
            now = utcnow()
        if self.registry is None:
            return 0
        existing = self.store.load_baselines()
        captured = 0
        for rule in self.registry.names():
            if rule in existing:
                continue
            metrics = self.monitor.current_metrics(rule, now)
            if metrics.executions:
                self.store.save_baseline(rule, metrics)
                captured += 1
        return captured

    # --- Parameter access ---

    def get_parameter(self, name: str, default: Optional[ParameterValue] = None) -> Optional[ParameterValue]:
        """Live value, or a randomly drawn arm while an A/B test runs on it."""
        drawn = self.ab_tests.draw(name)
        if drawn is not None:
            _, _, value = drawn
            if value is not None:
                return value
        return self.parameters.get(name, default)

    def can_optimize(self, name: str, now: Optional[datetime] = None) -> bool:
        """False while the parameter's cooldown runs, True from the moment it has elapsed."""
        last = self.parameters.last_changed(name)
        if last is None:
            return True
        if now is None:
            now = utcnow()
        return as_utc(now) - last >= timedelta(seconds=self.config.cooldown_seconds)

    def _skip(self, report: TuningReport, rule: str, parameter: str, reason: SkipReason, detail: str = "") -> TuningReport:
        logger.debug("Skipping %s.%s: %s %s", rule, parameter, reason.value, detail)
        report.skipped.append(Skip(rule=rule, parameter=parameter, reason=reason, detail=detail))
        return report

    def _apply(self, proposal: OptimizationProposal, report: TuningReport, now: datetime) -> TuningReport:
        try:
            self.monitor.apply(proposal, now)
        except PersistenceWriteError as e:
            logger.error("Failed to apply %s to %s: %s", proposal.id, proposal.name, e)
            report.errors.append(f"{proposal.name}: {e}")
            return report
        report.applied.append(proposal)
        return report

    def _proposal(
        self,
        rule: str,
        parameter: str,
        old_value: ParameterValue,
        new_value: ParameterValue,
        confidence: float,
        reason: str,
        now: datetime,
        stats: Optional[dict] = None,
        target_pattern: Optional[str] = None,
    ) -> OptimizationProposal:
        return OptimizationProposal(
            id=f"opt_{uuid4().hex[:12]}",
            rule=rule,
            parameter=parameter,
            old_value=old_value,
            new_value=new_value,
            confidence=confidence,
            reason=reason,
            stats=stats or {},
            target_pattern=target_pattern,
            created_at=now,
        )

    # --- Timeout optimization ---

    def optimize_timeout(self, rule: str, now: Optional[datetime] = None) -> TuningReport:
        """Step the rule's timeout toward max(p95 * 1.2, mean + 3 sd, floor)."""
        if now is None:
            now = utcnow()
        now = as_utc(now)
        report = TuningReport()
        name = parameter_key(rule, "timeout")
        if not self.can_optimize(name, now):
            return self._skip(report, rule, "timeout", SkipReason.COOLDOWN_ACTIVE)

        records = self.store.recent_executions(rule, self.config.timeout_sample_size)
        if len(records) < self.config.min_executions_for_optimization:
            return self._skip(
                report, rule, "timeout", SkipReason.INSUFFICIENT_SAMPLE,
                f"{len(records)} < {self.config.min_executions_for_optimization}",
            )

        stats = latency_stats([r.latency_ms for r in records])
        target = max(stats.p95 * 1.2, stats.mean + 3 * stats.stddev, self.config.timeout_floor_ms)
        current = float(self.parameters.get(name, self.default_timeout_ms))
        applied = round(bounded_step(current, target, self.config.max_change_rate), 3)
        if abs(applied - current) < self.config.timeout_noise_threshold_ms:
            return self._skip(
                report, rule, "timeout", SkipReason.BELOW_NOISE_THRESHOLD,
                f"{current:.0f}ms -> {applied:.0f}ms",
            )

        proposal = self._proposal(
            rule,
            "timeout",
            old_value=current,
            new_value=applied,
            confidence=sample_confidence(stats.count, stats.consistency),
            reason="execution_time_optimization",
            now=now,
            stats={**stats.model_dump(), "target": target},
        )
        return self._apply(proposal, report, now)

    # --- Pattern refinement ---

    def refine_patterns(self, rule: str, now: Optional[datetime] = None) -> TuningReport:
        """Lower sensitivity of noisy patterns, raise it for patterns that miss."""
        if now is None:
            now = utcnow()
        now = as_utc(now)
        report = TuningReport()
        cfg = self.config

        for stat in self.store.pattern_effectiveness(rule):
            parameter = f"pattern_sensitivity_{stat.pattern_type.value}"
            if stat.total < cfg.min_pattern_samples:
                self._skip(report, rule, parameter, SkipReason.INSUFFICIENT_SAMPLE, stat.pattern_key)
                continue

            eff = pattern_effectiveness(stat)
            if eff.precision < cfg.pattern_precision_threshold and eff.false_positive_rate > cfg.pattern_error_rate_threshold:
                new_value, reason = "reduced", "high_false_positive_rate"
            elif eff.recall < cfg.pattern_recall_threshold and eff.false_negative_rate > cfg.pattern_error_rate_threshold:
                new_value, reason = "increased", "high_false_negative_rate"
            else:
                self._skip(report, rule, parameter, SkipReason.NO_CHANGE, stat.pattern_key)
                continue

            name = parameter_key(rule, parameter)
            current = self.parameters.get(name, DEFAULT_PATTERN_SENSITIVITY)
            if current == new_value:
                self._skip(report, rule, parameter, SkipReason.NO_CHANGE, f"already {new_value}")
                continue
            if not self.can_optimize(name, now):
                self._skip(report, rule, parameter, SkipReason.COOLDOWN_ACTIVE, stat.pattern_key)
                continue

            proposal = self._proposal(
                rule,
                parameter,
                old_value=current,
                new_value=new_value,
                confidence=eff.confidence,
                reason=reason,
                now=now,
                stats=eff.model_dump(),
                target_pattern=stat.pattern_key,
            )
            self._apply(proposal, report, now)
        return report

    # --- Strictness adjustment ---

    def adjust_strictness(self, rule: str, now: Optional[datetime] = None) -> TuningReport:
        """Compare the rolling success rate with the stored baseline."""
        if now is None:
            now = utcnow()
        now = as_utc(now)
        report = TuningReport()
        cfg = self.config
        parameter = "enforcement_strictness"

        metrics = self.monitor.current_metrics(rule, now)
        if metrics.executions < cfg.min_executions_for_optimization:
            return self._skip(
                report, rule, parameter, SkipReason.INSUFFICIENT_SAMPLE,
                f"{metrics.executions} < {cfg.min_executions_for_optimization}",
            )

        baseline = self.store.load_baselines().get(rule)
        if baseline is None:
            try:
                self.store.save_baseline(rule, metrics)
            except PersistenceWriteError as e:
                report.errors.append(f"{rule}: {e}")
            return self._skip(report, rule, parameter, SkipReason.NO_BASELINE, "baseline captured")

        change = metrics.success_rate - baseline.success_rate
        if change < -cfg.strictness_delta:
            new_value, confidence, reason = "relaxed", 0.8, "success_rate_drop"
        elif change > cfg.strictness_delta and metrics.success_rate < cfg.strictness_ceiling:
            new_value, confidence, reason = "strict", 0.7, "success_rate_improvement"
        else:
            return self._skip(report, rule, parameter, SkipReason.NO_CHANGE, f"change {change:+.3f}")

        name = parameter_key(rule, parameter)
        current = self.parameters.get(name, DEFAULT_STRICTNESS)
        if current == new_value:
            return self._skip(report, rule, parameter, SkipReason.NO_CHANGE, f"already {new_value}")
        if not self.can_optimize(name, now):
            return self._skip(report, rule, parameter, SkipReason.COOLDOWN_ACTIVE)

        proposal = self._proposal(
            rule,
            parameter,
            old_value=current,
            new_value=new_value,
            confidence=confidence,
            reason=reason,
            now=now,
            stats={
                "success_rate_change": change,
                "current": metrics.success_rate,
                "baseline": baseline.success_rate,
            },
        )
        return self._apply(proposal, report, now)

    # --- A/B testing ---

    def start_ab_test(
        self,
        rule: str,
        parameter: str,
        variant_value: ParameterValue,
        duration_seconds: float = 3600.0,
        sample_ratio: float = 0.5,
        now: Optional[datetime] = None,
    ) -> ABTest:
        """
        Raises ABTestConflict if the parameter is already under test, and
        ValueError for a timeout variant that is not a positive number.
        """
        if parameter == "timeout" and not _is_positive_number(variant_value):
            raise ValueError(f"timeout variant must be a positive number of ms, got {variant_value!r}")
        control = self.parameters.get(parameter_key(rule, parameter))
        return self.ab_tests.start(
            rule,
            parameter,
            control_value=control,
            variant_value=variant_value,
            duration_seconds=duration_seconds,
            sample_ratio=sample_ratio,
            now=now,
        )

    def get_ab_test(self, test_id: str) -> ABTest:
        return self.ab_tests.get(test_id)

    def list_ab_tests(self) -> List[ABTest]:
        return self.ab_tests.list()

    def stop_ab_test(self, test_id: str, now: Optional[datetime] = None) -> ABTestResult:
        """Conclude a test early. Raises UnknownABTest."""
        return self.conclude_ab_test(test_id, now)

    def conclude_ab_test(self, test_id: str, now: Optional[datetime] = None) -> ABTestResult:
        """Score and remove a test; a winning variant is applied and monitored."""
        if now is None:
            now = utcnow()
        now = as_utc(now)
        test = self.ab_tests.get(test_id)
        result = self.ab_tests.conclude(test_id, now)
        if result.winner != VARIANT or test.variant_value == test.control_value:
            return result

        old_value = self.parameters.get(test.name, test.control_value)
        if old_value is None:
            old_value = test.variant_value
        proposal = self._proposal(
            test.rule,
            test.parameter,
            old_value=old_value,
            new_value=test.variant_value,
            confidence=result.confidence,
            reason="ab_test_winner",
            now=now,
            stats=result.model_dump(mode="json"),
        )
        try:
            self.monitor.apply(proposal, now)
        except PersistenceWriteError as e:
            logger.error("Failed to apply A/B winner of %s: %s", test.id, e)
            return result
        result.proposal_id = proposal.id
        return result

    # --- Scheduled cycle ---

    def run_cycle(self, now: Optional[datetime] = None, rules: Optional[List[str]] = None) -> TuningReport:
        """Run every optimizer for every rule, conclude finished A/B tests, then check monitored changes."""
        if now is None:
            now = utcnow()
        now = as_utc(now)
        if rules is None:
            rules = self.registry.names() if self.registry is not None else []

        report = TuningReport()
        for rule in rules:
            report.merge(self.optimize_timeout(rule, now))
            report.merge(self.refine_patterns(rule, now))
            report.merge(self.adjust_strictness(rule, now))

        for test in self.ab_tests.complete_tests(now):
            report.concluded_tests.append(self.conclude_ab_test(test.id, now))

        outcome = self.monitor.check(now)
        report.rolled_back.extend(outcome.rolled_back)
        report.accepted.extend(outcome.accepted)

        logger.info(
            "Tuning cycle: %d applied, %d tests concluded, %d rolled back, %d accepted, %d skipped",
            len(report.applied), len(report.concluded_tests),
            len(report.rolled_back), len(report.accepted), len(report.skipped),
        )
        return report
