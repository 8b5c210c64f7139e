"""
A/B Test Manager: live comparison of a parameter's current value against a
candidate.

While a test is active every parameter read draws an arm at random and
every execution outcome is credited to the arm that produced it. A test
is complete once both arms have enough samples or its duration elapsed.
At most one active test per parameter.
"""

import logging
import random
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from hook_kernel.errors import ABTestConflict, UnknownABTest
from hook_kernel.models.ab_test import ABTest, ABTestResult
from hook_kernel.models.config import TunerConfig
from hook_kernel.models.parameters import ParameterValue, parameter_key, split_parameter_key
from hook_kernel.timeutils import as_utc, utcnow
from hook_kernel.tuning.statistics import ab_confidence, select_winner

logger = logging.getLogger(__name__)

CONTROL = "control"
VARIANT = "variant"


class ABTestManager:
    def __init__(self, config: Optional[TunerConfig] = None, rng: Optional[random.Random] = None):
        self.config = config or TunerConfig()
        self._rng = rng or random.Random()
        self._tests: Dict[str, ABTest] = {}
        self._by_parameter: Dict[str, str] = {}
        self._lock = threading.Lock()

    def start(
        self,
        rule: str,
        parameter: str,
        control_value: Optional[ParameterValue],
        variant_value: ParameterValue,
        duration_seconds: float = 3600.0,
        sample_ratio: float = 0.5,
        now: Optional[datetime] = None,
    ) -> ABTest:
        if now is None:
            now = utcnow()
        name = parameter_key(rule, parameter)
        with self._lock:
            if name in self._by_parameter:
                raise ABTestConflict(
                    f"A/B test {self._by_parameter[name]} is already running for {name}"
                )
            test = ABTest(
                id=f"ab_{uuid4().hex[:12]}",
                rule=rule,
                parameter=parameter,
                control_value=control_value,
                variant_value=variant_value,
                started_at=as_utc(now),
                duration_seconds=duration_seconds,
                sample_ratio=sample_ratio,
            )
            self._tests[test.id] = test
            self._by_parameter[name] = test.id
        logger.info(
            "Started A/B test %s on %s: control=%r variant=%r ratio=%.2f",
            test.id, name, control_value, variant_value, sample_ratio,
        )
        return test

    def get(self, test_id: str) -> ABTest:
        test = self._tests.get(test_id)
        if test is None:
            raise UnknownABTest(f"A/B test not found: {test_id}")
        return test

    def list(self) -> List[ABTest]:
        return list(self._tests.values())

    def active_for(self, name: str) -> Optional[ABTest]:
        test_id = self._by_parameter.get(name)
        return self._tests.get(test_id) if test_id else None

    def draw(self, name: str) -> Optional[Tuple[ABTest, str, ParameterValue]]:
        """Pick an arm for one read of a parameter under test."""
        test = self.active_for(name)
        if test is None:
            return None
        if self._rng.random() < test.sample_ratio:
            return test, VARIANT, test.variant_value
        return test, CONTROL, test.control_value

    def resolve(self, rule: str, parameters: Dict[str, Any]) -> Tuple[Dict[str, Any], List[Tuple[str, str]]]:
        """
        Overlay arm values on a rule's parameter dict.
        Returns the resolved dict and the (test_id, arm) assignments made.
        """
        if not self._by_parameter:
            return parameters, []
        resolved = dict(parameters)
        assignments = []
        for name in list(self._by_parameter):
            if split_parameter_key(name)[0] != rule:
                continue
            drawn = self.draw(name)
            if drawn is None:
                continue
            test, arm, value = drawn
            if value is not None:
                resolved[test.parameter] = value
            assignments.append((test.id, arm))
        return resolved, assignments

    def record(self, test_id: str, arm: str, success: bool, latency_ms: float) -> None:
        """Credit one outcome to an arm. Outcomes for concluded tests are ignored."""
        with self._lock:
            test = self._tests.get(test_id)
            if test is None:
                return
            metrics = test.variant if arm == VARIANT else test.control
            metrics.executions += 1
            if success:
                metrics.successes += 1
            metrics.total_latency_ms += latency_ms

    def is_complete(self, test: ABTest, now: Optional[datetime] = None) -> bool:
        if now is None:
            now = utcnow()
        min_samples = self.config.ab_min_samples
        if test.control.executions >= min_samples and test.variant.executions >= min_samples:
            return True
        return not test.is_active(as_utc(now))

    def complete_tests(self, now: Optional[datetime] = None) -> List[ABTest]:
        return [t for t in self.list() if self.is_complete(t, now)]

    def evaluate(self, test: ABTest, now: Optional[datetime] = None) -> ABTestResult:
        """Score a test without removing it."""
        if now is None:
            now = utcnow()
        with self._lock:
            control = test.control.model_copy()
            variant = test.variant.model_copy()
        winner = select_winner(
            control,
            variant,
            success_margin=self.config.ab_success_margin,
            latency_gain=self.config.ab_latency_gain,
        )
        return ABTestResult(
            test_id=test.id,
            rule=test.rule,
            parameter=test.parameter,
            winner=winner,
            control_rate=control.success_rate,
            variant_rate=variant.success_rate,
            control_avg_latency_ms=control.avg_latency_ms,
            variant_avg_latency_ms=variant.avg_latency_ms,
            improvement=variant.success_rate - control.success_rate,
            confidence=ab_confidence(control, variant),
            concluded_at=as_utc(now),
        )

    def conclude(self, test_id: str, now: Optional[datetime] = None) -> ABTestResult:
        """Score and remove a test. Raises UnknownABTest."""
        test = self.get(test_id)
        result = self.evaluate(test, now)
        with self._lock:
            self._tests.pop(test_id, None)
            self._by_parameter.pop(test.name, None)
        logger.info(
            "Concluded A/B test %s on %s: winner=%s control=%.3f variant=%.3f",
            test.id, test.name, result.winner, result.control_rate, result.variant_rate,
        )
        return result
