"""
Change Monitor: watches every applied parameter change and rolls it back
when the rule's performance regresses.

Lifecycle of an OptimizationProposal:

    proposed -> applied -> monitoring -> accepted
                   |            |
                   |            +-----> superseded
                   +------------+-----> rolled_back

accepted, rolled_back and superseded are terminal. check() is driven by the
scheduler.

Behavioral Contract:
- At most one monitored proposal per parameter. A newer change supersedes
  the older one and takes over its rollback value and baseline, so a
  rollback always restores the last value that was not under watch.
- A change rolls back when success rate drops, or error rate or average
  latency rises, by at least rollback_threshold. Latency is compared
  relative to the baseline.
- A change is accepted when its window elapses, or early once it has shown
  a clear improvement over several checks.
- Monitored proposals are persisted and resumed by hydrate() after a restart.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel

from hook_kernel.errors import InvalidTransition, PersistenceWriteError
from hook_kernel.learning.store import LearningStore
from hook_kernel.models.config import TunerConfig
from hook_kernel.models.parameters import (
    MetricsSnapshot,
    OptimizationProposal,
    OptimizationResult,
    ParameterChange,
    ProposalStatus,
)
from hook_kernel.timeutils import as_utc, utcnow
from hook_kernel.tuning.parameters import ParameterStore
from hook_kernel.tuning.statistics import snapshot

logger = logging.getLogger(__name__)

ROLLBACK_REASON = "rollback"

_ALLOWED_TRANSITIONS: Dict[ProposalStatus, FrozenSet[ProposalStatus]] = {
    ProposalStatus.PROPOSED: frozenset({ProposalStatus.APPLIED}),
    ProposalStatus.APPLIED: frozenset({ProposalStatus.MONITORING, ProposalStatus.ROLLED_BACK}),
    ProposalStatus.MONITORING: frozenset({
        ProposalStatus.ACCEPTED,
        ProposalStatus.ROLLED_BACK,
        ProposalStatus.SUPERSEDED,
    }),
    ProposalStatus.ACCEPTED: frozenset(),
    ProposalStatus.ROLLED_BACK: frozenset(),
    ProposalStatus.SUPERSEDED: frozenset(),
}


def can_transition(current: ProposalStatus, nxt: ProposalStatus) -> bool:
    return nxt in _ALLOWED_TRANSITIONS[current]


def require_transition(current: ProposalStatus, nxt: ProposalStatus) -> None:
    if not can_transition(current, nxt):
        raise InvalidTransition(f"invalid proposal transition: {current.value} -> {nxt.value}")


def _advance(proposal: OptimizationProposal, nxt: ProposalStatus) -> None:
    require_transition(proposal.status, nxt)
    proposal.status = nxt


class MetricChanges(BaseModel):
    """Observed minus baseline. Latency is relative; 0 when the baseline has none."""

    success_rate: float = 0.0
    error_rate: float = 0.0
    latency: float = 0.0


def compare(baseline: MetricsSnapshot, observed: MetricsSnapshot) -> MetricChanges:
    latency = 0.0
    if baseline.avg_latency_ms > 0:
        latency = (observed.avg_latency_ms - baseline.avg_latency_ms) / baseline.avg_latency_ms
    return MetricChanges(
        success_rate=observed.success_rate - baseline.success_rate,
        error_rate=observed.error_rate - baseline.error_rate,
        latency=latency,
    )


class MonitorOutcome(BaseModel):
    rolled_back: List[OptimizationProposal] = []
    accepted: List[OptimizationProposal] = []


class ChangeMonitor:
    def __init__(
        self,
        store: LearningStore,
        parameters: ParameterStore,
        config: Optional[TunerConfig] = None,
        history_limit: int = 500,
    ):
        self.store = store
        self.parameters = parameters
        self.config = config or TunerConfig()
        self.history_limit = history_limit
        self._proposals: Dict[str, OptimizationProposal] = {}
        self._lock = threading.RLock()

    def hydrate(self) -> int:
        """Resume monitoring of the proposals that were open at shutdown."""
        resumed = self.store.load_proposals(ProposalStatus.MONITORING)
        with self._lock:
            for proposal in resumed:
                self._proposals[proposal.id] = proposal
        if resumed:
            logger.info("Resumed monitoring of %d proposals", len(resumed))
        return len(resumed)

    def current_metrics(self, rule: str, now: Optional[datetime] = None) -> MetricsSnapshot:
        """Rolling metrics over the rule's most recent executions."""
        records = self.store.recent_executions(rule, self.config.metrics_sample_size)
        return snapshot(records, now)

    def observed_metrics(self, proposal: OptimizationProposal, now: Optional[datetime] = None) -> MetricsSnapshot:
        """Metrics of the executions since the proposal was applied."""
        records = self.store.executions_since(proposal.rule, proposal.applied_at)
        return snapshot(records, now)

    def apply(self, proposal: OptimizationProposal, now: Optional[datetime] = None) -> OptimizationProposal:
        """
        Persist the proposed value and start monitoring it.
        Raises PersistenceWriteError with the proposal left in ``proposed``.
        """
        if now is None:
            now = utcnow()
        now = as_utc(now)
        with self._lock:
            require_transition(proposal.status, ProposalStatus.APPLIED)
            if proposal.baseline is None:
                proposal.baseline = self.current_metrics(proposal.rule, now)
            previous = [p for p in self.monitoring() if p.name == proposal.name]

            self.parameters.apply(
                ParameterChange(
                    name=proposal.name,
                    old_value=proposal.old_value,
                    new_value=proposal.new_value,
                    reason=proposal.reason,
                    confidence=proposal.confidence,
                    proposal_id=proposal.id,
                    ts=now,
                )
            )
            _advance(proposal, ProposalStatus.APPLIED)
            proposal.applied_at = now
            if previous:
                proposal.old_value = previous[0].old_value
                proposal.baseline = previous[0].baseline or proposal.baseline
            for older in previous:
                self._supersede(older, proposal, now)
            _advance(proposal, ProposalStatus.MONITORING)
            self._track(proposal)
            self._persist(proposal)
        return proposal

    def _supersede(self, older: OptimizationProposal, newer: OptimizationProposal, now: datetime) -> None:
        observed = self.observed_metrics(older, now)
        _advance(older, ProposalStatus.SUPERSEDED)
        older.superseded_by = newer.id
        older.resolved_at = now
        older.resolution_detail = {"executions": float(observed.executions)}
        logger.info(
            "Proposal %s on %s superseded by %s before resolution",
            older.id, older.name, newer.id,
        )
        self._persist(older)
        self._record_result(older, older.baseline or MetricsSnapshot(), observed, now)

    def _track(self, proposal: OptimizationProposal) -> None:
        self._proposals[proposal.id] = proposal
        if len(self._proposals) <= self.history_limit:
            return
        for pid, p in list(self._proposals.items()):
            if len(self._proposals) <= self.history_limit:
                break
            if p.status != ProposalStatus.MONITORING:
                del self._proposals[pid]

    def _persist(self, proposal: OptimizationProposal) -> None:
        try:
            self.store.save_proposal(proposal)
        except PersistenceWriteError as e:
            logger.error("Failed to persist proposal %s: %s", proposal.id, e)

    def get(self, proposal_id: str) -> Optional[OptimizationProposal]:
        return self._proposals.get(proposal_id)

    def proposals(self, status: Optional[ProposalStatus] = None) -> List[OptimizationProposal]:
        return [p for p in self._proposals.values() if status is None or p.status == status]

    def monitoring(self) -> List[OptimizationProposal]:
        return self.proposals(ProposalStatus.MONITORING)

    def _regressed(self, changes: MetricChanges) -> bool:
        threshold = self.config.rollback_threshold
        return (
            -changes.success_rate >= threshold
            or changes.error_rate >= threshold
            or changes.latency >= threshold
        )

    def _improved(self, proposal: OptimizationProposal, changes: MetricChanges) -> bool:
        cfg = self.config
        return (
            proposal.checkpoints >= cfg.early_accept_min_checks
            and changes.success_rate > cfg.early_accept_success_gain
            and changes.latency < -cfg.early_accept_latency_gain
            and changes.error_rate <= 0
        )

    def check(self, now: Optional[datetime] = None) -> MonitorOutcome:
        """Resolve every monitoring proposal that has regressed, clearly improved or outlived its window."""
        if now is None:
            now = utcnow()
        now = as_utc(now)
        outcome = MonitorOutcome()
        window = timedelta(seconds=self.config.monitoring_window_seconds)

        with self._lock:
            for proposal in self.monitoring():
                observed = self.observed_metrics(proposal, now)
                changes = compare(proposal.baseline or MetricsSnapshot(), observed)
                sampled = observed.executions >= self.config.monitor_min_samples
                if sampled:
                    proposal.checkpoints += 1

                if sampled and self._regressed(changes):
                    try:
                        self.rollback(proposal, observed, now)
                    except PersistenceWriteError as e:
                        logger.error("Rollback of %s failed, will retry: %s", proposal.id, e)
                        continue
                    outcome.rolled_back.append(proposal)
                elif sampled and self._improved(proposal, changes):
                    self.accept(proposal, observed, now, early=True)
                    outcome.accepted.append(proposal)
                elif now - as_utc(proposal.applied_at) >= window:
                    self.accept(proposal, observed, now)
                    outcome.accepted.append(proposal)
                elif sampled:
                    self._persist(proposal)
        return outcome

    def rollback(
        self,
        proposal: OptimizationProposal,
        observed: MetricsSnapshot,
        now: Optional[datetime] = None,
    ) -> OptimizationProposal:
        """Restore the pre-change value. Raises PersistenceWriteError if the restore fails."""
        if now is None:
            now = utcnow()
        require_transition(proposal.status, ProposalStatus.ROLLED_BACK)
        baseline = proposal.baseline or MetricsSnapshot()

        self.parameters.apply(
            ParameterChange(
                name=proposal.name,
                old_value=self.parameters.get(proposal.name, proposal.new_value),
                new_value=proposal.old_value,
                reason=ROLLBACK_REASON,
                confidence=proposal.confidence,
                proposal_id=proposal.id,
                ts=now,
            )
        )
        _advance(proposal, ProposalStatus.ROLLED_BACK)
        proposal.resolved_at = as_utc(now)
        proposal.resolution_detail = {
            "success_rate_before": baseline.success_rate,
            "success_rate_after": observed.success_rate,
            "error_rate_before": baseline.error_rate,
            "error_rate_after": observed.error_rate,
            "avg_latency_ms_before": baseline.avg_latency_ms,
            "avg_latency_ms_after": observed.avg_latency_ms,
            "executions": float(observed.executions),
        }
        logger.warning(
            "Rolled back %s to %r (proposal %s): success %.3f -> %.3f, errors %.3f -> %.3f, "
            "latency %.1fms -> %.1fms over %d executions",
            proposal.name, proposal.old_value, proposal.id,
            baseline.success_rate, observed.success_rate,
            baseline.error_rate, observed.error_rate,
            baseline.avg_latency_ms, observed.avg_latency_ms, observed.executions,
        )
        self._persist(proposal)
        self._record_result(proposal, baseline, observed, now)
        return proposal

    def accept(
        self,
        proposal: OptimizationProposal,
        observed: MetricsSnapshot,
        now: Optional[datetime] = None,
        early: bool = False,
    ) -> OptimizationProposal:
        if now is None:
            now = utcnow()
        _advance(proposal, ProposalStatus.ACCEPTED)
        proposal.resolved_at = as_utc(now)
        baseline = proposal.baseline or MetricsSnapshot()
        proposal.resolution_detail = {
            "success_rate_before": baseline.success_rate,
            "success_rate_after": observed.success_rate,
            "avg_latency_ms_before": baseline.avg_latency_ms,
            "avg_latency_ms_after": observed.avg_latency_ms,
            "executions": float(observed.executions),
            "early": 1.0 if early else 0.0,
        }
        logger.info(
            "Accepted %s = %r (proposal %s) after %d executions%s",
            proposal.name, proposal.new_value, proposal.id, observed.executions,
            " (early)" if early else "",
        )
        self._persist(proposal)
        self._record_result(proposal, baseline, observed, now)
        if observed.executions:
            try:
                self.store.save_baseline(proposal.rule, observed)
            except PersistenceWriteError as e:
                logger.error("Failed to refresh baseline for %s: %s", proposal.rule, e)
        return proposal

    def _record_result(
        self,
        proposal: OptimizationProposal,
        baseline: MetricsSnapshot,
        observed: MetricsSnapshot,
        now: datetime,
    ) -> None:
        try:
            self.store.record_optimization_result(
                OptimizationResult(
                    proposal_id=proposal.id,
                    rule=proposal.rule,
                    parameter=proposal.parameter,
                    status=proposal.status,
                    success_rate_before=baseline.success_rate,
                    success_rate_after=observed.success_rate,
                    detail={
                        "old_value": proposal.old_value,
                        "new_value": proposal.new_value,
                        "reason": proposal.reason,
                        **proposal.resolution_detail,
                    },
                    ts=now,
                )
            )
        except PersistenceWriteError as e:
            logger.error("Failed to record result of %s: %s", proposal.id, e)
