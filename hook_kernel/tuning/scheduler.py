"""
Tuning Scheduler: drives the tuner and the retention purge on cron schedules.

    tuning_schedule  "*/15 * * * *"  -> AdaptiveTuner.run_cycle
    purge_schedule   "0 3 * * *"     -> LearningStore.purge_executions
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from croniter import croniter

from hook_kernel.learning.store import LearningStore
from hook_kernel.models.config import TunerConfig
from hook_kernel.timeutils import as_utc, utcnow
from hook_kernel.tuning.tuner import AdaptiveTuner

logger = logging.getLogger(__name__)


class ScheduledJob:
    """A callable bound to a cron expression."""

    def __init__(self, name: str, schedule: str, fn: Callable[[datetime], Any], start: datetime):
        if not croniter.is_valid(schedule):
            raise ValueError(f"Invalid cron expression for {name}: {schedule!r}")
        self.name = name
        self.schedule = schedule
        self.fn = fn
        self.last_run: Optional[datetime] = None
        self.next_run = croniter(schedule, as_utc(start)).get_next(datetime)

    def due(self, now: datetime) -> bool:
        return as_utc(now) >= self.next_run

    def run(self, now: datetime) -> Any:
        now = as_utc(now)
        try:
            return self.fn(now)
        finally:
            self.last_run = now
            self.next_run = croniter(self.schedule, now).get_next(datetime)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "schedule": self.schedule,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": self.next_run.isoformat(),
        }


class TuningScheduler:
    def __init__(
        self,
        tuner: AdaptiveTuner,
        store: LearningStore,
        config: Optional[TunerConfig] = None,
        retention_days: int = 30,
        poll_interval_seconds: float = 30.0,
        now: Optional[datetime] = None,
    ):
        self.tuner = tuner
        self.store = store
        self.config = config or tuner.config
        self.retention = timedelta(days=retention_days)
        self.poll_interval_seconds = poll_interval_seconds
        self._running = False
        start = now or utcnow()
        self.jobs: List[ScheduledJob] = [
            ScheduledJob("tuning", self.config.tuning_schedule, self._run_tuning, start),
            ScheduledJob("purge", self.config.purge_schedule, self._run_purge, start),
        ]

    @property
    def status(self) -> str:
        return "running" if self._running else "stopped"

    def _run_tuning(self, now: datetime):
        return self.tuner.run_cycle(now)

    def _run_purge(self, now: datetime) -> int:
        return self.store.purge_executions(self.retention, now=now)

    def tick(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Run every job that is due. A failing job is logged and rescheduled."""
        if now is None:
            now = utcnow()
        results = {}
        for job in self.jobs:
            if not job.due(now):
                continue
            try:
                results[job.name] = job.run(now)
            except Exception:
                logger.exception("Scheduled job %s failed", job.name)
        return results

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Poll the job table until stop_event is set."""
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        try:
            while not stop_event.is_set():
                await asyncio.to_thread(self.tick)
                try:
                    await asyncio.wait_for(
                        stop_event.wait(),
                        timeout=self.poll_interval_seconds,
                    )
                except asyncio.TimeoutError:
                    continue
        finally:
            self._running = False
