"""
Parameter Store: the live parameter values every rule reads.

The in-memory cache is authoritative for decisions. The Learning Store's
parameter map and history are authoritative across restarts; hydrate()
rebuilds the cache from them.

Behavioral Contract:
- apply() persists the change first and only then updates the cache; a
  failed write raises PersistenceWriteError and leaves the cache as it was.
- Every applied change (optimizations and rollbacks alike) restarts that
  parameter's cooldown clock.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, Optional

from hook_kernel.learning.store import LearningStore
from hook_kernel.models.parameters import (
    ParameterChange,
    ParameterValue,
    parameter_key,
    split_parameter_key,
)
from hook_kernel.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)


class ParameterStore:
    def __init__(self, store: LearningStore):
        self.store = store
        self._values: Dict[str, ParameterValue] = {}
        self._last_change: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def hydrate(self) -> int:
        """Load the persisted map and cooldown clocks. Returns the parameter count."""
        values = self.store.load_parameters()
        last_change = {name: as_utc(ts) for name, ts in self.store.last_change_times().items()}
        with self._lock:
            self._values = values
            self._last_change = last_change
        logger.info("Hydrated %d parameters from the learning store", len(values))
        return len(values)

    def register_defaults(
        self,
        rule: str,
        defaults: Dict[str, ParameterValue],
        now: Optional[datetime] = None,
    ) -> Dict[str, ParameterValue]:
        """Seed a rule's parameters that have no value yet. Existing values win."""
        missing = {}
        with self._lock:
            for short, value in defaults.items():
                name = parameter_key(rule, short)
                if name not in self._values:
                    missing[name] = value
        if missing:
            self.store.save_parameters(missing, now=now)
            with self._lock:
                for name, value in missing.items():
                    self._values.setdefault(name, value)
        return missing

    def get(self, name: str, default: Optional[ParameterValue] = None) -> Optional[ParameterValue]:
        return self._values.get(name, default)

    def for_rule(self, rule: str) -> Dict[str, Any]:
        """A rule's parameters keyed by short name."""
        params = {}
        for name, value in self._values.items():
            owner, short = split_parameter_key(name)
            if owner == rule:
                params[short] = value
        return params

    def values(self) -> Dict[str, ParameterValue]:
        return dict(self._values)

    def last_changed(self, name: str) -> Optional[datetime]:
        return self._last_change.get(name)

    def apply(self, change: ParameterChange) -> ParameterChange:
        """Persist, then publish. Raises PersistenceWriteError on a failed write."""
        self.store.apply_parameter_change(change)
        with self._lock:
            self._values[change.name] = change.new_value
            self._last_change[change.name] = as_utc(change.ts)
        rule, parameter = split_parameter_key(change.name)
        logger.info(
            "Parameter %s of rule %s changed %r -> %r (%s, confidence %.2f)",
            parameter, rule, change.old_value, change.new_value, change.reason, change.confidence,
        )
        return change

    def set(
        self,
        name: str,
        value: ParameterValue,
        reason: str = "manual",
        now: Optional[datetime] = None,
    ) -> ParameterChange:
        """Operator override, recorded in history like any other change."""
        if now is None:
            now = utcnow()
        return self.apply(
            ParameterChange(
                name=name,
                old_value=self.get(name),
                new_value=value,
                reason=reason,
                ts=now,
            )
        )
