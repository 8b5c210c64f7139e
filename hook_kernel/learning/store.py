"""
Learning Store: durable record of rule executions and pattern outcomes.

Every submitted action produces one execution row per applicable rule.
The Tuner reads these rows back to retune parameters.

Behavioral Contract:
- Executions are append-only; only the retention purge removes them.
- Pattern statistics are upserted with increments, never recomputed, never purged.
- Execution and pattern writes never raise: failures are logged and swallowed.
- Parameter writes raise PersistenceWriteError so the in-memory cache is only
  updated after the change is durable.
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from hook_kernel.errors import PersistenceWriteError
from hook_kernel.models.execution import (
    ExecutionOutcome,
    ExecutionRecord,
    RuleMetrics,
    SystemMetrics,
)
from hook_kernel.models.parameters import (
    MetricsSnapshot,
    OptimizationProposal,
    OptimizationResult,
    ParameterChange,
    ParameterValue,
    ProposalStatus,
)
from hook_kernel.models.patterns import PatternDelta, PatternStat, PatternType
from hook_kernel.timeutils import as_utc, to_db, utcnow

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS executions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        rule TEXT NOT NULL,
        category TEXT NOT NULL,
        action_id TEXT NOT NULL,
        action_hash TEXT NOT NULL,
        outcome TEXT NOT NULL,
        latency_ms REAL NOT NULL,
        timed_out INTEGER NOT NULL DEFAULT 0,
        error TEXT,
        pattern_key TEXT,
        ts TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_executions_rule_ts ON executions(rule, ts)",
    "CREATE INDEX IF NOT EXISTS idx_executions_ts ON executions(ts)",
    """
    CREATE TABLE IF NOT EXISTS pattern_stats (
        rule TEXT NOT NULL,
        pattern_type TEXT NOT NULL,
        pattern_key TEXT NOT NULL,
        tp INTEGER NOT NULL DEFAULT 0,
        fp INTEGER NOT NULL DEFAULT 0,
        tn INTEGER NOT NULL DEFAULT 0,
        fn INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL,
        UNIQUE(rule, pattern_type, pattern_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS parameters (
        name TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS parameter_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        old_value TEXT,
        new_value TEXT NOT NULL,
        reason TEXT NOT NULL,
        confidence REAL NOT NULL,
        proposal_id TEXT,
        ts TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_parameter_history_name_ts ON parameter_history(name, ts)",
    """
    CREATE TABLE IF NOT EXISTS optimization_results (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        proposal_id TEXT NOT NULL,
        rule TEXT NOT NULL,
        parameter TEXT NOT NULL,
        status TEXT NOT NULL,
        success_rate_before REAL,
        success_rate_after REAL,
        detail TEXT NOT NULL,
        ts TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS baselines (
        rule TEXT PRIMARY KEY,
        success_rate REAL NOT NULL,
        error_rate REAL NOT NULL,
        avg_latency_ms REAL NOT NULL,
        executions INTEGER NOT NULL,
        captured_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS proposals (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        status TEXT NOT NULL,
        body TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_proposals_status ON proposals(status)",
)

_PATTERN_COLUMNS = ("tp", "fp", "tn", "fn")


def _encode(value: Optional[ParameterValue]) -> Optional[str]:
    return None if value is None else json.dumps(value)


def _decode(raw: Optional[str]) -> Optional[ParameterValue]:
    return None if raw is None else json.loads(raw)


class LearningStore:
    """
    SQLite-backed learning store.
    One connection shared across threads, serialized by a lock.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock, self._conn:
            for statement in _SCHEMA:
                self._conn.execute(statement)

    # --- Executions ---

    def record_execution(self, record: ExecutionRecord) -> bool:
        """Append one execution. Returns False (and logs) if the write failed."""
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    """
                    INSERT INTO executions (
                        rule, category, action_id, action_hash, outcome,
                        latency_ms, timed_out, error, pattern_key, ts
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.rule,
                        record.category,
                        record.action_id,
                        record.action_hash,
                        record.outcome.value,
                        record.latency_ms,
                        int(record.timed_out),
                        record.error,
                        record.pattern_key,
                        to_db(record.ts),
                    ),
                )
            return True
        except sqlite3.Error as e:
            logger.error(
                "Failed to record execution rule=%s action=%s: %s",
                record.rule, record.action_id, e,
            )
            return False

    def _deserialize_execution(self, row: sqlite3.Row) -> ExecutionRecord:
        return ExecutionRecord(
            rule=row["rule"],
            category=row["category"],
            action_id=row["action_id"],
            action_hash=row["action_hash"],
            outcome=ExecutionOutcome(row["outcome"]),
            latency_ms=row["latency_ms"],
            timed_out=bool(row["timed_out"]),
            error=row["error"],
            pattern_key=row["pattern_key"],
            ts=datetime.fromisoformat(row["ts"]),
        )

    def recent_executions(self, rule: str, n: int = 100) -> List[ExecutionRecord]:
        """The n most recent executions of a rule, newest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM executions WHERE rule = ? ORDER BY ts DESC, id DESC LIMIT ?",
                (rule, n),
            ).fetchall()
        return [self._deserialize_execution(r) for r in rows]

    def executions_since(self, rule: str, since: datetime) -> List[ExecutionRecord]:
        """All executions of a rule at or after ``since``, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM executions WHERE rule = ? AND ts >= ? ORDER BY ts, id",
                (rule, to_db(since)),
            ).fetchall()
        return [self._deserialize_execution(r) for r in rows]

    def executions_for_action(self, action_id: str) -> List[ExecutionRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM executions WHERE action_id = ? ORDER BY id",
                (action_id,),
            ).fetchall()
        return [self._deserialize_execution(r) for r in rows]

    def execution_count(self, rule: Optional[str] = None) -> int:
        with self._lock:
            if rule is None:
                row = self._conn.execute("SELECT COUNT(*) AS cnt FROM executions").fetchone()
            else:
                row = self._conn.execute(
                    "SELECT COUNT(*) AS cnt FROM executions WHERE rule = ?", (rule,)
                ).fetchone()
        return row["cnt"]

    def system_metrics(
        self,
        window: timedelta,
        rule: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SystemMetrics:
        """Aggregate execution metrics over the trailing window."""
        if now is None:
            now = utcnow()
        since = as_utc(now) - window
        sql = """
            SELECT rule,
                   COUNT(*) AS executions,
                   SUM(CASE WHEN error IS NULL AND outcome != 'block' THEN 1 ELSE 0 END) AS successes,
                   SUM(CASE WHEN error IS NOT NULL THEN 1 ELSE 0 END) AS errors,
                   SUM(timed_out) AS timeouts,
                   SUM(CASE WHEN outcome = 'block' THEN 1 ELSE 0 END) AS blocks,
                   SUM(latency_ms) AS total_latency
            FROM executions
            WHERE ts >= ?
        """
        params: list = [to_db(since)]
        if rule is not None:
            sql += " AND rule = ?"
            params.append(rule)
        sql += " GROUP BY rule"

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()

        per_rule: Dict[str, RuleMetrics] = {}
        totals = {"executions": 0, "successes": 0, "errors": 0, "timeouts": 0, "blocks": 0}
        total_latency = 0.0
        for row in rows:
            n = row["executions"]
            per_rule[row["rule"]] = RuleMetrics(
                executions=n,
                successes=row["successes"],
                errors=row["errors"],
                timeouts=row["timeouts"],
                blocks=row["blocks"],
                success_rate=row["successes"] / n,
                error_rate=row["errors"] / n,
                avg_latency_ms=row["total_latency"] / n,
            )
            for key in totals:
                totals[key] += row[key]
            total_latency += row["total_latency"]

        n = totals["executions"]
        return SystemMetrics(
            **totals,
            success_rate=totals["successes"] / n if n else 0.0,
            error_rate=totals["errors"] / n if n else 0.0,
            block_rate=totals["blocks"] / n if n else 0.0,
            avg_latency_ms=total_latency / n if n else 0.0,
            window_seconds=window.total_seconds(),
            since=since,
            per_rule=per_rule,
        )

    def purge_executions(self, older_than: timedelta, now: Optional[datetime] = None) -> int:
        """Drop raw executions past the retention horizon. Pattern stats are kept."""
        if now is None:
            now = utcnow()
        cutoff = as_utc(now) - older_than
        try:
            with self._lock, self._conn:
                cursor = self._conn.execute(
                    "DELETE FROM executions WHERE ts < ?", (to_db(cutoff),)
                )
        except sqlite3.Error as e:
            logger.error("Failed to purge executions older than %s: %s", cutoff, e)
            return 0
        if cursor.rowcount:
            logger.info("Purged %d executions older than %s", cursor.rowcount, cutoff.isoformat())
        return cursor.rowcount

    # --- Pattern statistics ---

    def record_pattern_outcome(
        self,
        rule: str,
        pattern_type: PatternType,
        pattern_key: str,
        delta: PatternDelta,
        now: Optional[datetime] = None,
    ) -> bool:
        """Upsert-with-increment for one (rule, pattern) aggregate."""
        if now is None:
            now = utcnow()
        increments = [getattr(delta, c) for c in _PATTERN_COLUMNS]
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    """
                    INSERT INTO pattern_stats (
                        rule, pattern_type, pattern_key, tp, fp, tn, fn, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(rule, pattern_type, pattern_key) DO UPDATE SET
                        tp = tp + excluded.tp,
                        fp = fp + excluded.fp,
                        tn = tn + excluded.tn,
                        fn = fn + excluded.fn,
                        updated_at = excluded.updated_at
                    """,
                    (rule, PatternType(pattern_type).value, pattern_key, *increments, to_db(now)),
                )
            return True
        except sqlite3.Error as e:
            logger.error(
                "Failed to record pattern outcome rule=%s pattern=%s: %s",
                rule, pattern_key, e,
            )
            return False

    def pattern_effectiveness(self, rule: str) -> List[PatternStat]:
        """All pattern aggregates for a rule, largest sample first."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM pattern_stats WHERE rule = ?
                ORDER BY (tp + fp + tn + fn) DESC, pattern_key
                """,
                (rule,),
            ).fetchall()
        return [
            PatternStat(
                rule=r["rule"],
                pattern_type=PatternType(r["pattern_type"]),
                pattern_key=r["pattern_key"],
                tp=r["tp"],
                fp=r["fp"],
                tn=r["tn"],
                fn=r["fn"],
                updated_at=datetime.fromisoformat(r["updated_at"]),
            )
            for r in rows
        ]

    # --- Parameters ---

    def save_parameters(self, values: Dict[str, ParameterValue], now: Optional[datetime] = None) -> None:
        if now is None:
            now = utcnow()
        try:
            with self._lock, self._conn:
                self._conn.executemany(
                    """
                    INSERT INTO parameters (name, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(name) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                    """,
                    [(name, _encode(value), to_db(now)) for name, value in values.items()],
                )
        except sqlite3.Error as e:
            raise PersistenceWriteError(f"Failed to save parameters: {e}") from e

    def save_parameter(self, name: str, value: ParameterValue, now: Optional[datetime] = None) -> None:
        self.save_parameters({name: value}, now=now)

    def append_parameter_history(self, change: ParameterChange) -> None:
        """History row only; the live value is left as is."""
        try:
            with self._lock, self._conn:
                self._insert_history(change)
        except sqlite3.Error as e:
            raise PersistenceWriteError(
                f"Failed to append history for {change.name}: {e}"
            ) from e

    def _insert_history(self, change: ParameterChange) -> None:
        self._conn.execute(
            """
            INSERT INTO parameter_history (
                name, old_value, new_value, reason, confidence, proposal_id, ts
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                change.name,
                _encode(change.old_value),
                _encode(change.new_value),
                change.reason,
                change.confidence,
                change.proposal_id,
                to_db(change.ts),
            ),
        )

    def load_parameters(self) -> Dict[str, ParameterValue]:
        with self._lock:
            rows = self._conn.execute("SELECT name, value FROM parameters ORDER BY name").fetchall()
        return {r["name"]: _decode(r["value"]) for r in rows}

    def apply_parameter_change(self, change: ParameterChange) -> None:
        """History row and live value in one transaction."""
        try:
            with self._lock, self._conn:
                self._insert_history(change)
                self._conn.execute(
                    """
                    INSERT INTO parameters (name, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(name) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                    """,
                    (change.name, _encode(change.new_value), to_db(change.ts)),
                )
        except sqlite3.Error as e:
            raise PersistenceWriteError(
                f"Failed to persist change of {change.name}: {e}"
            ) from e

    def parameter_history(self, name: Optional[str] = None, limit: int = 100) -> List[ParameterChange]:
        """Most recent changes, oldest first."""
        with self._lock:
            if name is None:
                rows = self._conn.execute(
                    "SELECT * FROM parameter_history ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM parameter_history WHERE name = ? ORDER BY id DESC LIMIT ?",
                    (name, limit),
                ).fetchall()
        return [
            ParameterChange(
                name=r["name"],
                old_value=_decode(r["old_value"]),
                new_value=_decode(r["new_value"]),
                reason=r["reason"],
                confidence=r["confidence"],
                proposal_id=r["proposal_id"],
                ts=datetime.fromisoformat(r["ts"]),
            )
            for r in reversed(rows)
        ]

    def last_change_times(self) -> Dict[str, datetime]:
        """Timestamp of the latest change per parameter, for cooldown hydration."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT name, MAX(ts) AS ts FROM parameter_history GROUP BY name"
            ).fetchall()
        return {r["name"]: datetime.fromisoformat(r["ts"]) for r in rows}

    # --- Optimization results & baselines ---

    def record_optimization_result(self, result: OptimizationResult) -> None:
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    """
                    INSERT INTO optimization_results (
                        proposal_id, rule, parameter, status,
                        success_rate_before, success_rate_after, detail, ts
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        result.proposal_id,
                        result.rule,
                        result.parameter,
                        result.status.value,
                        result.success_rate_before,
                        result.success_rate_after,
                        json.dumps(result.detail, default=str),
                        to_db(result.ts),
                    ),
                )
        except sqlite3.Error as e:
            raise PersistenceWriteError(
                f"Failed to record optimization result for {result.proposal_id}: {e}"
            ) from e

    def optimization_results(
        self,
        rule: Optional[str] = None,
        status: Optional[ProposalStatus] = None,
        limit: int = 100,
    ) -> List[OptimizationResult]:
        sql = "SELECT * FROM optimization_results WHERE 1 = 1"
        params: list = []
        if rule is not None:
            sql += " AND rule = ?"
            params.append(rule)
        if status is not None:
            sql += " AND status = ?"
            params.append(ProposalStatus(status).value)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [
            OptimizationResult(
                proposal_id=r["proposal_id"],
                rule=r["rule"],
                parameter=r["parameter"],
                status=ProposalStatus(r["status"]),
                success_rate_before=r["success_rate_before"],
                success_rate_after=r["success_rate_after"],
                detail=json.loads(r["detail"]),
                ts=datetime.fromisoformat(r["ts"]),
            )
            for r in reversed(rows)
        ]

    def save_baseline(self, rule: str, snapshot: MetricsSnapshot) -> None:
        captured = snapshot.captured_at or utcnow()
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    """
                    INSERT INTO baselines (
                        rule, success_rate, error_rate, avg_latency_ms, executions, captured_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(rule) DO UPDATE SET
                        success_rate = excluded.success_rate,
                        error_rate = excluded.error_rate,
                        avg_latency_ms = excluded.avg_latency_ms,
                        executions = excluded.executions,
                        captured_at = excluded.captured_at
                    """,
                    (
                        rule,
                        snapshot.success_rate,
                        snapshot.error_rate,
                        snapshot.avg_latency_ms,
                        snapshot.executions,
                        to_db(captured),
                    ),
                )
        except sqlite3.Error as e:
            raise PersistenceWriteError(f"Failed to save baseline for {rule}: {e}") from e

    def load_baselines(self) -> Dict[str, MetricsSnapshot]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM baselines").fetchall()
        return {
            r["rule"]: MetricsSnapshot(
                success_rate=r["success_rate"],
                error_rate=r["error_rate"],
                avg_latency_ms=r["avg_latency_ms"],
                executions=r["executions"],
                captured_at=datetime.fromisoformat(r["captured_at"]),
            )
            for r in rows
        }

    def save_proposal(self, proposal: OptimizationProposal) -> None:
        """Upsert a proposal so monitoring survives a restart."""
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    """
                    INSERT INTO proposals (id, name, status, body, updated_at) VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        status = excluded.status,
                        body = excluded.body,
                        updated_at = excluded.updated_at
                    """,
                    (
                        proposal.id,
                        proposal.name,
                        proposal.status.value,
                        proposal.model_dump_json(),
                        to_db(utcnow()),
                    ),
                )
        except sqlite3.Error as e:
            raise PersistenceWriteError(f"Failed to save proposal {proposal.id}: {e}") from e

    def load_proposals(self, status: Optional[ProposalStatus] = None) -> List[OptimizationProposal]:
        sql = "SELECT body FROM proposals"
        params: list = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(ProposalStatus(status).value)
        sql += " ORDER BY rowid"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [OptimizationProposal.model_validate_json(r["body"]) for r in rows]

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()
