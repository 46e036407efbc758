"""Execution metrics storage.

Every workflow execution is stored as one ``executions`` row plus one
``phase_executions`` row per phase that ran in it. Phases restored from a
checkpoint are not stored again, so tokens and cost are counted once.
Queries aggregate a time window by provider, by skill, or overall.

Same threading model as the checkpoint store: stdlib sqlite3, blocking
calls pushed to a worker thread behind one connection lock.
"""

from __future__ import annotations

import asyncio
import sqlite3
import threading
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict

from skillrunner.errors import MetricsStoreError
from skillrunner.observability.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable

    from skillrunner.workflow.results import ExecutionResult, PhaseResult

log = get_logger(__name__)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS executions (
    id            TEXT PRIMARY KEY,
    skill_id      TEXT NOT NULL,
    skill_name    TEXT NOT NULL,
    status        TEXT NOT NULL,
    profile       TEXT,
    fingerprint   TEXT,
    resumed       INTEGER NOT NULL DEFAULT 0,
    phase_count   INTEGER NOT NULL,
    input_tokens  INTEGER NOT NULL,
    output_tokens INTEGER NOT NULL,
    cost          REAL NOT NULL,
    duration      REAL NOT NULL,
    started_at    TEXT NOT NULL,
    error         TEXT
);
CREATE INDEX IF NOT EXISTS idx_executions_started ON executions(started_at);
CREATE INDEX IF NOT EXISTS idx_executions_skill   ON executions(skill_id);

CREATE TABLE IF NOT EXISTS phase_executions (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    execution_id  TEXT NOT NULL REFERENCES executions(id) ON DELETE CASCADE,
    phase_id      TEXT NOT NULL,
    phase_name    TEXT NOT NULL,
    status        TEXT NOT NULL,
    provider      TEXT NOT NULL,
    model         TEXT NOT NULL,
    is_fallback   INTEGER NOT NULL DEFAULT 0,
    input_tokens  INTEGER NOT NULL,
    output_tokens INTEGER NOT NULL,
    cost          REAL NOT NULL,
    duration      REAL NOT NULL,
    started_at    TEXT NOT NULL,
    error         TEXT
);
CREATE INDEX IF NOT EXISTS idx_phase_executions_execution ON phase_executions(execution_id);
CREATE INDEX IF NOT EXISTS idx_phase_executions_provider  ON phase_executions(provider);
CREATE INDEX IF NOT EXISTS idx_phase_executions_started   ON phase_executions(started_at);
"""

_INSERT_EXECUTION = (
    "INSERT INTO executions (id, skill_id, skill_name, status, profile, fingerprint, resumed, "
    "phase_count, input_tokens, output_tokens, cost, duration, started_at, error) "
    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
)
_INSERT_PHASE = (
    "INSERT INTO phase_executions (execution_id, phase_id, phase_name, status, provider, model, "
    "is_fallback, input_tokens, output_tokens, cost, duration, started_at, error) "
    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
)


def _iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat()


def _rate(succeeded: int, total: int) -> float:
    return succeeded / total if total else 0.0


class MetricsSummary(BaseModel):
    """Totals over every execution in a window."""

    model_config = ConfigDict(frozen=True)

    executions: int = 0
    succeeded: int = 0
    failed: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    avg_duration_seconds: float = 0.0

    @property
    def success_rate(self) -> float:
        """Share of executions that completed, 0.0 when there were none."""
        return _rate(self.succeeded, self.executions)


class ProviderMetrics(BaseModel):
    """Phase requests served (or failed) by one provider."""

    model_config = ConfigDict(frozen=True)

    provider: str
    requests: int
    succeeded: int
    failed: int
    fallbacks: int
    input_tokens: int
    output_tokens: int
    cost: float
    avg_latency_seconds: float

    @property
    def success_rate(self) -> float:
        return _rate(self.succeeded, self.requests)


class SkillMetrics(BaseModel):
    """Executions of one skill."""

    model_config = ConfigDict(frozen=True)

    skill_id: str
    skill_name: str
    executions: int
    succeeded: int
    failed: int
    total_tokens: int
    cost: float
    avg_duration_seconds: float

    @property
    def success_rate(self) -> float:
        return _rate(self.succeeded, self.executions)


class SqliteMetricsStore:
    """SQLite-backed execution metrics.

    The database file and its parent directory are created on first use.
    """

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        """Open or create a metrics database.

        Args:
            db_path: Path to the ``.db`` file, or ``":memory:"``.

        Raises:
            MetricsStoreError: If the database cannot be opened.
        """
        self._db_path = str(db_path) if isinstance(db_path, Path) else db_path
        try:
            if self._db_path != ":memory:":
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                self._db_path,
                isolation_level=None,  # autocommit; record() opens its own transaction
                check_same_thread=False,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.executescript(_SCHEMA)
        except (OSError, sqlite3.Error) as e:
            raise MetricsStoreError(f"cannot open metrics database {self._db_path}: {e}") from e
        self._conn_lock = threading.Lock()

    @property
    def db_path(self) -> str:
        """Location of the database."""
        return self._db_path

    async def _run(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        def _execute() -> list[sqlite3.Row]:
            with self._conn_lock:
                return self._conn.execute(sql, params).fetchall()

        try:
            return await asyncio.to_thread(_execute)
        except sqlite3.Error as e:
            raise MetricsStoreError(f"metrics database error: {e}") from e

    async def record(
        self,
        result: ExecutionResult,
        *,
        phases: Iterable[PhaseResult] | None = None,
    ) -> str:
        """Store one execution and its phases.

        Args:
            result: Finished execution.
            phases: Phases that ran in this execution. Defaults to every
                phase result; token and cost totals of the execution row
                are summed over these.

        Returns:
            Id of the new execution row.

        Raises:
            MetricsStoreError: On database errors. Nothing is stored then.
        """
        executed = list(result.phase_results.values() if phases is None else phases)
        execution_id = uuid.uuid4().hex
        started_at = result.started_at or datetime.now(UTC)
        execution_row = (
            execution_id,
            result.skill_id,
            result.skill_name,
            str(result.status),
            result.profile,
            result.fingerprint,
            int(result.resumed),
            len(executed),
            sum(p.input_tokens for p in executed),
            sum(p.output_tokens for p in executed),
            sum(p.cost for p in executed),
            result.duration_seconds,
            _iso(started_at),
            result.error,
        )
        phase_rows = [
            (
                execution_id,
                p.phase_id,
                p.phase_name,
                str(p.status),
                p.provider_name,
                p.model_used,
                int(p.is_fallback),
                p.input_tokens,
                p.output_tokens,
                p.cost,
                p.duration_seconds,
                _iso(p.started_at or started_at),
                p.error,
            )
            for p in executed
        ]

        def _write() -> None:
            with self._conn_lock:
                self._conn.execute("BEGIN")
                try:
                    self._conn.execute(_INSERT_EXECUTION, execution_row)
                    self._conn.executemany(_INSERT_PHASE, phase_rows)
                except sqlite3.Error:
                    self._conn.execute("ROLLBACK")
                    raise
                self._conn.execute("COMMIT")

        try:
            await asyncio.to_thread(_write)
        except sqlite3.Error as e:
            raise MetricsStoreError(f"metrics database error: {e}") from e
        log.debug(
            "metrics_recorded",
            execution=execution_id[:12],
            skill=result.skill_id,
            phases=len(phase_rows),
        )
        return execution_id

    async def summary(
        self, since: datetime | None = None, *, skill_id: str | None = None
    ) -> MetricsSummary:
        """Totals over executions started at or after ``since``."""
        clauses: list[str] = []
        params: list[Any] = []
        if since is not None:
            clauses.append("started_at >= ?")
            params.append(_iso(since))
        if skill_id is not None:
            clauses.append("skill_id = ?")
            params.append(skill_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._run(
            "SELECT COUNT(*) AS executions, "
            "COALESCE(SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END), 0) AS succeeded, "
            "COALESCE(SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END), 0) AS failed, "
            "COALESCE(SUM(input_tokens), 0) AS input_tokens, "
            "COALESCE(SUM(output_tokens), 0) AS output_tokens, "
            "COALESCE(SUM(cost), 0.0) AS cost, "
            f"COALESCE(AVG(duration), 0.0) AS avg_duration FROM executions{where}",
            tuple(params),
        )
        row = rows[0]
        return MetricsSummary(
            executions=row["executions"],
            succeeded=row["succeeded"],
            failed=row["failed"],
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            cost=row["cost"],
            avg_duration_seconds=row["avg_duration"],
        )

    async def provider_metrics(self, since: datetime | None = None) -> list[ProviderMetrics]:
        """Per-provider phase statistics, busiest provider first.

        Phases that never reached a provider (skipped ones) are left out.
        """
        params: tuple[Any, ...] = ()
        where = "WHERE provider != ''"
        if since is not None:
            where += " AND started_at >= ?"
            params = (_iso(since),)
        rows = await self._run(
            "SELECT provider, COUNT(*) AS requests, "
            "SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS succeeded, "
            "SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed, "
            "SUM(is_fallback) AS fallbacks, "
            "SUM(input_tokens) AS input_tokens, SUM(output_tokens) AS output_tokens, "
            "SUM(cost) AS cost, AVG(duration) AS avg_latency "
            f"FROM phase_executions {where} "
            "GROUP BY provider ORDER BY requests DESC, provider",
            params,
        )
        return [
            ProviderMetrics(
                provider=row["provider"],
                requests=row["requests"],
                succeeded=row["succeeded"],
                failed=row["failed"],
                fallbacks=row["fallbacks"],
                input_tokens=row["input_tokens"],
                output_tokens=row["output_tokens"],
                cost=row["cost"],
                avg_latency_seconds=row["avg_latency"],
            )
            for row in rows
        ]

    async def skill_metrics(self, since: datetime | None = None) -> list[SkillMetrics]:
        """Per-skill execution statistics, most executed skill first."""
        params: tuple[Any, ...] = ()
        where = ""
        if since is not None:
            where = "WHERE started_at >= ? "
            params = (_iso(since),)
        rows = await self._run(
            "SELECT skill_id, MAX(skill_name) AS skill_name, COUNT(*) AS executions, "
            "SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS succeeded, "
            "SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed, "
            "SUM(input_tokens + output_tokens) AS total_tokens, "
            "SUM(cost) AS cost, AVG(duration) AS avg_duration "
            f"FROM executions {where}"
            "GROUP BY skill_id ORDER BY executions DESC, skill_id",
            params,
        )
        return [
            SkillMetrics(
                skill_id=row["skill_id"],
                skill_name=row["skill_name"],
                executions=row["executions"],
                succeeded=row["succeeded"],
                failed=row["failed"],
                total_tokens=row["total_tokens"],
                cost=row["cost"],
                avg_duration_seconds=row["avg_duration"],
            )
            for row in rows
        ]

    async def close(self) -> None:
        """Close the database connection."""
        with self._conn_lock:
            self._conn.close()
