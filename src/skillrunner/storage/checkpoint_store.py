"""Checkpoint store implementations.

SqliteCheckpointStore persists one row per fingerprint using stdlib
sqlite3, with blocking calls pushed to a worker thread. Both stores
serialize writes per fingerprint with an asyncio.Lock; different
fingerprints never wait on each other.
"""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from collections import defaultdict
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from skillrunner.errors import CheckpointIOError
from skillrunner.observability.logging import get_logger
from skillrunner.workflow.checkpoint import Checkpoint

if TYPE_CHECKING:
    from datetime import timedelta

log = get_logger(__name__)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS checkpoints (
    fingerprint TEXT PRIMARY KEY,
    skill_id    TEXT NOT NULL,
    status      TEXT NOT NULL,
    updated_at  TEXT NOT NULL,
    data        JSON NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_checkpoints_skill   ON checkpoints(skill_id);
CREATE INDEX IF NOT EXISTS idx_checkpoints_updated ON checkpoints(updated_at);
"""


class _FingerprintLocks:
    """Lazily created asyncio.Lock per fingerprint."""

    def __init__(self) -> None:
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __call__(self, fingerprint: str) -> asyncio.Lock:
        return self._locks[fingerprint]


def _touch(checkpoint: Checkpoint) -> Checkpoint:
    return checkpoint.model_copy(update={"updated_at": datetime.now(UTC)})


class MemoryCheckpointStore:
    """In-process checkpoint store; checkpoints are lost when the process exits."""

    def __init__(self) -> None:
        self._items: dict[str, Checkpoint] = {}
        self._lock = _FingerprintLocks()

    async def get(self, fingerprint: str) -> Checkpoint | None:
        """Return the checkpoint for a fingerprint, or None."""
        return self._items.get(fingerprint)

    async def save(self, checkpoint: Checkpoint) -> None:
        """Insert or replace a checkpoint."""
        async with self._lock(checkpoint.fingerprint):
            self._items[checkpoint.fingerprint] = _touch(checkpoint)

    async def delete(self, fingerprint: str) -> bool:
        """Delete a checkpoint. Returns True if one existed."""
        async with self._lock(fingerprint):
            return self._items.pop(fingerprint, None) is not None

    async def list_checkpoints(
        self,
        skill_id: str | None = None,
        *,
        include_completed: bool = False,
    ) -> list[Checkpoint]:
        """Checkpoints, most recently updated first."""
        items = [
            c
            for c in self._items.values()
            if (skill_id is None or c.skill_id == skill_id)
            and (include_completed or not c.is_complete)
        ]
        return sorted(items, key=lambda c: c.updated_at, reverse=True)

    async def cleanup(self, older_than: timedelta) -> int:
        """Delete checkpoints not updated within ``older_than``."""
        cutoff = datetime.now(UTC) - older_than
        stale = [fp for fp, c in self._items.items() if c.updated_at < cutoff]
        for fingerprint in stale:
            await self.delete(fingerprint)
        return len(stale)

    async def close(self) -> None:
        """Nothing to release."""


class SqliteCheckpointStore:
    """SQLite-backed checkpoint store.

    The database file and its parent directory are created on first use.
    """

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        """Open or create a checkpoint database.

        Args:
            db_path: Path to the ``.db`` file, or ``":memory:"``.

        Raises:
            CheckpointIOError: If the database cannot be opened.
        """
        self._db_path = str(db_path) if isinstance(db_path, Path) else db_path
        try:
            if self._db_path != ":memory:":
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                self._db_path,
                isolation_level=None,  # autocommit
                check_same_thread=False,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.executescript(_SCHEMA)
        except (OSError, sqlite3.Error) as e:
            raise CheckpointIOError(f"cannot open checkpoint database {self._db_path}: {e}") from e
        self._conn_lock = threading.Lock()
        self._lock = _FingerprintLocks()

    @property
    def db_path(self) -> str:
        """Location of the database."""
        return self._db_path

    async def _run(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        def _execute() -> list[sqlite3.Row]:
            with self._conn_lock:
                cursor = self._conn.execute(sql, params)
                rows = cursor.fetchall()
                return rows

        try:
            return await asyncio.to_thread(_execute)
        except sqlite3.Error as e:
            raise CheckpointIOError(f"checkpoint database error: {e}") from e

    @staticmethod
    def _decode(row: sqlite3.Row) -> Checkpoint:
        try:
            return Checkpoint.model_validate_json(row["data"])
        except ValidationError as e:
            raise CheckpointIOError(f"corrupt checkpoint {row['fingerprint']}: {e}") from e

    async def get(self, fingerprint: str) -> Checkpoint | None:
        """Return the checkpoint for a fingerprint, or None.

        Raises:
            CheckpointIOError: On database errors or undecodable rows.
        """
        rows = await self._run(
            "SELECT fingerprint, data FROM checkpoints WHERE fingerprint = ?", (fingerprint,)
        )
        return self._decode(rows[0]) if rows else None

    async def save(self, checkpoint: Checkpoint) -> None:
        """Insert or replace a checkpoint.

        Raises:
            CheckpointIOError: On database errors.
        """
        checkpoint = _touch(checkpoint)
        async with self._lock(checkpoint.fingerprint):
            await self._run(
                "INSERT OR REPLACE INTO checkpoints "
                "(fingerprint, skill_id, status, updated_at, data) VALUES (?, ?, ?, ?, ?)",
                (
                    checkpoint.fingerprint,
                    checkpoint.skill_id,
                    checkpoint.status,
                    checkpoint.updated_at.isoformat(),
                    checkpoint.model_dump_json(),
                ),
            )
        log.debug(
            "checkpoint_saved",
            fingerprint=checkpoint.fingerprint[:12],
            progress=checkpoint.progress,
            status=checkpoint.status,
        )

    async def delete(self, fingerprint: str) -> bool:
        """Delete a checkpoint. Returns True if one existed."""
        async with self._lock(fingerprint):
            rows = await self._run(
                "DELETE FROM checkpoints WHERE fingerprint = ? RETURNING fingerprint",
                (fingerprint,),
            )
        return bool(rows)

    async def list_checkpoints(
        self,
        skill_id: str | None = None,
        *,
        include_completed: bool = False,
    ) -> list[Checkpoint]:
        """Checkpoints, most recently updated first.

        Undecodable rows are logged and skipped.
        """
        clauses: list[str] = []
        params: list[Any] = []
        if skill_id is not None:
            clauses.append("skill_id = ?")
            params.append(skill_id)
        if not include_completed:
            clauses.append("status != 'completed'")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._run(
            f"SELECT fingerprint, data FROM checkpoints{where} ORDER BY updated_at DESC",
            tuple(params),
        )
        checkpoints: list[Checkpoint] = []
        for row in rows:
            try:
                checkpoints.append(self._decode(row))
            except CheckpointIOError as e:
                log.warning("checkpoint_decode_failed", error=str(e))
        return checkpoints

    async def cleanup(self, older_than: timedelta) -> int:
        """Delete checkpoints not updated within ``older_than``."""
        cutoff = (datetime.now(UTC) - older_than).isoformat()
        rows = await self._run(
            "DELETE FROM checkpoints WHERE updated_at < ? RETURNING fingerprint", (cutoff,)
        )
        if rows:
            log.info("checkpoints_cleaned", count=len(rows))
        return len(rows)

    async def close(self) -> None:
        """Close the database connection."""
        with self._conn_lock:
            self._conn.close()
