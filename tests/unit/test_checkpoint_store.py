"""Tests for checkpoint store backends."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import TYPE_CHECKING

import pytest

from skillrunner.errors import CheckpointIOError
from skillrunner.storage import MemoryCheckpointStore, SqliteCheckpointStore
from skillrunner.workflow.checkpoint import Checkpoint, CheckpointStore
from skillrunner.workflow.results import PhaseResult, PhaseStatus

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


def _checkpoint(fingerprint: str, skill_id: str = "skill", **kwargs: object) -> Checkpoint:
    return Checkpoint.model_validate(
        {"fingerprint": fingerprint, "skill_id": skill_id, "total_batches": 2, **kwargs}
    )


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> Iterator[CheckpointStore]:
    """Each test runs against both backends."""
    backend: CheckpointStore
    if request.param == "memory":
        backend = MemoryCheckpointStore()
    else:
        backend = SqliteCheckpointStore(tmp_path / "state" / "checkpoints.db")
    yield backend
    asyncio.run(backend.close())


# --- Common behaviour ---


@pytest.mark.asyncio
async def test_stores_satisfy_protocol(store: CheckpointStore) -> None:
    """Both backends implement CheckpointStore."""
    assert isinstance(store, CheckpointStore)


@pytest.mark.asyncio
async def test_get_missing_returns_none(store: CheckpointStore) -> None:
    """Unknown fingerprints have no checkpoint."""
    assert await store.get("nope") is None


@pytest.mark.asyncio
async def test_save_and_get(store: CheckpointStore) -> None:
    """A saved checkpoint is returned with its phase results."""
    result = PhaseResult(phase_id="a", status=PhaseStatus.COMPLETED, output="done")
    await store.save(_checkpoint("fp1", completed_batch=0, phase_results={"a": result}))

    loaded = await store.get("fp1")

    assert loaded is not None
    assert loaded.completed_batch == 0
    assert loaded.phase_results["a"].output == "done"


@pytest.mark.asyncio
async def test_save_replaces_existing(store: CheckpointStore) -> None:
    """Saving the same fingerprint again overwrites it."""
    await store.save(_checkpoint("fp1", completed_batch=0))
    await store.save(_checkpoint("fp1", completed_batch=1, status="completed"))

    loaded = await store.get("fp1")

    assert loaded is not None
    assert loaded.completed_batch == 1
    assert loaded.is_complete


@pytest.mark.asyncio
async def test_delete(store: CheckpointStore) -> None:
    """Delete reports whether a checkpoint existed."""
    await store.save(_checkpoint("fp1"))

    assert await store.delete("fp1") is True
    assert await store.delete("fp1") is False
    assert await store.get("fp1") is None


@pytest.mark.asyncio
async def test_list_filters_completed_and_skill(store: CheckpointStore) -> None:
    """Listing hides completed checkpoints unless asked and filters by skill."""
    await store.save(_checkpoint("a1", skill_id="alpha"))
    await store.save(_checkpoint("a2", skill_id="alpha", status="completed"))
    await store.save(_checkpoint("b1", skill_id="beta", status="failed"))

    pending = {c.fingerprint for c in await store.list_checkpoints()}
    everything = {c.fingerprint for c in await store.list_checkpoints(include_completed=True)}
    alpha = {c.fingerprint for c in await store.list_checkpoints("alpha")}

    assert pending == {"a1", "b1"}
    assert everything == {"a1", "a2", "b1"}
    assert alpha == {"a1"}


@pytest.mark.asyncio
async def test_list_orders_most_recent_first(store: CheckpointStore) -> None:
    """The most recently updated checkpoint is listed first."""
    await store.save(_checkpoint("old"))
    await asyncio.sleep(0.01)
    await store.save(_checkpoint("new"))

    listed = [c.fingerprint for c in await store.list_checkpoints()]

    assert listed == ["new", "old"]


@pytest.mark.asyncio
async def test_cleanup_removes_stale(store: CheckpointStore) -> None:
    """Cleanup deletes checkpoints older than the cutoff."""
    await store.save(_checkpoint("fp1"))

    assert await store.cleanup(timedelta(days=1)) == 0
    assert await store.cleanup(timedelta(seconds=-1)) == 1
    assert await store.get("fp1") is None


@pytest.mark.asyncio
async def test_concurrent_saves_to_different_fingerprints(store: CheckpointStore) -> None:
    """Writes to different fingerprints do not interfere."""
    await asyncio.gather(*(store.save(_checkpoint(f"fp{i}")) for i in range(10)))

    listed = await store.list_checkpoints()

    assert len(listed) == 10


# --- SQLite specifics ---


@pytest.mark.asyncio
async def test_sqlite_persists_across_instances(tmp_path: Path) -> None:
    """A new store on the same file sees earlier checkpoints."""
    path = tmp_path / "checkpoints.db"
    first = SqliteCheckpointStore(path)
    await first.save(_checkpoint("fp1", request="hello"))
    await first.close()

    second = SqliteCheckpointStore(path)
    loaded = await second.get("fp1")
    await second.close()

    assert loaded is not None
    assert loaded.request == "hello"


@pytest.mark.asyncio
async def test_sqlite_corrupt_row_raises_on_get(tmp_path: Path) -> None:
    """Undecodable rows surface as CheckpointIOError."""
    store = SqliteCheckpointStore(tmp_path / "checkpoints.db")
    await store._run(
        "INSERT INTO checkpoints (fingerprint, skill_id, status, updated_at, data) "
        "VALUES ('bad', 's', 'failed', '2020-01-01', '{\"nope\": 1}')"
    )

    with pytest.raises(CheckpointIOError):
        await store.get("bad")
    assert await store.list_checkpoints() == []
    await store.close()


def test_sqlite_unopenable_path_raises(tmp_path: Path) -> None:
    """An unusable database location raises CheckpointIOError."""
    blocker = tmp_path / "file"
    blocker.write_text("not a directory")

    with pytest.raises(CheckpointIOError):
        SqliteCheckpointStore(blocker / "checkpoints.db")
