"""Tests for the application container."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from skillrunner.config import AppConfig
from skillrunner.container import AppContainer
from skillrunner.estimation import CharRatioEstimator
from skillrunner.storage import MemoryCheckpointStore, SqliteCheckpointStore, SqliteMetricsStore
from tests.fixtures.fakes import FakeProvider, make_registry

if TYPE_CHECKING:
    from pathlib import Path


def _config(skills_dir: Path, **sections: Any) -> AppConfig:
    """Config reading skills from ``skills_dir``; metrics stay off unless given."""
    return AppConfig.from_dict(
        {"skills": {"directory": str(skills_dir)}, "metrics": {"enabled": False}, **sections}
    )


def _build(config: AppConfig) -> AppContainer:
    return AppContainer.build(
        config,
        providers=make_registry(FakeProvider("ollama", is_local=True)),
        estimator=CharRatioEstimator(),
    )


def test_build_loads_skills_directory(tmp_path: Path) -> None:
    """Skills come from the configured directory."""
    (tmp_path / "one.yaml").write_text(
        "id: one\nname: One\nphases:\n  - id: a\n    name: A\n    prompt_template: x\n"
    )
    config = _config(tmp_path, checkpoints={"enabled": False})

    container = _build(config)

    assert [s.id for s in container.skills.list_skills()] == ["one"]
    assert container.store is None
    assert container.metrics is None


def test_build_memory_backend(tmp_path: Path) -> None:
    """The memory backend needs no database file."""
    config = _config(tmp_path, checkpoints={"backend": "memory"})

    assert isinstance(_build(config).store, MemoryCheckpointStore)


def test_build_sqlite_backend(tmp_path: Path) -> None:
    """The SQLite backend opens the configured database."""
    db_path = tmp_path / "state" / "checkpoints.db"
    config = _config(tmp_path, checkpoints={"db_path": str(db_path)})

    container = _build(config)
    asyncio.run(container.aclose())

    assert isinstance(container.store, SqliteCheckpointStore)
    assert db_path.exists()


def test_unopenable_store_disables_checkpoints(tmp_path: Path) -> None:
    """A database that cannot be opened leaves runs without checkpoints."""
    blocker = tmp_path / "file"
    blocker.write_text("not a directory")
    config = _config(
        tmp_path / "skills", checkpoints={"db_path": str(blocker / "checkpoints.db")}
    )

    assert _build(config).store is None


def test_build_opens_metrics_database(tmp_path: Path) -> None:
    """Metrics go to the configured database and reach the executor."""
    db_path = tmp_path / "state" / "metrics.db"
    config = _config(
        tmp_path, checkpoints={"enabled": False}, metrics={"db_path": str(db_path)}
    )

    container = _build(config)
    asyncio.run(container.aclose())

    assert isinstance(container.metrics, SqliteMetricsStore)
    assert container.metrics.db_path == str(db_path)
    assert db_path.exists()


def test_unopenable_metrics_database_disables_metrics(tmp_path: Path) -> None:
    """Runs still work when the metrics database cannot be opened."""
    blocker = tmp_path / "file"
    blocker.write_text("not a directory")
    config = _config(
        tmp_path / "skills",
        checkpoints={"enabled": False},
        metrics={"db_path": str(blocker / "metrics.db")},
    )

    assert _build(config).metrics is None


def test_injected_metrics_store_is_used(tmp_path: Path) -> None:
    """An explicit metrics store wins over configuration."""
    metrics = SqliteMetricsStore()
    config = _config(tmp_path, checkpoints={"enabled": False})

    container = AppContainer.build(
        config,
        providers=make_registry(FakeProvider("ollama", is_local=True)),
        estimator=CharRatioEstimator(),
        metrics=metrics,
    )

    assert container.metrics is metrics
    asyncio.run(container.aclose())


def test_machine_id_from_config(tmp_path: Path) -> None:
    """A configured machine id is used for fingerprints."""
    config = _config(tmp_path, machine_id="build-agent-7", checkpoints={"enabled": False})

    assert _build(config).machine_id == "build-agent-7"


def test_load_memory_respects_switches(tmp_path: Path) -> None:
    """Memory is only read when enabled in config and for the run."""
    (tmp_path / "MEMORY.md").write_text("house rules")
    enabled = _build(_config(tmp_path, checkpoints={"enabled": False}))
    disabled = _build(
        _config(tmp_path, checkpoints={"enabled": False}, memory={"enabled": False})
    )

    assert "house rules" in enabled.load_memory(tmp_path)
    assert enabled.load_memory(tmp_path, enabled=False) == ""
    assert disabled.load_memory(tmp_path) == ""
