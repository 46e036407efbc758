"""Checkpoint and execution metrics storage backends."""

from skillrunner.storage.checkpoint_store import MemoryCheckpointStore, SqliteCheckpointStore
from skillrunner.storage.metrics_store import (
    MetricsSummary,
    ProviderMetrics,
    SkillMetrics,
    SqliteMetricsStore,
)

__all__ = [
    "MemoryCheckpointStore",
    "MetricsSummary",
    "ProviderMetrics",
    "SkillMetrics",
    "SqliteCheckpointStore",
    "SqliteMetricsStore",
]
