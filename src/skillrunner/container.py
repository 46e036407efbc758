"""Application container.

Everything the engine needs is constructed once, up front, and passed
explicitly to whoever uses it. There is no process-wide mutable state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from skillrunner.errors import CheckpointIOError, MetricsStoreError
from skillrunner.estimation import CostCalculator, TiktokenEstimator
from skillrunner.memory import MemoryLoader
from skillrunner.observability.logging import get_logger
from skillrunner.providers.factory import create_registry
from skillrunner.routing.router import Router
from skillrunner.skills.loader import SkillRegistry
from skillrunner.storage import MemoryCheckpointStore, SqliteCheckpointStore, SqliteMetricsStore
from skillrunner.workflow.checkpoint import default_machine_id
from skillrunner.workflow.executor import WorkflowExecutor
from skillrunner.workflow.phase_runner import PhaseRunner
from skillrunner.workflow.planner import Planner
from skillrunner.workflow.streaming import StreamingExecutor

if TYPE_CHECKING:
    from pathlib import Path

    from skillrunner.config import AppConfig
    from skillrunner.estimation.tokens import TokenEstimator
    from skillrunner.providers.registry import ProviderRegistry
    from skillrunner.workflow.checkpoint import CheckpointStore

log = get_logger(__name__)


@dataclass
class AppContainer:
    """Constructed collaborators of one process."""

    config: AppConfig
    skills: SkillRegistry
    providers: ProviderRegistry
    router: Router
    estimator: TokenEstimator
    costs: CostCalculator
    planner: Planner
    runner: PhaseRunner
    executor: WorkflowExecutor
    streaming: StreamingExecutor
    store: CheckpointStore | None
    metrics: SqliteMetricsStore | None
    memory: MemoryLoader
    machine_id: str

    @classmethod
    def build(
        cls,
        config: AppConfig,
        *,
        providers: ProviderRegistry | None = None,
        skills: SkillRegistry | None = None,
        store: CheckpointStore | None = None,
        metrics: SqliteMetricsStore | None = None,
        estimator: TokenEstimator | None = None,
    ) -> AppContainer:
        """Build the container from configuration.

        Args:
            config: Loaded application configuration.
            providers: Provider registry to use instead of building one.
            skills: Skill registry to use instead of loading the skills
                directory.
            store: Checkpoint store to use instead of the configured one.
            metrics: Metrics store to use instead of the configured one.
            estimator: Token estimator to use instead of tiktoken.
        """
        if skills is None:
            skills = SkillRegistry()
            skills.load_directory(config.skills.directory)
        if providers is None:
            providers = create_registry(config.routing)
        if store is None and config.checkpoints.enabled:
            store = _open_store(config.checkpoints.backend, config.checkpoints.db_path)
        if metrics is None and config.metrics.enabled:
            metrics = _open_metrics(config.metrics.db_path)
        estimator = estimator or TiktokenEstimator()
        machine_id = config.machine_id or default_machine_id()

        router = Router(config.routing, providers)
        costs = CostCalculator(config.routing)
        runner = PhaseRunner(router, costs, estimator)
        planner = Planner(
            router,
            estimator,
            costs,
            output_token_fraction=config.executor.output_token_fraction,
            default_output_tokens=config.executor.default_output_tokens,
        )
        executor = WorkflowExecutor(
            router,
            runner,
            store=store,
            metrics=metrics,
            machine_id=machine_id,
            max_parallel=config.executor.max_parallel,
            failure_policy=config.executor.failure_policy,
        )
        streaming = StreamingExecutor(
            router, runner, failure_policy=config.executor.failure_policy
        )
        log.debug(
            "container_built",
            skills=len(skills),
            providers=providers.names(),
            checkpoints=store is not None,
            metrics=metrics is not None,
        )
        return cls(
            config=config,
            skills=skills,
            providers=providers,
            router=router,
            estimator=estimator,
            costs=costs,
            planner=planner,
            runner=runner,
            executor=executor,
            streaming=streaming,
            store=store,
            metrics=metrics,
            memory=MemoryLoader(max_tokens=config.memory.max_tokens),
            machine_id=machine_id,
        )

    def load_memory(self, project_dir: Path | None = None, *, enabled: bool = True) -> str:
        """Memory text for a run, or empty when memory is disabled."""
        if not (enabled and self.config.memory.enabled):
            return ""
        return self.memory.load_text(project_dir)

    async def aclose(self) -> None:
        """Release provider clients and the stores."""
        await self.providers.close_all()
        if self.store is not None:
            try:
                await self.store.close()
            except CheckpointIOError as e:
                log.warning("checkpoint_store_close_failed", error=str(e))
        if self.metrics is not None:
            try:
                await self.metrics.close()
            except MetricsStoreError as e:
                log.warning("metrics_store_close_failed", error=str(e))


def _open_store(backend: str, db_path: Path) -> CheckpointStore | None:
    if backend == "memory":
        return MemoryCheckpointStore()
    try:
        return SqliteCheckpointStore(db_path)
    except CheckpointIOError as e:
        # Runs still work; they just cannot be resumed
        log.warning("checkpoint_store_unavailable", path=str(db_path), error=str(e))
        return None


def _open_metrics(db_path: Path) -> SqliteMetricsStore | None:
    try:
        return SqliteMetricsStore(db_path)
    except MetricsStoreError as e:
        log.warning("metrics_store_unavailable", path=str(db_path), error=str(e))
        return None
