"""Batch workflow executor with checkpoint/resume.

Batches run in increasing index order. Phases inside a batch run as
concurrent tasks and the executor waits for all of them to reach a
terminal state before the next batch starts. After each batch the
accumulated Completed results are checkpointed (best-effort).
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from skillrunner.errors import (
    CheckpointConflictError,
    CheckpointIOError,
    DependencyFailure,
    MetricsStoreError,
    RunInProgressError,
    WorkflowAbortedError,
)
from skillrunner.observability.logging import get_logger, run_context
from skillrunner.skills.models import validate_profile
from skillrunner.workflow.checkpoint import Checkpoint, compute_fingerprint, default_machine_id
from skillrunner.workflow.dag import PhaseGraph
from skillrunner.workflow.planner import effective_profile
from skillrunner.workflow.results import (
    ExecutionResult,
    PhaseResult,
    PhaseStatus,
    WorkflowStatus,
)

if TYPE_CHECKING:
    from skillrunner.routing.router import Router
    from skillrunner.skills.models import FailurePolicy, Phase, Skill
    from skillrunner.storage.metrics_store import SqliteMetricsStore
    from skillrunner.workflow.checkpoint import CheckpointStatus, CheckpointStore
    from skillrunner.workflow.phase_runner import PhaseRunner

log = get_logger(__name__)

DEFAULT_MAX_PARALLEL = 4


def final_output(skill: Skill, graph: PhaseGraph, results: dict[str, PhaseResult]) -> str:
    """Output of the designated output phase, else of the last completed phase.

    "Last" is by batch index, then declaration order.
    """
    if skill.output_phase is not None:
        designated = results.get(skill.output_phase)
        if designated is not None and designated.status == PhaseStatus.COMPLETED:
            return designated.output
        return ""
    completed = [r for r in results.values() if r.status == PhaseStatus.COMPLETED]
    if not completed:
        return ""
    last = max(
        completed,
        key=lambda r: (graph.batch_index(r.phase_id), graph.declaration_index(r.phase_id)),
    )
    return last.output


def failure_policy_for(skill: Skill, default: FailurePolicy = "descendants") -> FailurePolicy:
    """The skill's own failure policy if it sets one, else ``default``."""
    if "failure_policy" in skill.model_fields_set:
        return skill.failure_policy
    return default


def skipped_result(phase: Phase, batch_index: int, reason: Exception) -> PhaseResult:
    """PhaseResult for a phase that never ran."""
    return PhaseResult(
        phase_id=phase.id,
        phase_name=phase.name,
        status=PhaseStatus.SKIPPED,
        error=str(reason),
        batch_index=batch_index,
    )


@dataclass
class _Run:
    """Mutable state of one execution."""

    skill: Skill
    graph: PhaseGraph
    request: str
    profile: str | None
    memory: str
    fingerprint: str
    checkpointing: bool
    results: dict[str, PhaseResult] = field(default_factory=dict)
    states: dict[str, PhaseStatus] = field(default_factory=dict)
    abort_reason: str | None = None
    error: str | None = None
    resumed: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    restored: set[str] = field(default_factory=set)

    def outputs(self) -> dict[str, str]:
        return {
            pid: r.output for pid, r in self.results.items() if r.status == PhaseStatus.COMPLETED
        }

    def record(self, result: PhaseResult) -> None:
        self.results[result.phase_id] = result
        self.states[result.phase_id] = result.status


class WorkflowExecutor:
    """Runs a skill to completion, batch by batch.

    A failed phase skips its transitive dependents. Under the ``abort``
    failure policy, or when the failed phase is ``required``, every phase
    not yet started is skipped instead.

    A checkpointed run holds its fingerprint until it returns; a second
    run for the same fingerprint on this executor raises
    :class:`RunInProgressError` instead of repeating the work.

    With a metrics store, every run that executes phases is recorded once
    it finishes. Runs answered entirely from a checkpoint are not.
    """

    def __init__(
        self,
        router: Router,
        runner: PhaseRunner,
        *,
        store: CheckpointStore | None = None,
        metrics: SqliteMetricsStore | None = None,
        machine_id: str | None = None,
        max_parallel: int = DEFAULT_MAX_PARALLEL,
        failure_policy: FailurePolicy = "descendants",
    ) -> None:
        self._router = router
        self._runner = runner
        self._store = store
        self._metrics = metrics
        self._machine_id = machine_id or default_machine_id()
        self._max_parallel = max(1, max_parallel)
        self._failure_policy = failure_policy
        self._active: set[str] = set()

    @property
    def machine_id(self) -> str:
        """Machine identity used for fingerprints."""
        return self._machine_id

    def fingerprint(self, skill: Skill, request: str) -> str:
        """Checkpoint fingerprint for running ``skill`` on ``request`` here."""
        return compute_fingerprint(skill.id, request, self._machine_id)

    async def execute(
        self,
        skill: Skill,
        request: str,
        *,
        profile: str | None = None,
        resume: bool = False,
        force: bool = False,
        checkpoint: bool = True,
        memory: str = "",
    ) -> ExecutionResult:
        """Execute a skill.

        Args:
            skill: Skill to run.
            request: User request text.
            profile: Caller-selected routing profile; phase overrides win.
            resume: Continue from an existing checkpoint.
            force: Discard an existing checkpoint and start over.
            checkpoint: Persist progress after each batch.
            memory: Memory text prepended to every phase prompt.

        Returns:
            The execution result. Phase failures are reported in the result,
            not raised.

        Raises:
            ValidationError: If the skill graph or the profile is invalid.
            NoProvidersError: If no provider is enabled.
            CheckpointConflictError: If an incomplete checkpoint exists and
                neither ``resume`` nor ``force`` was given.
            RunInProgressError: If a checkpointed run for the same skill and
                request is still executing.
        """
        if profile is not None:
            validate_profile(profile)
        graph = PhaseGraph.from_skill(skill)
        self._router.require_providers()

        run = _Run(
            skill=skill,
            graph=graph,
            request=request,
            profile=profile,
            memory=memory,
            fingerprint=self.fingerprint(skill, request),
            checkpointing=checkpoint and self._store is not None,
        )
        if not run.checkpointing:
            with run_context(skill=skill.id):
                return await self._execute_run(run, resume=resume, force=force)

        if run.fingerprint in self._active:
            raise RunInProgressError(run.fingerprint)
        self._active.add(run.fingerprint)
        try:
            with run_context(skill=skill.id, fingerprint=run.fingerprint[:12]):
                return await self._execute_run(run, resume=resume, force=force)
        finally:
            self._active.discard(run.fingerprint)

    async def _execute_run(self, run: _Run, *, resume: bool, force: bool) -> ExecutionResult:
        skill, graph = run.skill, run.graph
        for phase in skill.phases:
            run.states[phase.id] = PhaseStatus.PENDING

        if run.checkpointing:
            stored = await self._prepare_checkpoint(run, resume=resume, force=force)
            if stored is not None:
                return stored

        started_at = datetime.now(UTC)
        start = time.monotonic()
        start_batch = self._first_pending_batch(run)
        log.info(
            "workflow_started",
            skill=skill.id,
            batches=graph.batch_count,
            start_batch=start_batch,
            resumed=run.resumed,
        )

        try:
            for index in range(start_batch, graph.batch_count):
                await self._run_batch(run, index)
                if run.checkpointing:
                    await self._save(run, status="in_progress")
        except asyncio.CancelledError:
            self._skip_remaining(run, "workflow cancelled")
            log.warning("workflow_cancelled", skill=skill.id)
            if run.checkpointing:
                await self._save(run, status="failed")
            raise

        result = self._finish(run, started_at, time.monotonic() - start)
        if run.checkpointing:
            await self._save(
                run,
                status="completed" if result.succeeded else "failed",
                final=result.final_output,
            )
        if self._metrics is not None:
            await self._record_metrics(run, result)
        return result

    # -- checkpoints ---------------------------------------------------------

    async def _prepare_checkpoint(
        self, run: _Run, *, resume: bool, force: bool
    ) -> ExecutionResult | None:
        """Apply resume/force semantics. Returns a result when nothing is left to run."""
        assert self._store is not None
        try:
            existing = await self._store.get(run.fingerprint)
        except CheckpointIOError as e:
            log.warning("checkpoint_read_failed", fingerprint=run.fingerprint[:12], error=str(e))
            return None
        if existing is None:
            if resume:
                log.info("checkpoint_not_found", fingerprint=run.fingerprint[:12])
            return None

        if existing.is_complete:
            if resume and not force:
                log.info("checkpoint_resumed", skill=run.skill.id, progress="complete")
                return ExecutionResult(
                    skill_id=run.skill.id,
                    skill_name=run.skill.name,
                    status=WorkflowStatus.COMPLETED,
                    phase_results=existing.phase_results,
                    started_at=existing.created_at,
                    final_output=existing.final_output,
                    profile=existing.profile,
                    fingerprint=run.fingerprint,
                    resumed=True,
                )
            return None

        if force:
            await self._discard(run.fingerprint)
            return None
        if not resume:
            raise CheckpointConflictError(run.fingerprint, existing.progress)

        known = set(run.skill.phase_ids)
        for pid, result in existing.completed_results().items():
            if pid in known:
                run.record(result)
                run.restored.add(pid)
        run.resumed = True
        run.created_at = existing.created_at
        log.info(
            "checkpoint_resumed",
            skill=run.skill.id,
            progress=existing.progress,
            phases=len(run.results),
        )
        return None

    async def _record_metrics(self, run: _Run, result: ExecutionResult) -> None:
        """Store the phases this run executed. Failures are logged, never raised."""
        assert self._metrics is not None
        executed = [r for pid, r in result.phase_results.items() if pid not in run.restored]
        try:
            await self._metrics.record(result, phases=executed)
        except MetricsStoreError as e:
            log.warning("metrics_record_failed", skill=run.skill.id, error=str(e))

    async def _discard(self, fingerprint: str) -> None:
        assert self._store is not None
        try:
            await self._store.delete(fingerprint)
        except CheckpointIOError as e:
            log.warning("checkpoint_delete_failed", fingerprint=fingerprint[:12], error=str(e))
        else:
            log.info("checkpoint_discarded", fingerprint=fingerprint[:12])

    async def _save(
        self,
        run: _Run,
        *,
        status: CheckpointStatus,
        final: str = "",
    ) -> None:
        """Persist Completed results. Failures are logged, never raised."""
        assert self._store is not None
        checkpoint = Checkpoint(
            fingerprint=run.fingerprint,
            skill_id=run.skill.id,
            skill_name=run.skill.name,
            request=run.request,
            machine_id=self._machine_id,
            profile=run.profile,
            completed_batch=self._last_finished_batch(run),
            total_batches=run.graph.batch_count,
            phase_results={
                pid: r for pid, r in run.results.items() if r.status == PhaseStatus.COMPLETED
            },
            status=status,
            final_output=final,
            created_at=run.created_at,
        )
        try:
            await self._store.save(checkpoint)
        except CheckpointIOError as e:
            log.warning(
                "checkpoint_save_failed",
                fingerprint=run.fingerprint[:12],
                error=str(e),
            )

    # -- scheduling ----------------------------------------------------------

    @staticmethod
    def _first_pending_batch(run: _Run) -> int:
        for index in range(run.graph.batch_count):
            if any(pid not in run.results for pid in run.graph.batches[index]):
                return index
        return run.graph.batch_count

    @staticmethod
    def _last_finished_batch(run: _Run) -> int:
        finished = -1
        for index in range(run.graph.batch_count):
            batch = run.graph.batches[index]
            if not all(run.states[pid] == PhaseStatus.COMPLETED for pid in batch):
                break
            finished = index
        return finished

    def _skip_reason(self, run: _Run, phase: Phase) -> Exception | None:
        if run.abort_reason is not None:
            return WorkflowAbortedError(phase.id, run.abort_reason)
        for dep in phase.depends_on:
            if run.states[dep] != PhaseStatus.COMPLETED:
                return DependencyFailure(phase.id, dep)
        return None

    def _skip_remaining(self, run: _Run, reason: str) -> None:
        """Close out phases that did not reach a terminal state."""
        for phase in run.skill.phases:
            state = run.states[phase.id]
            if state.is_terminal:
                continue
            index = run.graph.batch_index(phase.id)
            if state == PhaseStatus.RUNNING:
                run.record(
                    PhaseResult(
                        phase_id=phase.id,
                        phase_name=phase.name,
                        status=PhaseStatus.FAILED,
                        error=reason,
                        batch_index=index,
                    )
                )
            else:
                run.record(skipped_result(phase, index, WorkflowAbortedError(phase.id, reason)))

    async def _run_batch(self, run: _Run, index: int) -> None:
        runnable: list[Phase] = []
        for phase in run.graph.batch_phases(index):
            if run.states[phase.id] == PhaseStatus.COMPLETED:
                continue
            reason = self._skip_reason(run, phase)
            if reason is not None:
                run.record(skipped_result(phase, index, reason))
                log.info("phase_skipped", skill=run.skill.id, phase=phase.id, reason=str(reason))
                continue
            runnable.append(phase)

        if not runnable:
            return

        log.info("batch_started", skill=run.skill.id, batch=index, phases=len(runnable))
        outputs = run.outputs()
        semaphore = asyncio.Semaphore(self._max_parallel)

        async def _run_phase(phase: Phase) -> PhaseResult:
            async with semaphore:
                run.states[phase.id] = PhaseStatus.RUNNING
                return await self._runner.run(
                    run.skill,
                    phase,
                    request=run.request,
                    outputs=outputs,
                    profile=effective_profile(phase, run.skill, run.profile),
                    batch_index=index,
                    memory=run.memory,
                )

        outcomes = await asyncio.gather(
            *(_run_phase(phase) for phase in runnable), return_exceptions=True
        )

        for phase, outcome in zip(runnable, outcomes, strict=True):
            if isinstance(outcome, PhaseResult):
                run.record(outcome)
                if outcome.status == PhaseStatus.FAILED:
                    self._on_failure(run, phase, outcome.error or "phase failed")
                continue
            if not isinstance(outcome, Exception):
                raise outcome
            log.error(
                "phase_error",
                skill=run.skill.id,
                phase=phase.id,
                error=str(outcome),
                exc_info=outcome,
            )
            run.record(
                PhaseResult(
                    phase_id=phase.id,
                    phase_name=phase.name,
                    status=PhaseStatus.FAILED,
                    error=f"{type(outcome).__name__}: {outcome}",
                    batch_index=index,
                )
            )
            run.error = run.error or f"phase '{phase.id}' raised {outcome!r}"
            run.abort_reason = run.abort_reason or f"workflow error in phase '{phase.id}'"

        log.info("batch_finished", skill=run.skill.id, batch=index)

    def _on_failure(self, run: _Run, phase: Phase, error: str) -> None:
        if run.error is None:
            run.error = f"phase '{phase.id}' failed: {error}"
        if run.abort_reason is not None:
            return
        if phase.required:
            run.abort_reason = f"required phase '{phase.id}' failed"
        elif failure_policy_for(run.skill, self._failure_policy) == "abort":
            run.abort_reason = f"phase '{phase.id}' failed"
        if run.abort_reason is not None:
            log.warning("workflow_aborting", skill=run.skill.id, reason=run.abort_reason)

    def _finish(self, run: _Run, started_at: datetime, duration: float) -> ExecutionResult:
        # Phases never reached because of an abort
        for index in range(run.graph.batch_count):
            for phase in run.graph.batch_phases(index):
                if not run.states[phase.id].is_terminal:
                    reason = self._skip_reason(run, phase) or WorkflowAbortedError(
                        phase.id, "not started"
                    )
                    run.record(skipped_result(phase, index, reason))

        ordered = {
            phase.id: run.results[phase.id]
            for index in range(run.graph.batch_count)
            for phase in run.graph.batch_phases(index)
        }
        succeeded = all(r.status == PhaseStatus.COMPLETED for r in ordered.values())
        result = ExecutionResult(
            skill_id=run.skill.id,
            skill_name=run.skill.name,
            status=WorkflowStatus.COMPLETED if succeeded else WorkflowStatus.FAILED,
            phase_results=ordered,
            started_at=started_at,
            duration_seconds=duration,
            final_output=final_output(run.skill, run.graph, ordered),
            error=None if succeeded else run.error,
            profile=run.profile,
            fingerprint=run.fingerprint if run.checkpointing else None,
            resumed=run.resumed,
        )
        log.info(
            "workflow_finished",
            skill=run.skill.id,
            status=str(result.status),
            tokens=result.total_tokens,
            cost=round(result.total_cost, 6),
            duration=round(duration, 3),
        )
        return result
