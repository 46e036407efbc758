"""Streaming workflow executor.

Execution events are written by a producer task into a bounded queue and
drained by the consumer, so a slow consumer applies backpressure to the
workflow. Streaming runs never write checkpoints: partial phase output is
not a resumable unit.

Phases run one at a time in (batch index, declaration order), so the
fragments of different phases never interleave.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from skillrunner.errors import DependencyFailure, WorkflowAbortedError
from skillrunner.observability.logging import get_logger, run_context
from skillrunner.skills.models import validate_profile
from skillrunner.workflow.dag import PhaseGraph
from skillrunner.workflow.executor import failure_policy_for, final_output, skipped_result
from skillrunner.workflow.planner import effective_profile
from skillrunner.workflow.results import (
    ExecutionResult,
    PhaseResult,
    PhaseStatus,
    WorkflowStatus,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine

    from skillrunner.routing.router import Router
    from skillrunner.skills.models import FailurePolicy, Phase, Skill
    from skillrunner.workflow.phase_runner import PhaseRunner

log = get_logger(__name__)

DEFAULT_QUEUE_SIZE = 64
CANCELLED = "cancelled"


@dataclass(frozen=True)
class PhaseStarted:
    """A phase began running. ``index`` is its position in the run order."""

    phase_id: str
    phase_name: str
    index: int
    total: int


@dataclass(frozen=True)
class PhaseProgress:
    """An incremental output fragment of the running phase."""

    phase_id: str
    fragment: str


@dataclass(frozen=True)
class TokenUpdate:
    """Running token totals of the workflow."""

    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class PhaseCompleted:
    phase_id: str
    input_tokens: int
    output_tokens: int
    duration_seconds: float


@dataclass(frozen=True)
class PhaseFailed:
    phase_id: str
    error: str


@dataclass(frozen=True)
class WorkflowCompleted:
    """Last event of a run that was not cancelled."""

    success: bool
    result: ExecutionResult


StreamEvent = (
    PhaseStarted | PhaseProgress | TokenUpdate | PhaseCompleted | PhaseFailed | WorkflowCompleted
)

_DONE = object()


class StreamingRun:
    """A streaming execution in progress.

    Iterate it to receive events; iteration ends after WorkflowCompleted,
    or immediately once the run is cancelled. While the queue is full the
    producer blocks, so a consumer either keeps iterating or calls
    :meth:`wait`, which discards the events it has not read.
    """

    def __init__(self, skill: Skill, graph: PhaseGraph, queue_size: int) -> None:
        self.skill = skill
        self.graph = graph
        self.results: dict[str, PhaseResult] = {}
        self.running: Phase | None = None
        self.started_at = datetime.now(UTC)
        self._start = time.monotonic()
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_size)
        self._closed = False
        self._result: ExecutionResult | None = None
        self._error: BaseException | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def result(self) -> ExecutionResult | None:
        """Final result, once the run has finished or been cancelled."""
        return self._result

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._start

    async def emit(self, event: StreamEvent) -> None:
        """Queue an event for the consumer. Dropped once the run is closed."""
        if not self._closed:
            await self._queue.put(event)

    def _discard_queued(self) -> None:
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()

    def _drop_pending(self) -> None:
        self._discard_queued()
        self._queue.put_nowait(_DONE)

    async def _close(self) -> None:
        if not self._closed:
            self._closed = True
            await self._queue.put(_DONE)

    def _attach(self, coro: Coroutine[Any, Any, ExecutionResult]) -> None:
        self._coro = coro

        async def _produce() -> None:
            try:
                with run_context(skill=self.skill.id, mode="stream"):
                    self._result = await coro
            except asyncio.CancelledError:
                self._result = self._cancelled_result()
                self._drop_pending()
                raise
            except Exception as e:
                # Re-raised to whoever consumes or waits on the run
                self._error = e
            await self._close()

        self._task = asyncio.create_task(_produce())

    async def _join(self) -> None:
        assert self._task is not None
        try:
            await self._task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise

    def _cancelled_result(self) -> ExecutionResult:
        for index in range(self.graph.batch_count):
            for phase in self.graph.batch_phases(index):
                if phase.id in self.results:
                    continue
                if self.running is not None and phase.id == self.running.id:
                    self.results[phase.id] = PhaseResult(
                        phase_id=phase.id,
                        phase_name=phase.name,
                        status=PhaseStatus.FAILED,
                        error=CANCELLED,
                        batch_index=index,
                    )
                else:
                    self.results[phase.id] = skipped_result(
                        phase, index, WorkflowAbortedError(phase.id, CANCELLED)
                    )
        log.warning("workflow_cancelled", skill=self.skill.id, mode="stream")
        return ExecutionResult(
            skill_id=self.skill.id,
            skill_name=self.skill.name,
            status=WorkflowStatus.CANCELLED,
            phase_results=self.results,
            started_at=self.started_at,
            duration_seconds=self.elapsed,
            final_output=final_output(self.skill, self.graph, self.results),
            error=CANCELLED,
        )

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while True:
            item = await self._queue.get()
            if item is _DONE:
                break
            yield item
        if self._error is not None:
            raise self._error

    async def wait(self) -> ExecutionResult:
        """Wait for the run to finish and return its result.

        Events not consumed yet are discarded, and no new ones are queued.
        A cancelled run returns its Cancelled result. An unexpected error
        raised inside the run is re-raised here.
        """
        self._discard_queued()
        await self._join()
        self._drop_pending()
        if self._error is not None:
            raise self._error
        assert self._result is not None
        return self._result

    async def cancel(self) -> ExecutionResult | None:
        """Cancel the run. The in-flight phase fails, the rest are skipped."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await self._join()
        if self._result is None and self._error is None and self._task is not None:
            # Cancelled before the run got to start
            self._coro.close()
            self._result = self._cancelled_result()
            self._drop_pending()
        return self._result


class StreamingExecutor:
    """Runs a skill and reports progress as a stream of events."""

    def __init__(
        self,
        router: Router,
        runner: PhaseRunner,
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        failure_policy: FailurePolicy = "descendants",
    ) -> None:
        self._router = router
        self._runner = runner
        self._queue_size = queue_size
        self._failure_policy = failure_policy

    def start(
        self,
        skill: Skill,
        request: str,
        *,
        profile: str | None = None,
        memory: str = "",
    ) -> StreamingRun:
        """Start a streaming run in a background task.

        Must be called from a running event loop.

        Raises:
            ValidationError: If the skill graph or the profile is invalid.
            NoProvidersError: If no provider is enabled.
        """
        if profile is not None:
            validate_profile(profile)
        graph = PhaseGraph.from_skill(skill)
        self._router.require_providers()

        run = StreamingRun(skill, graph, self._queue_size)
        run._attach(self._produce(run, request, profile, memory))
        return run

    async def execute(
        self,
        skill: Skill,
        request: str,
        handler: Callable[[StreamEvent], Awaitable[None] | None],
        *,
        profile: str | None = None,
        memory: str = "",
    ) -> ExecutionResult:
        """Run a skill, passing every event to ``handler``.

        ``handler`` may be a plain function or a coroutine function. If the
        calling task is cancelled the run is cancelled with it.
        """
        run = self.start(skill, request, profile=profile, memory=memory)
        try:
            async for event in run:
                outcome = handler(event)
                if inspect.isawaitable(outcome):
                    await outcome
        except (asyncio.CancelledError, Exception):
            await run.cancel()
            raise
        return await run.wait()

    async def _produce(
        self,
        run: StreamingRun,
        request: str,
        profile: str | None,
        memory: str,
    ) -> ExecutionResult:
        skill, graph = run.skill, run.graph
        order = [(i, p) for i in range(graph.batch_count) for p in graph.batch_phases(i)]
        total = len(order)
        input_tokens = output_tokens = 0
        abort_reason: str | None = None
        error: str | None = None
        log.info("workflow_started", skill=skill.id, mode="stream", phases=total)

        for position, (index, phase) in enumerate(order):
            reason = self._skip_reason(run, phase, abort_reason)
            if reason is not None:
                run.results[phase.id] = skipped_result(phase, index, reason)
                log.info("phase_skipped", skill=skill.id, phase=phase.id, reason=str(reason))
                continue

            await run.emit(PhaseStarted(phase.id, phase.name, position, total))

            async def _on_chunk(fragment: str, phase_id: str = phase.id) -> None:
                await run.emit(PhaseProgress(phase_id, fragment))

            outputs = {
                pid: r.output
                for pid, r in run.results.items()
                if r.status == PhaseStatus.COMPLETED
            }
            run.running = phase
            result = await self._runner.run(
                skill,
                phase,
                request=request,
                outputs=outputs,
                profile=effective_profile(phase, skill, profile),
                batch_index=index,
                memory=memory,
                on_chunk=_on_chunk,
            )
            run.results[phase.id] = result
            run.running = None

            if result.status == PhaseStatus.COMPLETED:
                input_tokens += result.input_tokens
                output_tokens += result.output_tokens
                await run.emit(
                    PhaseCompleted(
                        phase.id, result.input_tokens, result.output_tokens, result.duration_seconds
                    )
                )
                await run.emit(TokenUpdate(input_tokens, output_tokens))
                continue

            await run.emit(PhaseFailed(phase.id, result.error or "phase failed"))
            error = error or f"phase '{phase.id}' failed: {result.error}"
            if phase.required:
                abort_reason = f"required phase '{phase.id}' failed"
            elif failure_policy_for(skill, self._failure_policy) == "abort":
                abort_reason = f"phase '{phase.id}' failed"

        ordered = {p.id: run.results[p.id] for _, p in order}
        succeeded = all(r.status == PhaseStatus.COMPLETED for r in ordered.values())
        result = ExecutionResult(
            skill_id=skill.id,
            skill_name=skill.name,
            status=WorkflowStatus.COMPLETED if succeeded else WorkflowStatus.FAILED,
            phase_results=ordered,
            started_at=run.started_at,
            duration_seconds=run.elapsed,
            final_output=final_output(skill, graph, ordered),
            error=None if succeeded else error,
            profile=profile,
        )
        log.info(
            "workflow_finished",
            skill=skill.id,
            mode="stream",
            status=str(result.status),
            tokens=result.total_tokens,
        )
        await run.emit(WorkflowCompleted(succeeded, result))
        return result

    @staticmethod
    def _skip_reason(
        run: StreamingRun, phase: Phase, abort_reason: str | None
    ) -> Exception | None:
        if abort_reason is not None:
            return WorkflowAbortedError(phase.id, abort_reason)
        for dep in phase.depends_on:
            dep_result = run.results.get(dep)
            if dep_result is None or dep_result.status != PhaseStatus.COMPLETED:
                return DependencyFailure(phase.id, dep)
        return None
