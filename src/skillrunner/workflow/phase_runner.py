"""Runs a single phase: render, route, call, account."""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from skillrunner.observability.logging import get_logger
from skillrunner.providers.base import CompletionRequest, ProviderError, ProviderExhaustedError
from skillrunner.workflow.results import PhaseResult, PhaseStatus
from skillrunner.workflow.templates import build_context, build_messages, render_template

if TYPE_CHECKING:
    from collections.abc import Mapping

    from skillrunner.estimation.cost import CostCalculator
    from skillrunner.estimation.tokens import TokenEstimator
    from skillrunner.providers.base import ChunkHandler, CompletionResponse, Message
    from skillrunner.routing.router import Router
    from skillrunner.skills.models import Phase, Skill

log = get_logger(__name__)


def _failed_provider(error: ProviderError) -> str:
    """Provider whose error ended the phase; the last one tried when all failed."""
    if isinstance(error, ProviderExhaustedError):
        return error.attempts[-1][0] if error.attempts else ""
    return error.provider


class PhaseRunner:
    """Executes one phase through the router.

    Provider failures (after the fallback chain is exhausted) become a
    Failed PhaseResult. Any other exception propagates to the caller.
    """

    def __init__(self, router: Router, costs: CostCalculator, estimator: TokenEstimator) -> None:
        self._router = router
        self._costs = costs
        self._estimator = estimator

    def messages_for(
        self,
        phase: Phase,
        request: str,
        outputs: Mapping[str, str],
        memory: str = "",
    ) -> list[Message]:
        """Render a phase's prompt and assemble its provider messages.

        Args:
            phase: Phase to render.
            request: Original request text.
            outputs: Outputs of completed phases keyed by id.
            memory: Memory text, or empty.
        """
        prompt = render_template(phase.prompt_template, build_context(request, outputs))
        dependency_outputs = {dep: outputs.get(dep, "") for dep in phase.depends_on}
        return build_messages(prompt, request, dependency_outputs, memory)

    def _token_counts(
        self, messages: list[Message], response: CompletionResponse
    ) -> tuple[int, int]:
        """Provider-reported token counts, estimated when the provider reports none."""
        if response.input_tokens or response.output_tokens:
            return response.input_tokens, response.output_tokens
        prompt_text = "\n".join(m["content"] for m in messages)
        return self._estimator.estimate(prompt_text), self._estimator.estimate(response.content)

    async def run(
        self,
        skill: Skill,
        phase: Phase,
        *,
        request: str,
        outputs: Mapping[str, str],
        profile: str,
        batch_index: int,
        memory: str = "",
        on_chunk: ChunkHandler | None = None,
    ) -> PhaseResult:
        """Run one phase to a terminal state.

        Args:
            skill: Skill the phase belongs to.
            phase: Phase to run.
            request: Original request text.
            outputs: Outputs of completed phases keyed by id.
            profile: Effective routing profile for the phase.
            batch_index: Batch the phase belongs to.
            memory: Memory text, or empty.
            on_chunk: When given, the phase is streamed and each fragment
                is passed to this handler.

        Returns:
            A Completed or Failed PhaseResult.
        """
        messages = self.messages_for(phase, request, outputs, memory)
        call = CompletionRequest(
            model_id="",
            messages=messages,
            max_tokens=phase.max_tokens,
            temperature=phase.temperature,
        )
        started_at = datetime.now(UTC)
        start = time.monotonic()
        log.info("phase_started", skill=skill.id, phase=phase.id, profile=profile)

        try:
            if on_chunk is None:
                response, selection = await self._router.complete(
                    profile, call, phase=phase, skill_routing=skill.routing
                )
            else:
                response, selection = await self._router.stream(
                    profile, call, on_chunk, phase=phase, skill_routing=skill.routing
                )
        except ProviderError as e:
            duration = time.monotonic() - start
            log.warning("phase_failed", skill=skill.id, phase=phase.id, error=str(e))
            return PhaseResult(
                phase_id=phase.id,
                phase_name=phase.name,
                status=PhaseStatus.FAILED,
                error=str(e),
                started_at=started_at,
                duration_seconds=duration,
                provider_name=_failed_provider(e),
                batch_index=batch_index,
            )

        duration = time.monotonic() - start
        input_tokens, output_tokens = self._token_counts(messages, response)
        cost = self._costs.cost(
            selection.provider_name,
            response.model_used or selection.model_id,
            input_tokens,
            output_tokens,
            is_local=selection.is_local,
        )
        log.info(
            "phase_completed",
            skill=skill.id,
            phase=phase.id,
            provider=selection.provider_name,
            model=response.model_used,
            tokens=input_tokens + output_tokens,
            duration=round(duration, 3),
        )
        return PhaseResult(
            phase_id=phase.id,
            phase_name=phase.name,
            status=PhaseStatus.COMPLETED,
            output=response.content,
            started_at=started_at,
            duration_seconds=duration,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model_used=response.model_used or selection.model_id,
            provider_name=selection.provider_name,
            is_fallback=selection.is_fallback,
            cost=cost,
            batch_index=batch_index,
        )
