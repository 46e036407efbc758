"""Tests for single-phase execution."""

from __future__ import annotations

import pytest

from skillrunner.estimation import CharRatioEstimator, CostCalculator
from skillrunner.providers.base import ProviderError
from skillrunner.routing.config import ModelConfig, ProviderRouting, RoutingConfiguration
from skillrunner.skills.models import Skill
from skillrunner.workflow.phase_runner import PhaseRunner
from skillrunner.workflow.results import PhaseStatus
from tests.fixtures.fakes import FakeProvider, make_router


def _runner(*providers: FakeProvider, config: RoutingConfiguration | None = None) -> PhaseRunner:
    router = make_router(*providers, config=config)
    return PhaseRunner(router, CostCalculator(router.config), CharRatioEstimator())


# --- Messages ---


def test_messages_render_dependency_outputs(code_review_skill: Skill) -> None:
    """Templates see dependency outputs and the context message lists them."""
    runner = _runner(FakeProvider())
    phase = code_review_skill.get_phase("security")

    messages = runner.messages_for(phase, "src", {"patterns": "singleton"})

    assert messages[-1] == {"role": "user", "content": "Security review of singleton"}
    assert "Previous Phase (patterns):\nsingleton" in messages[0]["content"]


def test_messages_include_memory_first(code_review_skill: Skill) -> None:
    """Memory is the first system message."""
    runner = _runner(FakeProvider())
    phase = code_review_skill.get_phase("patterns")

    messages = runner.messages_for(phase, "src", {}, memory="use tabs")

    assert messages[0]["role"] == "system"
    assert "use tabs" in messages[0]["content"]


# --- Run ---


@pytest.mark.asyncio
async def test_run_completes_with_provider_usage(code_review_skill: Skill) -> None:
    """A successful call yields a Completed result with reported tokens."""
    provider = FakeProvider("openai", reply="found 3 patterns", usage=(12, 7))
    runner = _runner(provider)
    phase = code_review_skill.get_phase("patterns")

    result = await runner.run(
        code_review_skill, phase, request="src", outputs={}, profile="balanced", batch_index=0
    )

    assert result.status == PhaseStatus.COMPLETED
    assert result.output == "found 3 patterns"
    assert (result.input_tokens, result.output_tokens) == (12, 7)
    assert result.provider_name == "openai"
    assert result.model_used == "fake-model"
    assert result.started_at is not None
    assert provider.calls[0].max_tokens == phase.max_tokens


@pytest.mark.asyncio
async def test_run_estimates_tokens_when_unreported(code_review_skill: Skill) -> None:
    """Providers reporting no usage get estimated token counts."""
    provider = FakeProvider("ollama", is_local=True, reply="x" * 40, usage=(0, 0))
    runner = _runner(provider)
    phase = code_review_skill.get_phase("patterns")

    result = await runner.run(
        code_review_skill, phase, request="src", outputs={}, profile="cheap", batch_index=0
    )

    assert result.output_tokens == 10
    assert result.input_tokens > 0
    assert result.cost == 0.0


@pytest.mark.asyncio
async def test_run_prices_cloud_calls(code_review_skill: Skill) -> None:
    """Cost follows the configured model prices."""
    provider = FakeProvider("openai", default_model="priced", usage=(100, 50))
    config = RoutingConfiguration(
        providers={
            "openai": ProviderRouting(
                models={
                    "priced": ModelConfig(cost_per_input_token=0.01, cost_per_output_token=0.02)
                }
            )
        },
        fallback_chain=["openai"],
    )
    runner = _runner(provider, config=config)
    phase = code_review_skill.get_phase("patterns")

    result = await runner.run(
        code_review_skill, phase, request="src", outputs={}, profile="premium", batch_index=0
    )

    assert result.cost == pytest.approx(2.0)


@pytest.mark.asyncio
async def test_run_turns_provider_failure_into_failed_result(code_review_skill: Skill) -> None:
    """Exhausting the fallback chain fails the phase without raising."""
    provider = FakeProvider("openai", error=ProviderError("openai", "quota"))
    runner = _runner(provider)
    phase = code_review_skill.get_phase("report")

    result = await runner.run(
        code_review_skill, phase, request="src", outputs={}, profile="balanced", batch_index=2
    )

    assert result.status == PhaseStatus.FAILED
    assert "quota" in (result.error or "")
    assert result.batch_index == 2
    assert result.output == ""
    assert result.provider_name == "openai"


@pytest.mark.asyncio
async def test_run_streams_fragments(code_review_skill: Skill) -> None:
    """With a chunk handler the phase is streamed."""
    runner = _runner(FakeProvider("openai", reply="a b c"))
    phase = code_review_skill.get_phase("patterns")
    fragments: list[str] = []

    async def on_chunk(fragment: str) -> None:
        fragments.append(fragment)

    result = await runner.run(
        code_review_skill,
        phase,
        request="src",
        outputs={},
        profile="balanced",
        batch_index=0,
        on_chunk=on_chunk,
    )

    assert fragments == ["a ", "b ", "c"]
    assert result.output == "a b c"
