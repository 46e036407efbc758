"""Execution planner: batches, routing and token/cost estimates.

Planning is read-only: it consults the router and the estimators but
never calls a provider.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from skillrunner.errors import NoProvidersError
from skillrunner.observability.logging import get_logger
from skillrunner.skills.models import validate_profile
from skillrunner.workflow.dag import PhaseGraph
from skillrunner.workflow.plan import ExecutionPlan, PhasePlan
from skillrunner.workflow.templates import estimation_prompt

if TYPE_CHECKING:
    from skillrunner.estimation.cost import CostCalculator
    from skillrunner.estimation.tokens import TokenEstimator
    from skillrunner.routing.router import Router
    from skillrunner.skills.models import Phase, Skill

log = get_logger(__name__)

# Fraction of a phase's max_tokens assumed to be generated
DEFAULT_OUTPUT_TOKEN_FRACTION = 0.5
# Output estimate used when the fraction yields nothing
DEFAULT_OUTPUT_TOKENS = 500

UNKNOWN = "unknown"


def effective_profile(phase: Phase, skill: Skill, profile: str | None) -> str:
    """Profile in effect for a phase: phase override, then caller, then skill default."""
    return phase.routing_profile or profile or skill.default_profile


class Planner:
    """Builds an :class:`ExecutionPlan` for a skill and a request."""

    def __init__(
        self,
        router: Router,
        estimator: TokenEstimator,
        costs: CostCalculator,
        *,
        output_token_fraction: float = DEFAULT_OUTPUT_TOKEN_FRACTION,
        default_output_tokens: int = DEFAULT_OUTPUT_TOKENS,
    ) -> None:
        self._router = router
        self._estimator = estimator
        self._costs = costs
        self._output_fraction = output_token_fraction
        self._default_output = default_output_tokens

    def estimate_output_tokens(self, phase: Phase) -> int:
        """Heuristic output estimate: a fraction of the phase's token budget."""
        return int(phase.max_tokens * self._output_fraction) or self._default_output

    def plan(
        self,
        skill: Skill,
        request: str,
        *,
        profile: str | None = None,
        memory: str = "",
    ) -> ExecutionPlan:
        """Plan a run of ``skill`` for ``request``.

        Args:
            skill: Skill to plan.
            request: User request text.
            profile: Caller-selected routing profile; phase overrides win.
            memory: Memory text prepended to every phase prompt.

        Returns:
            The execution plan.

        Raises:
            DependencyNotFoundError: If a phase depends on an unknown phase.
            CycleDetectedError: If the dependency graph has a cycle.
            InvalidProfileError: If ``profile`` is unknown.
        """
        if profile is not None:
            validate_profile(profile)
        graph = PhaseGraph.from_skill(skill)

        phase_plans: list[PhasePlan] = []
        for index in range(graph.batch_count):
            for phase in graph.batch_phases(index):
                phase_plans.append(self._plan_phase(skill, phase, index, request, profile, memory))

        plan = ExecutionPlan(
            skill_id=skill.id,
            skill_name=skill.name,
            skill_version=skill.version,
            input=request,
            profile=profile,
            phases=tuple(phase_plans),
            total_input_tokens=sum(p.estimated_input_tokens for p in phase_plans),
            total_output_tokens=sum(p.estimated_output_tokens for p in phase_plans),
            total_cost=sum(p.estimated_cost for p in phase_plans),
        )
        log.info(
            "plan_generated",
            skill=skill.id,
            batches=graph.batch_count,
            phases=len(phase_plans),
            estimated_tokens=plan.total_tokens,
            estimated_cost=round(plan.total_cost, 6),
        )
        return plan

    def _plan_phase(
        self,
        skill: Skill,
        phase: Phase,
        batch_index: int,
        request: str,
        profile: str | None,
        memory: str,
    ) -> PhasePlan:
        phase_profile = effective_profile(phase, skill, profile)
        input_tokens = self._estimator.estimate(
            estimation_prompt(phase.prompt_template, request, memory)
        )
        output_tokens = self.estimate_output_tokens(phase)

        try:
            selection = self._router.select(phase_profile, phase, skill.routing)
        except NoProvidersError:
            log.warning("plan_phase_unrouted", skill=skill.id, phase=phase.id)
            model_id = provider_name = UNKNOWN
            is_fallback = is_local = False
            cost = 0.0
        else:
            model_id = selection.model_id
            provider_name = selection.provider_name
            is_fallback = selection.is_fallback
            is_local = selection.is_local
            cost = self._costs.cost(
                provider_name, model_id, input_tokens, output_tokens, is_local=is_local
            )

        return PhasePlan(
            phase_id=phase.id,
            phase_name=phase.name,
            depends_on=phase.depends_on,
            routing_profile=phase_profile,
            model_id=model_id,
            provider_name=provider_name,
            is_fallback=is_fallback,
            is_local=is_local,
            estimated_input_tokens=input_tokens,
            estimated_output_tokens=output_tokens,
            estimated_cost=cost,
            batch_index=batch_index,
        )
