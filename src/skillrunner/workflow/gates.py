"""Approval gates consulted between planning and execution."""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal, Protocol

if TYPE_CHECKING:
    from collections.abc import Callable

    from skillrunner.workflow.plan import ExecutionPlan

GateDecision = Literal["approve", "reject"]


class PlanGate(Protocol):
    """Protocol for gates that approve or reject an execution plan."""

    async def approve(self, plan: ExecutionPlan) -> GateDecision:
        """Called once a plan is ready, before any phase runs.

        Args:
            plan: The plan about to be executed.

        Returns:
            "approve" to execute or "reject" to stop.
        """
        ...


class AutoApproveGate:
    """Gate that approves every plan."""

    async def approve(self, _plan: ExecutionPlan) -> GateDecision:
        return "approve"


class ConfirmGate:
    """Gate that asks a yes/no question.

    Args:
        confirm: Callable taking the question and returning the answer,
            e.g. ``typer.confirm``.
    """

    def __init__(self, confirm: Callable[[str], bool]) -> None:
        self._confirm = confirm

    async def approve(self, plan: ExecutionPlan) -> GateDecision:
        question = (
            f"Execute {plan.skill_name} ({len(plan.phases)} phases, "
            f"~{plan.total_tokens:,} tokens, ~${plan.total_cost:.4f})?"
        )
        return "approve" if self._confirm(question) else "reject"
