"""Phase and workflow result models."""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - pydantic needs it at runtime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, computed_field


class PhaseStatus(StrEnum):
    """Per-phase state: Pending -> Running -> Completed | Failed | Skipped."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        """True for Completed, Failed and Skipped."""
        return self in (PhaseStatus.COMPLETED, PhaseStatus.FAILED, PhaseStatus.SKIPPED)


class WorkflowStatus(StrEnum):
    """Overall outcome of an execution."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PhaseResult(BaseModel):
    """Outcome of one phase."""

    model_config = ConfigDict(frozen=True)

    phase_id: str = Field(min_length=1)
    phase_name: str = ""
    status: PhaseStatus
    output: str = ""
    error: str | None = None
    started_at: datetime | None = None
    duration_seconds: float = 0.0
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    model_used: str = ""
    provider_name: str = ""
    is_fallback: bool = False
    cost: float = 0.0
    batch_index: int = 0

    @property
    def total_tokens(self) -> int:
        """Input plus output tokens."""
        return self.input_tokens + self.output_tokens


class ExecutionResult(BaseModel):
    """Outcome of a workflow execution.

    ``status`` is Completed only when every phase completed. Token and
    cost totals are derived from the phase results.
    """

    skill_id: str
    skill_name: str
    status: WorkflowStatus
    phase_results: dict[str, PhaseResult] = Field(default_factory=dict)
    started_at: datetime | None = None
    duration_seconds: float = 0.0
    final_output: str = ""
    error: str | None = None
    profile: str | None = None
    fingerprint: str | None = None
    resumed: bool = False

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_input_tokens(self) -> int:
        """Sum of input tokens over all phase results."""
        return sum(r.input_tokens for r in self.phase_results.values())

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_output_tokens(self) -> int:
        """Sum of output tokens over all phase results."""
        return sum(r.output_tokens for r in self.phase_results.values())

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_tokens(self) -> int:
        """Sum of input and output tokens over all phase results."""
        return self.total_input_tokens + self.total_output_tokens

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_cost(self) -> float:
        """Sum of phase costs in USD."""
        return sum(r.cost for r in self.phase_results.values())

    @property
    def succeeded(self) -> bool:
        """True when the workflow completed."""
        return self.status == WorkflowStatus.COMPLETED

    def phases_with_status(self, status: PhaseStatus) -> list[str]:
        """Ids of phases in the given state."""
        return [pid for pid, r in self.phase_results.items() if r.status == status]
