"""Execution plan models."""

from __future__ import annotations

from datetime import UTC, datetime
from itertools import groupby
from pathlib import Path  # noqa: TC003 - used at runtime

from pydantic import BaseModel, ConfigDict, Field


class PhasePlan(BaseModel):
    """Planned routing and estimates for one phase."""

    model_config = ConfigDict(frozen=True)

    phase_id: str
    phase_name: str
    depends_on: tuple[str, ...] = ()
    routing_profile: str
    model_id: str
    provider_name: str
    is_fallback: bool = False
    is_local: bool = False
    estimated_input_tokens: int = Field(default=0, ge=0)
    estimated_output_tokens: int = Field(default=0, ge=0)
    estimated_cost: float = Field(default=0.0, ge=0.0)
    batch_index: int = Field(ge=0)

    @property
    def estimated_tokens(self) -> int:
        """Estimated input plus output tokens."""
        return self.estimated_input_tokens + self.estimated_output_tokens


class ExecutionPlan(BaseModel):
    """Immutable preview of a skill run: batches, routing and estimates.

    Phases are ordered by batch index, then declaration order.
    """

    model_config = ConfigDict(frozen=True)

    skill_id: str
    skill_name: str
    skill_version: str
    input: str
    profile: str | None = None
    phases: tuple[PhasePlan, ...]
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost: float = 0.0
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def total_tokens(self) -> int:
        """Estimated tokens across every phase."""
        return self.total_input_tokens + self.total_output_tokens

    def batches(self) -> list[list[PhasePlan]]:
        """Phase plans grouped by batch index, in increasing order."""
        ordered = sorted(self.phases, key=lambda p: p.batch_index)
        return [list(group) for _, group in groupby(ordered, key=lambda p: p.batch_index)]

    def batch_count(self) -> int:
        """Number of batches in the plan."""
        return len({p.batch_index for p in self.phases})

    def phase(self, phase_id: str) -> PhasePlan | None:
        """Return the plan of one phase, or None."""
        return next((p for p in self.phases if p.phase_id == phase_id), None)

    def to_json(self) -> str:
        """Serialize the plan as indented JSON."""
        return self.model_dump_json(indent=2)

    def save(self, path: Path) -> None:
        """Write the plan as JSON, creating parent directories."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_json() + "\n", encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> ExecutionPlan:
        """Read a plan previously written by :meth:`save`."""
        return cls.model_validate_json(path.read_text(encoding="utf-8"))
