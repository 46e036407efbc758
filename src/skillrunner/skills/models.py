"""Skill and phase definitions.

A skill is an immutable workflow definition: an ordered list of phases,
each naming the phases it depends on by id. Dependency references and
acyclicity are checked by :class:`skillrunner.workflow.dag.PhaseGraph`,
not here, so that a malformed graph is reported by the planner as a
validation error instead of failing model construction.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from skillrunner.errors import InvalidProfileError, PhaseNotFoundError

RoutingProfile = Literal["cheap", "balanced", "premium"]
PROFILES: tuple[str, ...] = ("cheap", "balanced", "premium")
DEFAULT_PROFILE = "balanced"

FailurePolicy = Literal["descendants", "abort"]

# Substrings in a phase id or name that mark it as a review step
_REVIEW_MARKERS = ("review", "validate", "check", "verify", "audit")


def validate_profile(profile: str) -> str:
    """Return ``profile`` if it is a known routing profile.

    Raises:
        InvalidProfileError: If the name is not cheap, balanced or premium.
    """
    if profile not in PROFILES:
        raise InvalidProfileError(profile)
    return profile


class Phase(BaseModel):
    """One step of a skill.

    Attributes:
        id: Identifier, unique within the skill.
        name: Display name.
        prompt_template: Prompt with ``{{ .input }}`` / ``{{ .phases.<id> }}`` placeholders.
        depends_on: Ids of phases whose output this phase consumes.
        routing_profile: Per-phase override of the routing profile.
        max_tokens: Generation budget for this phase.
        temperature: Sampling temperature.
        required: When True, a failure of this phase stops the whole workflow.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    prompt_template: str = Field(min_length=1)
    depends_on: tuple[str, ...] = ()
    routing_profile: RoutingProfile | None = None
    max_tokens: int = Field(default=4096, gt=0)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    required: bool = False

    @field_validator("depends_on", mode="before")
    @classmethod
    def _coerce_depends_on(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, str):
            return (value,)
        return value

    @property
    def is_review(self) -> bool:
        """True when the phase id or name marks it as a review step."""
        text = f"{self.id} {self.name}".lower()
        return any(marker in text for marker in _REVIEW_MARKERS)


class SkillRouting(BaseModel):
    """Skill-level routing hints.

    Model hints are honoured only when an enabled provider lists the model.
    """

    model_config = ConfigDict(frozen=True)

    default_profile: RoutingProfile = DEFAULT_PROFILE
    generation_model: str = ""
    review_model: str = ""
    fallback_model: str = ""
    max_context_tokens: int = Field(default=0, ge=0)


class Skill(BaseModel):
    """A named, versioned workflow definition composed of phases."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    version: str = "1.0.0"
    description: str = ""
    phases: tuple[Phase, ...] = Field(min_length=1)
    routing: SkillRouting = Field(default_factory=SkillRouting)
    output_phase: str | None = None
    failure_policy: FailurePolicy = "descendants"
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_phase_ids(self) -> Skill:
        seen: set[str] = set()
        for phase in self.phases:
            if phase.id in seen:
                raise ValueError(f"duplicate phase id: {phase.id}")
            seen.add(phase.id)
        if self.output_phase is not None and self.output_phase not in seen:
            raise ValueError(f"output_phase '{self.output_phase}' is not a phase of this skill")
        return self

    @property
    def default_profile(self) -> str:
        """The routing profile used when neither caller nor phase picks one."""
        return self.routing.default_profile

    @property
    def phase_ids(self) -> list[str]:
        """Phase ids in declaration order."""
        return [p.id for p in self.phases]

    def get_phase(self, phase_id: str) -> Phase:
        """Return the phase with the given id.

        Raises:
            PhaseNotFoundError: If the skill has no such phase.
        """
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        raise PhaseNotFoundError(self.id, phase_id)
