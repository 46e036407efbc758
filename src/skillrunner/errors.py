"""Exception hierarchy for SkillRunner.

Validation errors are raised before any execution and are never retried.
Provider errors live in :mod:`skillrunner.providers.base` and are retried by
walking the fallback chain. Checkpoint errors are raised by the executor and
the checkpoint stores.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path


class SkillRunnerError(Exception):
    """Base class for all SkillRunner errors."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(SkillRunnerError):
    """Raised when a skill, phase or request is malformed."""


class SkillNotFoundError(ValidationError):
    """Raised when a skill id or name is not registered."""

    def __init__(self, skill: str, available: list[str] | None = None) -> None:
        self.skill = skill
        self.available = available or []
        msg = f"skill not found: {skill}"
        if self.available:
            msg += f" (available: {', '.join(sorted(self.available))})"
        super().__init__(msg)


class PhaseNotFoundError(ValidationError):
    """Raised when a phase id is not part of a skill."""

    def __init__(self, skill_id: str, phase_id: str) -> None:
        self.skill_id = skill_id
        self.phase_id = phase_id
        super().__init__(f"phase not found in skill '{skill_id}': {phase_id}")


class InvalidProfileError(ValidationError):
    """Raised for an unknown routing profile name."""

    def __init__(self, profile: str) -> None:
        self.profile = profile
        super().__init__(
            f"invalid routing profile: {profile!r} (expected cheap, balanced or premium)"
        )


class CycleDetectedError(ValidationError):
    """Raised when the phase dependency graph contains a cycle.

    Attributes:
        phases: Ids of the phases that could not be scheduled.
    """

    def __init__(self, phases: list[str]) -> None:
        self.phases = phases
        super().__init__(f"cycle detected in phase dependencies: {', '.join(phases)}")


class DependencyNotFoundError(ValidationError):
    """Raised when a phase depends on a phase that does not exist."""

    def __init__(self, phase_id: str, dependency: str) -> None:
        self.phase_id = phase_id
        self.dependency = dependency
        super().__init__(f"phase '{phase_id}' depends on unknown phase '{dependency}'")


class SkillLoadError(ValidationError):
    """Raised when a skill file cannot be read or parsed."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"failed to load skill at {path}: {reason}")


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigurationError(SkillRunnerError):
    """Raised for invalid or unusable configuration."""


class NoProvidersError(ConfigurationError):
    """Raised when no enabled provider is available for routing."""

    def __init__(self) -> None:
        super().__init__("no providers configured")


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class DependencyFailure(SkillRunnerError):
    """Recorded on a phase skipped because an upstream phase did not complete.

    Never raised to the caller; attached to the skipped PhaseResult.
    """

    def __init__(self, phase_id: str, failed_dependency: str) -> None:
        self.phase_id = phase_id
        self.failed_dependency = failed_dependency
        super().__init__(
            f"phase '{phase_id}' skipped: dependency '{failed_dependency}' did not complete"
        )


class WorkflowAbortedError(SkillRunnerError):
    """Recorded on phases skipped because the workflow stopped early."""

    def __init__(self, phase_id: str, reason: str) -> None:
        self.phase_id = phase_id
        self.reason = reason
        super().__init__(f"phase '{phase_id}' skipped: {reason}")


class CheckpointConflictError(SkillRunnerError):
    """Raised when an incomplete checkpoint exists and no resume/force was requested.

    Attributes:
        fingerprint: Fingerprint of the conflicting checkpoint.
        progress: Human-readable progress of the existing checkpoint.
    """

    def __init__(self, fingerprint: str, progress: str) -> None:
        self.fingerprint = fingerprint
        self.progress = progress
        super().__init__(
            f"checkpoint exists ({progress} complete); use --resume or --force"
        )


class RunInProgressError(CheckpointConflictError):
    """Raised when another run for the same fingerprint has not finished yet."""

    def __init__(self, fingerprint: str) -> None:
        self.fingerprint = fingerprint
        self.progress = "running"
        SkillRunnerError.__init__(
            self, f"a run for checkpoint {fingerprint[:12]} is already in progress"
        )


class CheckpointIOError(SkillRunnerError):
    """Raised when a checkpoint cannot be read or written."""


class MetricsStoreError(SkillRunnerError):
    """Raised when execution metrics cannot be read or written."""
