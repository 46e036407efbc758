"""Checkpoint model, fingerprinting and the checkpoint store port."""

from __future__ import annotations

import hashlib
import os
import socket
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Literal, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from skillrunner.workflow.results import PhaseResult, PhaseStatus

if TYPE_CHECKING:
    from datetime import timedelta

CheckpointStatus = Literal["in_progress", "failed", "completed"]


def normalize_request(request: str) -> str:
    """Normalize request text for fingerprinting.

    Line endings are unified and surrounding whitespace is stripped, so
    the same request pasted on different platforms fingerprints the same.
    """
    return request.replace("\r\n", "\n").replace("\r", "\n").strip()


def compute_fingerprint(skill_id: str, request: str, machine_id: str) -> str:
    """Deterministic key for (skill, request, machine).

    Returns:
        Hex SHA-256 digest.
    """
    material = "\0".join((skill_id, normalize_request(request), machine_id))
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def default_machine_id() -> str:
    """Machine identity: SKILLRUNNER_MACHINE_ID, else the hostname."""
    return os.getenv("SKILLRUNNER_MACHINE_ID") or socket.gethostname() or "localhost"


def _now() -> datetime:
    return datetime.now(UTC)


class Checkpoint(BaseModel):
    """Persisted progress of one execution.

    Only Completed phase results are stored; anything else is re-run on
    resume.
    """

    fingerprint: str
    skill_id: str
    skill_name: str = ""
    request: str = ""
    machine_id: str = ""
    profile: str | None = None
    completed_batch: int = -1
    total_batches: int = 0
    phase_results: dict[str, PhaseResult] = Field(default_factory=dict)
    status: CheckpointStatus = "in_progress"
    final_output: str = ""
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def is_complete(self) -> bool:
        """True once the workflow finished successfully."""
        return self.status == "completed"

    @property
    def progress(self) -> str:
        """Human-readable summary, e.g. ``"1/3 batches"``."""
        return f"{self.completed_batch + 1}/{self.total_batches} batches"

    @property
    def total_tokens(self) -> int:
        """Tokens consumed by the stored phase results."""
        return sum(r.total_tokens for r in self.phase_results.values())

    def completed_results(self) -> dict[str, PhaseResult]:
        """Stored results whose status is Completed."""
        return {
            pid: r for pid, r in self.phase_results.items() if r.status == PhaseStatus.COMPLETED
        }


@runtime_checkable
class CheckpointStore(Protocol):
    """Persistence port for checkpoints.

    Implementations must serialize writes per fingerprint; different
    fingerprints are independent.
    """

    async def get(self, fingerprint: str) -> Checkpoint | None:
        """Return the checkpoint for a fingerprint, or None.

        Raises:
            CheckpointIOError: If the store cannot be read.
        """
        ...

    async def save(self, checkpoint: Checkpoint) -> None:
        """Insert or replace a checkpoint.

        Raises:
            CheckpointIOError: If the store cannot be written.
        """
        ...

    async def delete(self, fingerprint: str) -> bool:
        """Delete a checkpoint. Returns True if one existed."""
        ...

    async def list_checkpoints(
        self,
        skill_id: str | None = None,
        *,
        include_completed: bool = False,
    ) -> list[Checkpoint]:
        """Checkpoints, most recently updated first."""
        ...

    async def cleanup(self, older_than: timedelta) -> int:
        """Delete checkpoints not updated within ``older_than``. Returns the count."""
        ...

    async def close(self) -> None:
        """Release resources."""
        ...
