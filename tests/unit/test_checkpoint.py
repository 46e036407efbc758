"""Tests for checkpoint fingerprints and the checkpoint model."""

from __future__ import annotations

import pytest

from skillrunner.workflow.checkpoint import (
    Checkpoint,
    compute_fingerprint,
    default_machine_id,
    normalize_request,
)
from skillrunner.workflow.results import PhaseResult, PhaseStatus

# --- Fingerprints ---


def test_fingerprint_is_deterministic() -> None:
    """The same inputs always produce the same fingerprint."""
    assert compute_fingerprint("s", "req", "m") == compute_fingerprint("s", "req", "m")


def test_fingerprint_is_hex_sha256() -> None:
    """Fingerprints are 64 hex characters."""
    fingerprint = compute_fingerprint("s", "req", "m")

    assert len(fingerprint) == 64
    int(fingerprint, 16)


@pytest.mark.parametrize(
    ("a", "b"),
    [
        (("s", "req", "m"), ("t", "req", "m")),
        (("s", "req", "m"), ("s", "other", "m")),
        (("s", "req", "m"), ("s", "req", "n")),
        (("ab", "c", "m"), ("a", "bc", "m")),
    ],
)
def test_fingerprint_distinguishes_inputs(
    a: tuple[str, str, str], b: tuple[str, str, str]
) -> None:
    """Changing any component changes the fingerprint."""
    assert compute_fingerprint(*a) != compute_fingerprint(*b)


def test_normalize_request_unifies_line_endings_and_strips() -> None:
    """CRLF and CR become LF; outer whitespace is dropped."""
    assert normalize_request("  a\r\nb\rc \n") == "a\nb\nc"


def test_fingerprint_ignores_platform_line_endings() -> None:
    """Requests differing only in line endings share a fingerprint."""
    assert compute_fingerprint("s", "a\r\nb", "m") == compute_fingerprint("s", "a\nb\n", "m")


def test_default_machine_id_prefers_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """SKILLRUNNER_MACHINE_ID overrides the hostname."""
    monkeypatch.setenv("SKILLRUNNER_MACHINE_ID", "build-box")

    assert default_machine_id() == "build-box"


def test_default_machine_id_falls_back_to_hostname(monkeypatch: pytest.MonkeyPatch) -> None:
    """Without the variable, a non-empty hostname is used."""
    monkeypatch.delenv("SKILLRUNNER_MACHINE_ID", raising=False)

    assert default_machine_id()


# --- Checkpoint model ---


def _checkpoint(**kwargs: object) -> Checkpoint:
    return Checkpoint.model_validate({"fingerprint": "f" * 64, "skill_id": "s", **kwargs})


def test_progress_reports_batches() -> None:
    """Progress counts finished batches out of the total."""
    assert _checkpoint(completed_batch=0, total_batches=3).progress == "1/3 batches"
    assert _checkpoint(completed_batch=-1, total_batches=3).progress == "0/3 batches"


def test_completed_results_filters_status() -> None:
    """Only Completed results are returned for resume."""
    checkpoint = _checkpoint(
        phase_results={
            "a": PhaseResult(phase_id="a", status=PhaseStatus.COMPLETED, input_tokens=3),
            "b": PhaseResult(phase_id="b", status=PhaseStatus.FAILED),
        }
    )

    assert list(checkpoint.completed_results()) == ["a"]
    assert checkpoint.total_tokens == 3


def test_is_complete_only_for_completed_status() -> None:
    """In-progress and failed checkpoints are incomplete."""
    assert _checkpoint(status="completed").is_complete
    assert not _checkpoint(status="failed").is_complete
    assert not _checkpoint().is_complete


def test_checkpoint_json_round_trip() -> None:
    """Checkpoints survive JSON serialization unchanged."""
    checkpoint = _checkpoint(
        request="review",
        phase_results={"a": PhaseResult(phase_id="a", status=PhaseStatus.COMPLETED, output="x")},
    )

    assert Checkpoint.model_validate_json(checkpoint.model_dump_json()) == checkpoint
