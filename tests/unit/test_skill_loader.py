"""Tests for skill models, YAML loading and the skill registry."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from pydantic import ValidationError

from skillrunner.errors import PhaseNotFoundError, SkillLoadError, SkillNotFoundError
from skillrunner.skills import Phase, Skill, SkillRegistry, parse_skill
from tests.fixtures.fakes import make_skill

if TYPE_CHECKING:
    from pathlib import Path

CODE_REVIEW_YAML = """\
id: code-review
name: Code Review
version: 1.2.0
description: Review a change in three passes
routing:
  default_profile: cheap
  review_model: gpt-4o
phases:
  - id: patterns
    name: Pattern scan
    prompt_template: "Find patterns in {{ .input }}"
  - id: security
    name: Security review
    depends_on: patterns
    prompt_template: "Check {{ .phases.patterns }}"
    routing_profile: premium
  - id: report
    name: Report
    depends_on: [security]
    prompt_template: "Summarize {{ .security }}"
    required: true
output_phase: report
"""


def _write(directory: Path, name: str, text: str) -> Path:
    path = directory / name
    path.write_text(text, encoding="utf-8")
    return path


# --- Models ---


def test_phase_depends_on_accepts_single_string() -> None:
    """A single dependency may be written as a string."""
    phase = Phase(id="b", name="B", prompt_template="x", depends_on="a")  # type: ignore[arg-type]

    assert phase.depends_on == ("a",)


def test_phase_review_detection() -> None:
    """Review-like ids or names mark a phase as a review step."""
    assert Phase(id="security-review", name="S", prompt_template="x").is_review
    assert Phase(id="x", name="Validate output", prompt_template="x").is_review
    assert not Phase(id="draft", name="Draft", prompt_template="x").is_review


def test_skill_rejects_duplicate_phase_ids() -> None:
    """Phase ids must be unique within a skill."""
    with pytest.raises(ValidationError, match="duplicate phase id"):
        make_skill([{"id": "a"}, {"id": "a"}])


def test_skill_rejects_unknown_output_phase() -> None:
    """output_phase must name one of the skill's phases."""
    with pytest.raises(ValidationError, match="output_phase"):
        make_skill([{"id": "a"}], output_phase="zzz")


def test_skill_requires_phases() -> None:
    """A skill without phases is invalid."""
    with pytest.raises(ValidationError):
        Skill(id="empty", name="Empty", phases=())


def test_skill_rejects_unknown_profile() -> None:
    """Per-phase routing profiles are restricted to the three known profiles."""
    with pytest.raises(ValidationError):
        make_skill([{"id": "a", "routing_profile": "turbo"}])


def test_get_phase(code_review_skill: Skill) -> None:
    """Phases are found by id; unknown ids raise."""
    assert code_review_skill.get_phase("security").depends_on == ("patterns",)
    with pytest.raises(PhaseNotFoundError):
        code_review_skill.get_phase("nope")


# --- parse_skill ---


def test_parse_skill_reports_field_locations(tmp_path: Path) -> None:
    """Schema errors name the offending field."""
    data = {"id": "s", "name": "S", "phases": [{"id": "a", "name": "A", "max_tokens": 0}]}

    with pytest.raises(SkillLoadError) as exc_info:
        parse_skill(data, tmp_path / "s.yaml")

    assert "phases.0.prompt_template" in exc_info.value.reason
    assert "phases.0.max_tokens" in exc_info.value.reason


def test_parse_skill_rejects_bad_graph(tmp_path: Path) -> None:
    """Unknown dependencies are load errors."""
    data = {
        "id": "s",
        "name": "S",
        "phases": [{"id": "a", "name": "A", "prompt_template": "x", "depends_on": ["ghost"]}],
    }

    with pytest.raises(SkillLoadError, match="ghost"):
        parse_skill(data, tmp_path / "s.yaml")


# --- Registry ---


def test_load_file(tmp_path: Path) -> None:
    """A YAML skill file loads with all of its fields."""
    registry = SkillRegistry()

    skill = registry.load_file(_write(tmp_path, "code-review.yaml", CODE_REVIEW_YAML))

    assert skill.id == "code-review"
    assert skill.version == "1.2.0"
    assert skill.default_profile == "cheap"
    assert skill.routing.review_model == "gpt-4o"
    assert skill.phase_ids == ["patterns", "security", "report"]
    assert skill.get_phase("security").depends_on == ("patterns",)
    assert skill.get_phase("security").routing_profile == "premium"
    assert skill.get_phase("report").required
    assert skill.output_phase == "report"
    assert "code-review" in registry


def test_load_file_rejects_non_mapping(tmp_path: Path) -> None:
    """A YAML list at the top level is not a skill."""
    with pytest.raises(SkillLoadError, match="mapping"):
        SkillRegistry().load_file(_write(tmp_path, "list.yaml", "- a\n- b\n"))


def test_load_file_rejects_invalid_yaml(tmp_path: Path) -> None:
    """Unparseable YAML is a load error."""
    with pytest.raises(SkillLoadError):
        SkillRegistry().load_file(_write(tmp_path, "bad.yaml", "id: [unclosed\n"))


def test_load_directory_skips_bad_files(tmp_path: Path) -> None:
    """Invalid files are skipped; valid ones still load."""
    _write(tmp_path, "good.yaml", CODE_REVIEW_YAML)
    _write(tmp_path, "bad.yml", "id: broken\n")
    _write(tmp_path, "notes.txt", "ignored")
    registry = SkillRegistry()

    assert registry.load_directory(tmp_path) == 1
    assert [s.id for s in registry.list_skills()] == ["code-review"]


def test_load_directory_skips_duplicate_ids(tmp_path: Path) -> None:
    """A second file with the same skill id is skipped."""
    _write(tmp_path, "a.yaml", CODE_REVIEW_YAML)
    _write(tmp_path, "b.yaml", CODE_REVIEW_YAML)
    registry = SkillRegistry()

    assert registry.load_directory(tmp_path) == 1
    assert len(registry) == 1


def test_load_missing_directory_loads_nothing(tmp_path: Path) -> None:
    """A missing skills directory is not an error."""
    assert SkillRegistry().load_directory(tmp_path / "absent") == 0


def test_register_rejects_duplicates(code_review_skill: Skill) -> None:
    """The same id cannot be registered twice."""
    registry = SkillRegistry()
    registry.register(code_review_skill)

    with pytest.raises(ValueError, match="already registered"):
        registry.register(code_review_skill)


def test_lookup_by_id_and_name(code_review_skill: Skill, diamond_skill: Skill) -> None:
    """Skills resolve by id or case-insensitive display name."""
    registry = SkillRegistry()
    registry.register(code_review_skill)
    registry.register(diamond_skill)

    assert registry.get_skill("diamond") is diamond_skill
    assert registry.get_skill_by_name("CODE REVIEW") is code_review_skill
    assert registry.resolve("code-review") is code_review_skill
    assert registry.resolve("Diamond") is diamond_skill
    assert [s.id for s in registry] == ["code-review", "diamond"]


def test_missing_skill_lists_available(code_review_skill: Skill) -> None:
    """The not-found error names the available skills."""
    registry = SkillRegistry()
    registry.register(code_review_skill)

    with pytest.raises(SkillNotFoundError, match="available: code-review"):
        registry.get_skill("nope")
