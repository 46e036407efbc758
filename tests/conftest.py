"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from skillrunner.skills.models import Skill
from tests.fixtures.fakes import FakeProvider, make_skill


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def local_provider() -> FakeProvider:
    return FakeProvider("ollama", is_local=True, usage=(0, 0))


@pytest.fixture
def cloud_provider() -> FakeProvider:
    return FakeProvider("openai")


@pytest.fixture
def code_review_skill() -> Skill:
    """Three phases in a chain: patterns -> security -> report."""
    return make_skill(
        [
            {"id": "patterns", "prompt_template": "Find patterns in: {{ .input }}"},
            {
                "id": "security",
                "depends_on": ["patterns"],
                "prompt_template": "Security review of {{ .phases.patterns }}",
            },
            {
                "id": "report",
                "depends_on": ["security"],
                "prompt_template": "Report on {{ .security }}",
            },
        ],
        skill_id="code-review",
    )


@pytest.fixture
def diamond_skill() -> Skill:
    """a -> (b, c) -> d."""
    return make_skill(
        [
            {"id": "a"},
            {"id": "b", "depends_on": ["a"]},
            {"id": "c", "depends_on": ["a"]},
            {"id": "d", "depends_on": ["b", "c"]},
        ],
        skill_id="diamond",
    )
