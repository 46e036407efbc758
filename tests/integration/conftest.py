"""Integration test configuration and fixtures.

Workflows run end to end through the application container, with a real
SQLite checkpoint database and a skills directory on disk. Tests marked
``requires_ollama`` also call a live Ollama server and are skipped when
none is reachable.
"""

from __future__ import annotations

import os
from pathlib import Path  # noqa: TC003 - Used at runtime in fixtures

import httpx
import pytest
from dotenv import load_dotenv

from skillrunner.config import AppConfig

# Load .env file at import time so provider availability checks work
load_dotenv()

REVIEW_SKILL_YAML = """\
id: code-review
name: Code Review
version: 2.0.0
description: Scan, review and report on a change
phases:
  - id: scan
    name: Scan
    prompt_template: "List the functions in: {{ .input }}"
  - id: style
    name: Style review
    depends_on: [scan]
    prompt_template: "Style review of {{ .phases.scan }}"
  - id: security
    name: Security review
    depends_on: [scan]
    prompt_template: "Security review of {{ .phases.scan }}"
    routing_profile: premium
  - id: report
    name: Report
    depends_on: [style, security]
    prompt_template: "Report. Style: {{ .style }} Security: {{ .security }}"
output_phase: report
"""


def _ollama_available() -> bool:
    """Check if Ollama is configured and reachable."""
    host = os.getenv("OLLAMA_HOST")
    if not host:
        return False

    try:
        response = httpx.get(f"{host}/api/tags", timeout=5.0)
        return response.status_code == 200
    except (httpx.ConnectError, httpx.TimeoutException, httpx.HTTPError, OSError):
        return False


requires_ollama = pytest.mark.skipif(
    not _ollama_available(),
    reason="OLLAMA_HOST not set or Ollama not reachable",
)


@pytest.fixture
def skills_dir(tmp_path: Path) -> Path:
    """Skills directory holding the four-phase review skill."""
    directory = tmp_path / "skills"
    directory.mkdir()
    (directory / "code-review.yaml").write_text(REVIEW_SKILL_YAML)
    return directory


@pytest.fixture
def integration_config(tmp_path: Path, skills_dir: Path) -> AppConfig:
    """Configuration with SQLite checkpoints and metrics under tmp_path, memory off."""
    return AppConfig.from_dict(
        {
            "machine_id": "integration",
            "skills": {"directory": str(skills_dir)},
            "checkpoints": {"backend": "sqlite", "db_path": str(tmp_path / "checkpoints.db")},
            "metrics": {"db_path": str(tmp_path / "metrics.db")},
            "memory": {"enabled": False},
            "executor": {"max_parallel": 2},
        }
    )
