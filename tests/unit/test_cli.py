"""Test CLI commands."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest
from typer.testing import CliRunner

from skillrunner import __version__
from skillrunner.cli import app
from skillrunner.container import AppContainer
from skillrunner.estimation import CharRatioEstimator
from skillrunner.providers.base import CompletionRequest, ProviderError
from skillrunner.skills import SkillRegistry
from skillrunner.storage import MemoryCheckpointStore
from tests.fixtures.fakes import FakeProvider, make_registry

if TYPE_CHECKING:
    from pathlib import Path

    from skillrunner.config import AppConfig
    from skillrunner.skills import Skill

runner = CliRunner()

# Wide enough that rich tables never wrap cell text
WIDE = {"COLUMNS": "200"}


class _Env:
    """Collaborators handed to every container the CLI builds."""

    def __init__(self, skill: Skill, config_file: Path) -> None:
        self.provider = FakeProvider("ollama", is_local=True, reply="All good.")
        self.skills = SkillRegistry()
        self.skills.register(skill)
        self.store = MemoryCheckpointStore()
        self.config_file = config_file

    def build(self, config: AppConfig) -> AppContainer:
        return AppContainer.build(
            config,
            providers=make_registry(self.provider),
            skills=self.skills,
            store=self.store if config.checkpoints.enabled else None,
            estimator=CharRatioEstimator(),
        )

    def invoke(self, *args: str, input: str | None = None):  # type: ignore[no-untyped-def]
        return runner.invoke(
            app, ["--config", str(self.config_file), *args], input=input, env=WIDE
        )


@pytest.fixture
def env(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, code_review_skill: Skill
) -> _Env:
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        f"memory:\n  enabled: false\nmetrics:\n  db_path: {tmp_path / 'metrics.db'}\n"
    )
    test_env = _Env(code_review_skill, config_file)
    monkeypatch.setattr("skillrunner.cli._build_container", test_env.build)
    return test_env


def test_version_command() -> None:
    """Test sr version command."""
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert f"SkillRunner v{__version__}" in result.stdout


def test_no_args_shows_help() -> None:
    """Test that no arguments shows help."""
    result = runner.invoke(app, [])
    # no_args_is_help=True returns exit code 2 (not 0 like --help)
    assert result.exit_code == 2
    assert "SkillRunner" in result.stdout


def test_bad_config_file_exits(tmp_path: Path) -> None:
    """An unreadable configuration stops the command."""
    result = runner.invoke(
        app, ["--config", str(tmp_path / "absent.yaml"), "list"], env=WIDE
    )

    assert result.exit_code == 1
    assert "not found" in result.stdout


# --- list ---


def test_list_shows_skills(env: _Env) -> None:
    """sr list prints a table of loaded skills."""
    result = env.invoke("list")

    assert result.exit_code == 0
    assert "code-review" in result.stdout
    assert "Code Review" in result.stdout


def test_list_without_skills(env: _Env) -> None:
    """An empty skills directory is reported."""
    env.skills = SkillRegistry()

    result = env.invoke("list")

    assert result.exit_code == 0
    assert "No skills found" in result.stdout


# --- run ---


def test_run_json(env: _Env) -> None:
    """sr run --json prints the execution result."""
    result = env.invoke("run", "code-review", "def f(): pass", "--json")

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["status"] == "completed"
    assert payload["skill_id"] == "code-review"
    assert payload["final_output"] == "All good."
    assert len(env.provider.calls) == 3


def test_run_resolves_skill_by_name(env: _Env) -> None:
    """Skills can be named by display name as well as id."""
    result = env.invoke("run", "Code Review", "src", "--no-checkpoint")

    assert result.exit_code == 0
    assert "completed" in result.stdout
    assert "All good." in result.stdout


def test_run_unknown_skill_json_error(env: _Env) -> None:
    """Errors in --json mode are reported as a JSON object."""
    result = env.invoke("run", "nope", "src", "--json")

    assert result.exit_code == 1
    assert '"status": "error"' in result.stdout
    assert '"skill": "nope"' in result.stdout
    assert env.provider.calls == []


def test_run_failure_exits_nonzero(env: _Env) -> None:
    """A failed phase makes the run exit 1 and shows the result table."""
    env.provider.error = ProviderError("ollama", "model crashed")

    result = env.invoke("run", "code-review", "src")

    assert result.exit_code == 1
    assert "Error" in result.stdout
    assert "failed" in result.stdout


def test_run_stream_prints_fragments(env: _Env) -> None:
    """--stream prints each phase as it is generated."""
    result = env.invoke("run", "code-review", "src", "--stream")

    assert result.exit_code == 0
    assert "1/3 patterns" in result.stdout
    assert "3/3 report" in result.stdout
    assert result.stdout.count("All good.") >= 3


def test_run_resume_reuses_checkpoint(env: _Env) -> None:
    """A second run with --resume continues from the saved checkpoint."""

    def _reply(request: CompletionRequest) -> str:
        if "Report on" in request.messages[-1]["content"]:
            raise ProviderError("ollama", "flaky")
        return "partial"

    env.provider.reply = _reply
    first = env.invoke("run", "code-review", "src")
    assert first.exit_code == 1

    env.provider.reply = "done"
    env.provider.calls.clear()
    second = env.invoke("run", "code-review", "src", "--resume", "--json")

    assert second.exit_code == 0
    assert json.loads(second.stdout)["resumed"] is True
    assert len(env.provider.calls) == 1


# --- plan ---


def test_plan_save_only_requires_output(env: _Env) -> None:
    """--save-only without --output is rejected before anything runs."""
    result = env.invoke("plan", "code-review", "src", "--save-only")

    assert result.exit_code == 1
    assert "--save-only requires --output" in result.stdout


def test_plan_save_only_writes_file(env: _Env, tmp_path: Path) -> None:
    """The plan is saved and nothing is executed."""
    output = tmp_path / "plan.json"

    result = env.invoke("plan", "code-review", "src", "--save-only", "--output", str(output))

    assert result.exit_code == 0
    saved = json.loads(output.read_text())
    assert saved["skill_id"] == "code-review"
    assert [p["phase_id"] for p in saved["phases"]] == ["patterns", "security", "report"]
    assert env.provider.calls == []


def test_plan_json_does_not_execute(env: _Env) -> None:
    """In --json mode the plan is printed and only run with --approve."""
    result = env.invoke("plan", "code-review", "src", "--json")

    assert result.exit_code == 0
    assert json.loads(result.stdout)["total_cost"] == 0.0
    assert env.provider.calls == []


def test_plan_rejected_at_prompt(env: _Env) -> None:
    """Answering no at the confirmation prompt skips execution."""
    result = env.invoke("plan", "code-review", "src", input="n\n")

    assert result.exit_code == 0
    assert "Execution Plan" in result.stdout
    assert "Plan not approved" in result.stdout
    assert env.provider.calls == []


def test_plan_approve_executes(env: _Env) -> None:
    """--approve runs the plan without asking."""
    result = env.invoke("plan", "code-review", "src", "--approve")

    assert result.exit_code == 0
    assert "completed" in result.stdout
    assert len(env.provider.calls) == 3


def _leave_incomplete_checkpoint(env: _Env) -> None:
    def _reply(request: CompletionRequest) -> str:
        if "Report on" in request.messages[-1]["content"]:
            raise ProviderError("ollama", "flaky")
        return "partial"

    env.provider.reply = _reply
    assert env.invoke("run", "code-review", "src").exit_code == 1
    env.provider.reply = "done"
    env.provider.calls.clear()


def test_plan_approve_conflicts_with_incomplete_checkpoint(env: _Env) -> None:
    """An approved plan does not silently overwrite an unfinished run."""
    _leave_incomplete_checkpoint(env)

    result = env.invoke("plan", "code-review", "src", "--approve")

    assert result.exit_code == 1
    assert "checkpoint exists" in result.stdout
    assert env.provider.calls == []


def test_plan_approve_resume(env: _Env) -> None:
    """--resume continues the unfinished run after approval."""
    _leave_incomplete_checkpoint(env)

    result = env.invoke("plan", "code-review", "src", "--approve", "--resume", "--json")

    assert result.exit_code == 0
    # Plan JSON first, then the execution result
    decoder = json.JSONDecoder()
    plan, end = decoder.raw_decode(result.stdout)
    executed, _ = decoder.raw_decode(result.stdout[end:].lstrip())
    assert plan["skill_id"] == "code-review"
    assert executed["resumed"] is True
    assert len(env.provider.calls) == 1


def test_plan_approve_force(env: _Env) -> None:
    """--force discards the unfinished run and starts over."""
    _leave_incomplete_checkpoint(env)

    result = env.invoke("plan", "code-review", "src", "--approve", "--force")

    assert result.exit_code == 0
    assert "completed" in result.stdout
    assert len(env.provider.calls) == 3


# --- checkpoints ---


def test_checkpoints_list_and_clear(env: _Env) -> None:
    """Incomplete checkpoints are listed and can be cleared."""
    env.provider.error = ProviderError("ollama", "down")
    env.invoke("run", "code-review", "src")

    listed = env.invoke("checkpoints")
    assert listed.exit_code == 0
    assert "Code Review" in listed.stdout

    cleared = env.invoke("checkpoints", "--clear")
    assert "Removed 1 checkpoint(s)." in cleared.stdout
    assert "No checkpoints." in env.invoke("checkpoints").stdout


def test_checkpoints_hide_completed_by_default(env: _Env) -> None:
    """Completed checkpoints only appear with --all."""
    env.invoke("run", "code-review", "src")

    assert "No checkpoints." in env.invoke("checkpoints").stdout
    assert "Code Review" in env.invoke("checkpoints", "--all").stdout


def test_checkpoints_disabled(env: _Env) -> None:
    """With checkpointing off there is nothing to list."""
    env.config_file.write_text(env.config_file.read_text() + "checkpoints:\n  enabled: false\n")

    result = env.invoke("checkpoints")

    assert result.exit_code == 0
    assert "Checkpointing is disabled." in result.stdout


# --- metrics ---


def test_metrics_tables(env: _Env) -> None:
    """sr metrics aggregates recorded runs by provider and by skill."""
    env.invoke("run", "code-review", "src", "--no-checkpoint")
    env.provider.error = ProviderError("ollama", "down")
    env.invoke("run", "code-review", "src", "--no-checkpoint")

    result = env.invoke("metrics")

    assert result.exit_code == 0
    assert "Executions: 2 (1 succeeded, 1 failed, 50% success)" in result.stdout
    assert "Provider Usage" in result.stdout
    assert "ollama" in result.stdout
    assert "Code Review" in result.stdout


def test_metrics_json(env: _Env) -> None:
    """--json prints the summary and both groupings."""
    env.invoke("run", "code-review", "src")

    result = env.invoke("metrics", "--since", "all", "--json")

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["since"] is None
    assert payload["summary"]["executions"] == 1
    assert [(p["provider"], p["requests"]) for p in payload["providers"]] == [("ollama", 3)]
    assert [s["skill_id"] for s in payload["skills"]] == ["code-review"]


def test_metrics_without_runs(env: _Env) -> None:
    """An empty window is reported."""
    result = env.invoke("metrics", "--since", "24h")

    assert result.exit_code == 0
    assert "No executions recorded." in result.stdout


def test_metrics_rejects_unknown_window(env: _Env) -> None:
    """--since only accepts hour or day windows."""
    result = env.invoke("metrics", "--since", "fortnight")

    assert result.exit_code == 2


def test_metrics_disabled(env: _Env) -> None:
    """With metrics off there is nothing to show."""
    env.config_file.write_text("memory:\n  enabled: false\nmetrics:\n  enabled: false\n")

    result = env.invoke("metrics")

    assert result.exit_code == 0
    assert "Metrics are disabled." in result.stdout
