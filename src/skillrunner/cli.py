"""SkillRunner CLI - typer application entry point."""

from __future__ import annotations

import asyncio
import atexit
import json
import re
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any, NoReturn

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from skillrunner.config import AppConfig, load_config
from skillrunner.container import AppContainer
from skillrunner.errors import SkillRunnerError
from skillrunner.observability import close_file_logging, configure_logging, get_logger
from skillrunner.workflow.gates import AutoApproveGate, ConfirmGate
from skillrunner.workflow.results import PhaseStatus
from skillrunner.workflow.streaming import (
    PhaseCompleted,
    PhaseFailed,
    PhaseProgress,
    PhaseStarted,
    StreamEvent,
)

# Load environment variables from .env file
load_dotenv()

if TYPE_CHECKING:
    from skillrunner.storage import ProviderMetrics, SkillMetrics
    from skillrunner.workflow.gates import PlanGate
    from skillrunner.workflow.plan import ExecutionPlan
    from skillrunner.workflow.results import ExecutionResult

app = typer.Typer(
    name="sr",
    help="SkillRunner: multi-phase AI workflows routed across local and cloud models.",
    no_args_is_help=True,
)
console = Console()
log = get_logger(__name__)

# Global state for flags (set by callback, used by commands)
_verbose: int = 0
_log_enabled: bool = False
_config_path: Path | None = None

ProfileOption = Annotated[
    str | None,
    typer.Option(
        "--profile",
        "-p",
        help="Routing profile: cheap, balanced or premium.",
    ),
]
NoMemoryOption = Annotated[
    bool,
    typer.Option("--no-memory", help="Do not prepend MEMORY.md / CLAUDE.md content."),
]
JsonOption = Annotated[bool, typer.Option("--json", help="Print machine-readable JSON.")]
ResumeOption = Annotated[
    bool, typer.Option("--resume", help="Resume from an existing checkpoint.")
]
ForceOption = Annotated[
    bool, typer.Option("--force", help="Discard an existing checkpoint and start over.")
]

STATUS_ICONS = {
    PhaseStatus.COMPLETED: "[green]✓[/green] completed",
    PhaseStatus.FAILED: "[red]✗[/red] failed",
    PhaseStatus.SKIPPED: "[yellow]-[/yellow] skipped",
    PhaseStatus.PENDING: "[dim]○[/dim] pending",
    PhaseStatus.RUNNING: "[cyan]…[/cyan] running",
}


@app.callback()
def main(
    verbose: Annotated[
        int,
        typer.Option(
            "-v",
            "--verbose",
            count=True,
            help="Increase verbosity: -v for INFO, -vv for DEBUG.",
        ),
    ] = 0,
    log_to_file: Annotated[
        bool,
        typer.Option("--log", help="Write every log event to the logs directory (debug.jsonl)."),
    ] = False,
    config: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Configuration file (default: ~/.skillrunner/config.yaml).",
        ),
    ] = None,
) -> None:
    """SkillRunner: multi-phase AI workflows routed across local and cloud models."""
    global _verbose, _log_enabled, _config_path
    _verbose = verbose
    _log_enabled = log_to_file
    _config_path = config

    configure_logging(verbosity=verbose)


def _build_container(config: AppConfig) -> AppContainer:
    return AppContainer.build(config)


def _load() -> AppContainer:
    """Load configuration, set up logging and build the container."""
    try:
        config = load_config(_config_path)
    except SkillRunnerError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None

    verbosity = max(_verbose, config.logging.verbosity)
    if _log_enabled or config.logging.file:
        configure_logging(verbosity=verbosity, log_to_file=True, log_dir=config.logging.log_dir)
        atexit.register(close_file_logging)
    elif verbosity != _verbose:
        configure_logging(verbosity=verbosity)
    return _build_container(config)


def _fail(
    error: Exception | str,
    *,
    skill: str,
    profile: str | None,
    as_json: bool,
    result: ExecutionResult | None = None,
) -> NoReturn:
    """Report an unrecoverable error and exit with status 1."""
    message = str(error)
    if as_json:
        payload: dict[str, Any] = {
            "skill": skill,
            "profile": profile,
            "status": "error",
            "error": message,
        }
        if result is not None:
            payload["result"] = result.model_dump(mode="json")
        typer.echo(json.dumps(payload, indent=2))
    else:
        console.print(f"[red]Error:[/red] {message}")
        if result is not None and result.phase_results:
            console.print()
            console.print(_result_table(result))
    raise typer.Exit(1)


def _plan_table(plan: ExecutionPlan) -> Table:
    table = Table(title=f"Execution Plan: {plan.skill_name} v{plan.skill_version}")
    table.add_column("Batch", justify="right", style="dim")
    table.add_column("Phase", style="cyan")
    table.add_column("Depends on", style="dim")
    table.add_column("Profile")
    table.add_column("Model")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")

    for phase in plan.phases:
        model = f"{phase.provider_name}/{phase.model_id}"
        if phase.is_fallback:
            model += " [yellow](fallback)[/yellow]"
        table.add_row(
            str(phase.batch_index),
            phase.phase_name,
            ", ".join(phase.depends_on) or "-",
            phase.routing_profile,
            model,
            f"{phase.estimated_tokens:,}",
            "local" if phase.is_local else f"${phase.estimated_cost:.4f}",
        )
    table.caption = (
        f"{plan.batch_count()} batches · ~{plan.total_tokens:,} tokens · "
        f"~${plan.total_cost:.4f}"
    )
    return table


def _result_table(result: ExecutionResult) -> Table:
    table = Table(title=f"Results: {result.skill_name}")
    table.add_column("Phase", style="cyan")
    table.add_column("Status", style="bold")
    table.add_column("Model", style="dim")
    table.add_column("Tokens", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Error", style="red")

    for phase in result.phase_results.values():
        model = phase.model_used or "-"
        if phase.is_fallback:
            model += " (fallback)"
        table.add_row(
            phase.phase_name or phase.phase_id,
            STATUS_ICONS.get(phase.status, str(phase.status)),
            model,
            f"{phase.total_tokens:,}",
            f"{phase.duration_seconds:.1f}s",
            phase.error or "",
        )
    return table


def _print_result(result: ExecutionResult, *, show_output: bool = True) -> None:
    if show_output and result.final_output:
        console.print()
        console.print(Markdown(result.final_output))
    console.print()
    console.print(_result_table(result))
    console.print()
    resumed = " (resumed)" if result.resumed else ""
    console.print(f"[green]✓[/green] {result.skill_name} completed{resumed}")
    console.print(f"  Tokens: {result.total_tokens:,}")
    console.print(f"  Cost: ${result.total_cost:.4f}")
    console.print(f"  Duration: {result.duration_seconds:.1f}s")


def _print_event(event: StreamEvent) -> None:
    if isinstance(event, PhaseStarted):
        console.print()
        console.rule(f"[bold cyan]{event.index + 1}/{event.total} {event.phase_name}[/bold cyan]")
    elif isinstance(event, PhaseProgress):
        console.print(event.fragment, end="", markup=False, highlight=False)
    elif isinstance(event, PhaseCompleted):
        console.print()
        console.print(
            f"[dim]{event.input_tokens + event.output_tokens:,} tokens "
            f"in {event.duration_seconds:.1f}s[/dim]"
        )
    elif isinstance(event, PhaseFailed):
        console.print()
        console.print(f"[red]✗[/red] {event.phase_id}: {event.error}")


async def _execute(
    container: AppContainer,
    skill_ref: str,
    request: str,
    *,
    profile: str | None,
    stream: bool,
    resume: bool,
    force: bool,
    checkpoint: bool,
    memory: bool,
    as_json: bool,
) -> ExecutionResult:
    try:
        skill = container.skills.resolve(skill_ref)
        memory_text = container.load_memory(enabled=memory)
        if stream:
            handler = (lambda _event: None) if as_json else _print_event
            return await container.streaming.execute(
                skill, request, handler, profile=profile, memory=memory_text
            )
        return await container.executor.execute(
            skill,
            request,
            profile=profile,
            resume=resume,
            force=force,
            checkpoint=checkpoint,
            memory=memory_text,
        )
    finally:
        await container.aclose()


def _finish(
    result: ExecutionResult, *, skill: str, profile: str | None, as_json: bool, stream: bool
) -> None:
    if not result.succeeded:
        _fail(
            result.error or f"workflow {result.status}",
            skill=skill,
            profile=profile,
            as_json=as_json,
            result=result,
        )
    if as_json:
        typer.echo(result.model_dump_json(indent=2))
    else:
        _print_result(result, show_output=not stream)


@app.command()
def run(
    skill: Annotated[str, typer.Argument(help="Skill id or name.")],
    request: Annotated[str, typer.Argument(help="Request text passed to the skill.")],
    profile: ProfileOption = None,
    stream: Annotated[
        bool, typer.Option("--stream", help="Stream output as it is generated (no checkpoints).")
    ] = False,
    resume: ResumeOption = False,
    no_checkpoint: Annotated[
        bool, typer.Option("--no-checkpoint", help="Do not save checkpoints for this run.")
    ] = False,
    force: ForceOption = False,
    no_memory: NoMemoryOption = False,
    as_json: JsonOption = False,
) -> None:
    """Run a skill on a request."""
    container = _load()
    profile = profile or container.config.default_profile
    checkpoint = container.config.checkpoints.enabled and not no_checkpoint

    if not as_json:
        console.print(f"[dim]Running {skill} ({profile or 'skill default'} profile)...[/dim]")
    try:
        result = asyncio.run(
            _execute(
                container,
                skill,
                request,
                profile=profile,
                stream=stream,
                resume=resume,
                force=force,
                checkpoint=checkpoint,
                memory=not no_memory,
                as_json=as_json,
            )
        )
    except SkillRunnerError as e:
        log.error("run_failed", skill=skill, error=str(e))
        _fail(e, skill=skill, profile=profile, as_json=as_json)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow]")
        raise typer.Exit(130) from None

    _finish(result, skill=skill, profile=profile, as_json=as_json, stream=stream)


async def _plan_and_execute(
    container: AppContainer,
    skill_ref: str,
    request: str,
    *,
    profile: str | None,
    memory: bool,
    output: Path | None,
    save_only: bool,
    gate: PlanGate | None,
    resume: bool,
    force: bool,
    as_json: bool,
) -> tuple[ExecutionPlan, ExecutionResult | None]:
    try:
        skill = container.skills.resolve(skill_ref)
        memory_text = container.load_memory(enabled=memory)
        plan = container.planner.plan(skill, request, profile=profile, memory=memory_text)
        if output is not None:
            plan.save(output)
            log.info("plan_saved", path=str(output))
        if as_json:
            typer.echo(plan.to_json())
        else:
            console.print()
            console.print(_plan_table(plan))
            if output is not None:
                console.print(f"  Saved: [cyan]{output}[/cyan]")
        if save_only or gate is None:
            return plan, None
        if await gate.approve(plan) == "reject":
            if not as_json:
                console.print("[yellow]Plan not approved; nothing was executed.[/yellow]")
            return plan, None
        result = await container.executor.execute(
            skill,
            request,
            profile=profile,
            resume=resume,
            force=force,
            checkpoint=container.config.checkpoints.enabled,
            memory=memory_text,
        )
        return plan, result
    finally:
        await container.aclose()


@app.command()
def plan(
    skill: Annotated[str, typer.Argument(help="Skill id or name.")],
    request: Annotated[str, typer.Argument(help="Request text passed to the skill.")],
    profile: ProfileOption = None,
    approve: Annotated[
        bool, typer.Option("--approve", help="Execute the plan without asking.")
    ] = False,
    save_only: Annotated[
        bool, typer.Option("--save-only", help="Save the plan and exit without executing.")
    ] = False,
    output: Annotated[
        Path | None, typer.Option("--output", "-o", help="Write the plan as JSON to this file.")
    ] = None,
    resume: ResumeOption = False,
    force: ForceOption = False,
    no_memory: NoMemoryOption = False,
    as_json: JsonOption = False,
) -> None:
    """Preview a skill's execution plan, then optionally execute it.

    Without --approve or --save-only you are asked for confirmation. In
    --json mode the plan is printed and only executed with --approve.
    --resume and --force apply to the approved run as they do for ``run``.
    """
    if save_only and output is None:
        console.print("[red]Error:[/red] --save-only requires --output")
        raise typer.Exit(1)

    container = _load()
    profile = profile or container.config.default_profile
    gate: PlanGate | None
    if approve:
        gate = AutoApproveGate()
    elif as_json:
        gate = None
    else:
        gate = ConfirmGate(lambda question: typer.confirm(question, default=False))

    try:
        _, result = asyncio.run(
            _plan_and_execute(
                container,
                skill,
                request,
                profile=profile,
                memory=not no_memory,
                output=output,
                save_only=save_only,
                gate=gate,
                resume=resume,
                force=force,
                as_json=as_json,
            )
        )
    except SkillRunnerError as e:
        log.error("plan_failed", skill=skill, error=str(e))
        _fail(e, skill=skill, profile=profile, as_json=as_json)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow]")
        raise typer.Exit(130) from None

    if result is not None:
        _finish(result, skill=skill, profile=profile, as_json=as_json, stream=False)


@app.command("list")
def list_skills() -> None:
    """List available skills."""
    container = _load()
    skills = container.skills.list_skills()
    asyncio.run(container.aclose())

    if not skills:
        console.print(
            f"No skills found in [cyan]{container.config.skills.directory}[/cyan]"
        )
        return

    table = Table(title="Skills")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Version", style="dim")
    table.add_column("Phases", justify="right")
    table.add_column("Profile")
    table.add_column("Description", style="dim")
    for skill in skills:
        table.add_row(
            skill.id,
            skill.name,
            skill.version,
            str(len(skill.phases)),
            skill.default_profile,
            skill.description,
        )
    console.print()
    console.print(table)
    console.print()


async def _checkpoints(container: AppContainer, *, clear: bool, show_all: bool) -> None:
    try:
        store = container.store
        if store is None:
            console.print("Checkpointing is disabled.")
            return
        checkpoints = await store.list_checkpoints(include_completed=show_all)
        if clear:
            removed = 0
            for checkpoint in checkpoints:
                removed += await store.delete(checkpoint.fingerprint)
            console.print(f"Removed {removed} checkpoint(s).")
            return
        if not checkpoints:
            console.print("No checkpoints.")
            return

        table = Table(title="Checkpoints")
        table.add_column("Fingerprint", style="dim")
        table.add_column("Skill", style="cyan")
        table.add_column("Progress")
        table.add_column("Status", style="bold")
        table.add_column("Tokens", justify="right")
        table.add_column("Updated", style="dim")
        for checkpoint in checkpoints:
            table.add_row(
                checkpoint.fingerprint[:12],
                checkpoint.skill_name or checkpoint.skill_id,
                checkpoint.progress,
                checkpoint.status,
                f"{checkpoint.total_tokens:,}",
                checkpoint.updated_at.strftime("%Y-%m-%d %H:%M"),
            )
        console.print()
        console.print(table)
        console.print()
    finally:
        await container.aclose()


@app.command()
def checkpoints(
    clear: Annotated[
        bool, typer.Option("--clear", help="Delete the listed checkpoints.")
    ] = False,
    show_all: Annotated[
        bool, typer.Option("--all", help="Include completed checkpoints.")
    ] = False,
) -> None:
    """List (or clear) saved checkpoints. Incomplete ones by default."""
    container = _load()
    try:
        asyncio.run(_checkpoints(container, clear=clear, show_all=show_all))
    except SkillRunnerError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None


def _since(window: str) -> datetime | None:
    """Start of a ``24h`` / ``7d`` style window, or None for ``all``."""
    if window == "all":
        return None
    match = re.fullmatch(r"(\d+)([hd])", window)
    if match is None:
        raise typer.BadParameter("expected a window such as 24h, 7d, 30d or all")
    amount = int(match.group(1))
    delta = timedelta(hours=amount) if match.group(2) == "h" else timedelta(days=amount)
    return datetime.now(UTC) - delta


def _provider_table(providers: list[ProviderMetrics]) -> Table:
    table = Table(title="Provider Usage")
    table.add_column("Provider", style="cyan")
    table.add_column("Requests", justify="right")
    table.add_column("Success", justify="right")
    table.add_column("Fallbacks", justify="right", style="dim")
    table.add_column("Tokens In", justify="right")
    table.add_column("Tokens Out", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Avg Latency", justify="right")
    for provider in providers:
        table.add_row(
            provider.provider,
            str(provider.requests),
            f"{provider.success_rate:.0%}",
            str(provider.fallbacks),
            f"{provider.input_tokens:,}",
            f"{provider.output_tokens:,}",
            f"${provider.cost:.4f}",
            f"{provider.avg_latency_seconds:.1f}s",
        )
    return table


def _skill_table(skills: list[SkillMetrics]) -> Table:
    table = Table(title="Skills")
    table.add_column("Skill", style="cyan")
    table.add_column("Executions", justify="right")
    table.add_column("Success Rate", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Avg Duration", justify="right")
    for skill in skills:
        table.add_row(
            skill.skill_name or skill.skill_id,
            str(skill.executions),
            f"{skill.success_rate:.0%}",
            f"{skill.total_tokens:,}",
            f"${skill.cost:.4f}",
            f"{skill.avg_duration_seconds:.1f}s",
        )
    return table


async def _metrics(container: AppContainer, *, since: datetime | None, as_json: bool) -> None:
    try:
        store = container.metrics
        if store is None:
            console.print("Metrics are disabled.")
            return
        summary = await store.summary(since)
        providers = await store.provider_metrics(since)
        skills = await store.skill_metrics(since)
    finally:
        await container.aclose()

    if as_json:
        payload = {
            "since": since.isoformat() if since is not None else None,
            "summary": summary.model_dump(mode="json"),
            "providers": [p.model_dump(mode="json") for p in providers],
            "skills": [s.model_dump(mode="json") for s in skills],
        }
        typer.echo(json.dumps(payload, indent=2))
        return
    if summary.executions == 0:
        console.print("No executions recorded.")
        return

    console.print()
    console.print(
        f"[bold]Executions:[/bold] {summary.executions} "
        f"({summary.succeeded} succeeded, {summary.failed} failed, "
        f"{summary.success_rate:.0%} success)"
    )
    console.print(f"  Tokens: {summary.input_tokens:,} in / {summary.output_tokens:,} out")
    console.print(f"  Cost: ${summary.cost:.4f}")
    console.print(f"  Avg duration: {summary.avg_duration_seconds:.1f}s")
    if providers:
        console.print()
        console.print(_provider_table(providers))
    console.print()
    console.print(_skill_table(skills))
    console.print()


@app.command()
def metrics(
    since: Annotated[
        str, typer.Option("--since", help="Time window: 24h, 7d, 30d or all.")
    ] = "7d",
    as_json: JsonOption = False,
) -> None:
    """Show recorded execution metrics by provider and by skill."""
    start = _since(since)
    container = _load()
    try:
        asyncio.run(_metrics(container, since=start, as_json=as_json))
    except SkillRunnerError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None


@app.command()
def version() -> None:
    """Show version information."""
    from skillrunner import __version__

    console.print(f"SkillRunner v{__version__}")
