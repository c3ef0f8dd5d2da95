"""
CLI interface for Ember.

Runs the agent pipeline against a target and exposes the developer commands
used to resume, roll back and inspect sessions. The agent executor itself is
external and is loaded from EMBER_EXECUTOR ("package.module:attribute").
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Annotated, Any, Awaitable, Optional, TypeVar

import structlog
import typer
from rich.console import Console
from rich.markup import escape as rich_escape
from rich.table import Table

from ember import __version__
from ember.audit.paths import AuditPaths
from ember.cli.logging_config import configure_cli_logging
from ember.config.settings import EmberSettings, get_settings
from ember.core.agents import AGENT_ORDER, AGENTS, PHASE_ORDER
from ember.core.checkpoint import AgentRunOutcome
from ember.core.errors import NotFoundError, PentestError
from ember.core.executor import load_executor
from ember.core.pipeline import Pipeline
from ember.core.session_store import Session, SessionStatus, SessionStore
from ember.memory.database import close_all_stores

logger = structlog.get_logger(__name__)

T = TypeVar("T")

app = typer.Typer(
    name="ember",
    help="Ember - checkpointed multi-agent penetration test orchestration",
    add_completion=False,
    rich_markup_mode="rich",
)

console = Console()

SessionOption = Annotated[
    Optional[str],
    typer.Option("--session", "-s", help="Session id (defaults to the most recent in-progress session)"),
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Verbose output"),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold red]Ember[/bold red] version {__version__}")
        raise typer.Exit()


def _build_pipeline(settings: EmberSettings, need_executor: bool) -> Pipeline:
    executor = None
    if need_executor:
        if not settings.executor:
            raise PentestError(
                "No agent executor configured. Set EMBER_EXECUTOR to 'package.module:attribute'.",
                "config",
            )
        executor = load_executor(settings.executor)
    return Pipeline(executor, settings)


def _resolve_session(pipeline: Pipeline, session_id: str | None) -> str:
    if session_id:
        return session_id
    for session in pipeline.store.list_sessions():
        if session.status is SessionStatus.IN_PROGRESS:
            return session.id
    raise NotFoundError("No in-progress session found. Pass --session or start one with 'ember run'.")


def _execute(label: str, work: Awaitable[T], verbose: bool) -> T:
    """Run a coroutine, mapping failures to the CLI's exit codes."""
    try:
        return asyncio.run(work)
    except PentestError as e:
        target = e.context.get("agent") or label
        kind = "retryable" if e.retryable else "non-retryable"
        console.print(f"[red]{rich_escape(target)} failed ({kind}): {rich_escape(e.message)}[/red]")
        if verbose:
            console.print_exception()
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        raise typer.Exit(130)
    finally:
        close_all_stores()


def _print_outcomes(outcomes: list[AgentRunOutcome]) -> None:
    if not outcomes:
        console.print("[dim]Nothing to run, all agents already completed[/dim]")
        return
    table = Table(title="Agent Results")
    table.add_column("Agent", style="cyan")
    table.add_column("Attempts", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Checkpoint", style="dim")
    for outcome in outcomes:
        table.add_row(
            outcome.agent_name,
            str(outcome.attempts),
            f"{outcome.duration_ms / 1000:.1f}s",
            f"${outcome.cost_usd:.4f}",
            outcome.checkpoint[:12],
        )
    console.print(table)


@app.command()
def run(
    web_url: Annotated[str, typer.Argument(help="Target web URL")],
    repo_path: Annotated[Path, typer.Argument(help="Path to the target's source repository")],
    config: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Configuration file passed through to the executor"),
    ] = None,
    verbose: VerboseOption = False,
) -> None:
    """
    Run the full pipeline against a target.

    Resumes the in-progress session for the same URL and repository if
    there is one.

    Examples:

        ember run https://app.example.com ./app-src

        ember run https://app.example.com ./app-src --config rules.yaml
    """
    configure_cli_logging(verbose)
    settings = get_settings()

    async def _run() -> tuple[Session, list[AgentRunOutcome]]:
        pipeline = _build_pipeline(settings, need_executor=True)
        session = await pipeline.start_session(web_url, repo_path, str(config) if config else None)
        console.print(f"[bold]Session:[/bold] {session.id}")
        console.print(f"[bold]Target:[/bold] {rich_escape(web_url)}")
        console.print(f"[bold]Repository:[/bold] {rich_escape(session.target_repo)}\n")
        return session, await pipeline.run_all(session.id)

    session, outcomes = _execute("pipeline", _run(), verbose)
    _print_outcomes(outcomes)
    audit_dir = AuditPaths(settings.output.audit_logs_dir, session.web_url, session.id).session_dir
    console.print(f"\n[green]Pipeline completed[/green] [dim](audit logs: {audit_dir})[/dim]")


@app.command("run-phase")
def run_phase(
    phase: Annotated[str, typer.Argument(help="Phase name")],
    session_id: SessionOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Run every pending agent of one phase."""
    configure_cli_logging(verbose)

    async def _run() -> list[AgentRunOutcome]:
        pipeline = _build_pipeline(get_settings(), need_executor=True)
        return await pipeline.run_phase(_resolve_session(pipeline, session_id), phase)

    _print_outcomes(_execute(phase, _run(), verbose))


@app.command("run-agent")
def run_agent(
    agent: Annotated[str, typer.Argument(help="Agent name")],
    session_id: SessionOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Run a single agent whose prerequisites have completed."""
    configure_cli_logging(verbose)

    async def _run() -> list[AgentRunOutcome]:
        pipeline = _build_pipeline(get_settings(), need_executor=True)
        return [await pipeline.run_agent(_resolve_session(pipeline, session_id), agent)]

    _print_outcomes(_execute(agent, _run(), verbose))


@app.command("run-range")
def run_range(
    start: Annotated[str, typer.Argument(help="First agent")],
    end: Annotated[str, typer.Argument(help="Last agent (inclusive)")],
    session_id: SessionOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Run a contiguous range of agents in order."""
    configure_cli_logging(verbose)

    async def _run() -> list[AgentRunOutcome]:
        pipeline = _build_pipeline(get_settings(), need_executor=True)
        return await pipeline.run_range(_resolve_session(pipeline, session_id), start, end)

    _print_outcomes(_execute(f"{start}..{end}", _run(), verbose))


@app.command()
def status(
    session_id: SessionOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Show session progress, or list sessions when none is in progress."""
    configure_cli_logging(verbose)

    async def _run() -> dict[str, Any] | list[Session]:
        pipeline = _build_pipeline(get_settings(), need_executor=False)
        await pipeline.reconcile()
        try:
            resolved = _resolve_session(pipeline, session_id)
        except NotFoundError:
            return pipeline.store.list_sessions()
        return await pipeline.status(resolved)

    result = _execute("status", _run(), verbose)

    if isinstance(result, list):
        if not result:
            console.print("[dim]No sessions[/dim]")
            return
        table = Table(title="Sessions")
        table.add_column("Session", style="cyan")
        table.add_column("Target")
        table.add_column("Status")
        table.add_column("Completed", justify="right")
        table.add_column("Last Activity", style="dim")
        for session in result:
            table.add_row(
                session.id,
                session.web_url,
                session.status.value,
                f"{len(session.completed_agents)}/{len(AGENTS)}",
                session.last_activity,
            )
        console.print(table)
        return

    colors = {"completed": "green", "failed": "red", "in-progress": "yellow"}
    color = colors.get(result["status"], "white")
    console.print(f"[bold]Session:[/bold] {result['sessionId']}")
    console.print(f"[bold]Target:[/bold] {rich_escape(result['webUrl'])}")
    console.print(f"[bold]Status:[/bold] [{color}]{result['status']}[/{color}]")
    console.print(
        f"[bold]Progress:[/bold] {result['completedCount']}/{result['totalAgents']} "
        f"({result['completionPercentage']}%)"
    )

    table = Table(show_header=True)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Agent", style="cyan")
    table.add_column("Phase")
    table.add_column("State")
    for name in AGENT_ORDER:
        agent = AGENTS[name]
        if name in result["completedAgents"]:
            state = "[green]completed[/green]"
        elif name in result["failedAgents"]:
            state = "[red]failed[/red]"
        elif name == result["nextAgent"]:
            state = "[yellow]next[/yellow]"
        else:
            state = "[dim]pending[/dim]"
        table.add_row(str(agent.order), name, agent.phase.value, state)
    console.print(table)


@app.command("rollback-to")
def rollback_to(
    agent: Annotated[str, typer.Argument(help="Agent whose checkpoint to restore")],
    session_id: SessionOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Restore the workspace to an agent's checkpoint and forget later agents."""
    configure_cli_logging(verbose)

    async def _run() -> Session:
        pipeline = _build_pipeline(get_settings(), need_executor=False)
        return await pipeline.rollback_to(_resolve_session(pipeline, session_id), agent)

    session = _execute(agent, _run(), verbose)
    console.print(f"[green]Rolled back to {agent}[/green]")
    console.print(f"[dim]Completed agents: {', '.join(session.completed_agents) or 'none'}[/dim]")


@app.command()
def rerun(
    agent: Annotated[str, typer.Argument(help="Agent to run again")],
    session_id: SessionOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Roll back to the agent's latest prerequisite and run it again."""
    configure_cli_logging(verbose)

    async def _run() -> list[AgentRunOutcome]:
        pipeline = _build_pipeline(get_settings(), need_executor=True)
        return [await pipeline.rerun(_resolve_session(pipeline, session_id), agent)]

    _print_outcomes(_execute(agent, _run(), verbose))


@app.command("list-agents")
def list_agents() -> None:
    """List agents grouped by phase."""
    table = Table(title="Agents")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Agent", style="cyan")
    table.add_column("Phase")
    table.add_column("Prerequisites", style="dim")
    for phase in PHASE_ORDER:
        for name in AGENT_ORDER:
            agent = AGENTS[name]
            if agent.phase.value != phase:
                continue
            table.add_row(str(agent.order), name, phase, ", ".join(agent.prerequisites) or "-")
    console.print(table)


@app.command()
def cleanup(
    session_id: Annotated[
        Optional[str],
        typer.Argument(help="Session to delete (all sessions when omitted)"),
    ] = None,
    purge_audit: Annotated[
        bool,
        typer.Option("--purge-audit", help="Also delete the session's audit logs"),
    ] = False,
    confirm: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Confirm without prompting"),
    ] = False,
    verbose: VerboseOption = False,
) -> None:
    """
    Delete sessions from the session store.

    Audit logs are kept unless --purge-audit is given; a kept audit record
    brings its session back on the next reconciliation.
    """
    configure_cli_logging(verbose)
    settings = get_settings()
    store = SessionStore(settings.output.session_store_file)

    if not confirm:
        what = f"session {session_id}" if session_id else "ALL sessions"
        if not typer.confirm(f"Delete {what}?"):
            console.print("[dim]Cancelled[/dim]")
            raise typer.Exit(0)

    async def _run() -> list[Session]:
        if session_id:
            return [await store.delete_session(session_id)]
        sessions = store.list_sessions()
        await store.delete_all_sessions()
        return sessions

    deleted = _execute(session_id or "cleanup", _run(), verbose)

    if purge_audit:
        for session in deleted:
            audit_dir = AuditPaths(settings.output.audit_logs_dir, session.web_url, session.id).session_dir
            if audit_dir.exists():
                shutil.rmtree(audit_dir)

    if not deleted:
        console.print("[dim]No sessions to delete[/dim]")
    else:
        console.print(f"[green]Deleted {len(deleted)} session(s)[/green]")


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"[bold red]Ember[/bold red] version {__version__}")


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version", "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version",
        ),
    ] = None,
) -> None:
    """
    Ember - checkpointed multi-agent penetration test orchestration

    Run authorized security assessments only.
    """


def cli() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    cli()
