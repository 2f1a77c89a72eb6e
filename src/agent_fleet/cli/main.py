"""Main CLI for agent fleet."""

import asyncio
import contextlib
import signal
import sys
from pathlib import Path

import click
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ..core.config import FleetConfig, load_config
from ..core.orchestrator import Orchestrator
from ..core.run_log import RunLogStore
from ..core.session_tracker import SessionTracker, read_snapshot
from ..core.task import AgentRun, AgentStatus, load_tasks
from ..utils.rich_logging import setup_logging


console = Console()

_STATUS_STYLES = {
    AgentStatus.DONE: "green",
    AgentStatus.FAILED: "red",
    AgentStatus.RUNNING: "cyan",
    AgentStatus.QUEUED: "yellow",
}


@click.group()
@click.option(
    "--config", "-c", "config_path",
    default="agent-fleet.yaml",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Path to the fleet config file",
)
@click.pass_context
def cli(ctx, config_path):
    """Agent Fleet - run coding agents across many repositories."""
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config(config_path)
    except ValidationError as e:
        console.print(f"[red]Invalid configuration in {config_path}:[/]\n{escape(str(e))}")
        sys.exit(1)


async def _run_batch(orchestrator: Orchestrator, tasks) -> list:
    loop = asyncio.get_running_loop()
    # Ctrl+C cancels every run through the normal cleanup path
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, orchestrator.cancel_all)
    try:
        return await orchestrator.run_all(tasks)
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)


@cli.command()
@click.argument("tasks_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--max-concurrent", "-n", type=click.IntRange(min=0), help="Parallel runs (0 = unlimited)")
@click.option("--max-retries", type=click.IntRange(min=0), help="Retries per failed run (0 = disabled)")
@click.option(
    "--backend", "backend_mode",
    type=click.Choice(["auto", "process_only", "api_only"]),
    help="Backend selection mode",
)
@click.option("--keep-state", is_flag=True, help="Don't clear sessions/queue left by a previous run")
@click.pass_context
def run(ctx, tasks_file, max_concurrent, max_retries, backend_mode, keep_state):
    """Run agents for every task in TASKS_FILE."""
    config: FleetConfig = ctx.obj["config"].with_overrides(
        max_concurrent=max_concurrent,
        max_retries=max_retries,
        backend_mode=backend_mode,
    )
    setup_logging(config.log_level, config.logs_dir)

    try:
        tasks = load_tasks(tasks_file)
    except (ValueError, TypeError) as e:
        console.print(f"[red]Error loading tasks: {escape(str(e))}[/]")
        sys.exit(1)

    if not tasks:
        console.print("[yellow]No tasks to run[/]")
        return

    tracker = SessionTracker(config.sessions.snapshot_path, config.sessions.state_path)
    if not keep_state:
        tracker.clear_stale_sessions()
        tracker.clear_queue()

    def on_task_done(agent_run: AgentRun):
        console.print(
            f"[green]✓ {escape(agent_run.task.repo_name)}: {escape(_label(agent_run.task))} committed[/]"
        )

    orchestrator = Orchestrator(config, tracker, on_task_done=on_task_done)
    console.print(
        f"[bold]Running {len(tasks)} task(s) "
        f"(max concurrent: {config.agents.max_concurrent or 'unlimited'}, "
        f"backend mode: {config.agents.backend_mode})[/]"
    )

    runs = asyncio.run(_run_batch(orchestrator, tasks))

    store = RunLogStore(config.logs_dir)
    for agent_run in runs:
        store.write_log(agent_run)

    _print_runs(runs)
    _print_tokens(orchestrator)

    if any(agent_run.status != AgentStatus.DONE for agent_run in runs):
        sys.exit(1)


def _label(item) -> str:
    return f"[{item.task_id}] {item.task_title}"


def _print_runs(runs):
    table = Table(title="Runs")
    table.add_column("Repo")
    table.add_column("Task")
    table.add_column("Backend")
    table.add_column("Status")
    table.add_column("Retries")
    table.add_column("Duration")
    table.add_column("Error")

    for agent_run in runs:
        style = _STATUS_STYLES.get(agent_run.status, "white")
        table.add_row(
            escape(agent_run.task.repo_name),
            escape(_label(agent_run.task)),
            agent_run.backend.value,
            f"[{style}]{agent_run.status.value}[/]",
            f"{agent_run.retry_count}/{agent_run.max_retries}",
            f"{agent_run.duration_seconds:.0f}s",
            escape((agent_run.error or "")[:80]),
        )
    console.print(table)


def _print_tokens(orchestrator: Orchestrator):
    table = Table(title="Tokens")
    table.add_column("Backend")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Total", justify="right")
    for backend, usage in orchestrator.tokens.totals().items():
        table.add_row(
            backend.value,
            f"{usage.input_tokens:,}",
            f"{usage.output_tokens:,}",
            f"{usage.total_tokens:,}",
        )
    console.print(table)


@cli.command()
@click.pass_context
def status(ctx):
    """Show active sessions from the shared snapshot."""
    config: FleetConfig = ctx.obj["config"]
    snapshot = read_snapshot(config.sessions.snapshot_path)

    if snapshot is None:
        console.print(f"[dim]No session snapshot at {config.sessions.snapshot_path}[/]")
    elif not snapshot.sessions:
        console.print(f"[dim]No active sessions (updated {snapshot.updated_at:%Y-%m-%d %H:%M:%S})[/]")
    else:
        table = Table(title=f"Active sessions (updated {snapshot.updated_at:%Y-%m-%d %H:%M:%S})")
        table.add_column("Repo")
        table.add_column("Task")
        table.add_column("Backend")
        table.add_column("Started")
        for session in snapshot.sessions:
            table.add_row(
                escape(session.repo_name),
                escape(_label(session)),
                session.backend.value,
                f"{session.started_at:%H:%M:%S}",
            )
        console.print(table)

    if config.sessions.state_path is not None:
        queue = SessionTracker(config.sessions.snapshot_path, config.sessions.state_path).get_queue()
        if queue:
            table = Table(title="Queued tasks")
            table.add_column("Repo")
            table.add_column("Task")
            table.add_column("Queued")
            for queued in queue:
                table.add_row(
                    escape(queued.repo_name),
                    escape(_label(queued)),
                    f"{queued.queued_at:%H:%M:%S}",
                )
            console.print(table)


@cli.command()
@click.option("--limit", "-n", default=20, type=click.IntRange(min=1), help="Entries to show")
@click.pass_context
def history(ctx, limit):
    """Show recent run results."""
    config: FleetConfig = ctx.obj["config"]
    entries = RunLogStore(config.logs_dir).get_history(limit)
    if not entries:
        console.print("[dim]No run history[/]")
        return

    table = Table(title="Run history")
    table.add_column("Finished")
    table.add_column("Repo")
    table.add_column("Task")
    table.add_column("Backend")
    table.add_column("Status")
    table.add_column("Tokens", justify="right")
    for entry in entries:
        style = "green" if entry.committed else "red"
        table.add_row(
            f"{entry.finished_at:%Y-%m-%d %H:%M}",
            escape(entry.repo_name),
            escape(_label(entry)),
            entry.backend,
            f"[{style}]{entry.status}[/]",
            f"{entry.input_tokens + entry.output_tokens:,}",
        )
    console.print(table)


@cli.command()
@click.option("--older-than", "older_than", type=click.IntRange(min=0), help="Prune run logs older than DAYS")
@click.pass_context
def clear(ctx, older_than):
    """Clear leftover sessions and queue, or prune old run logs."""
    config: FleetConfig = ctx.obj["config"]

    if older_than is not None:
        removed = RunLogStore(config.logs_dir).clear_older_than(older_than)
        console.print(f"[green]✓ Removed {removed} run log(s) older than {older_than} day(s)[/]")
        return

    tracker = SessionTracker(config.sessions.snapshot_path, config.sessions.state_path)
    sessions = len(tracker.get_active_sessions())
    queued = len(tracker.get_queue())
    tracker.clear_stale_sessions()
    tracker.clear_queue()
    console.print(f"[green]✓ Cleared {sessions} session(s) and {queued} queued task(s)[/]")


if __name__ == "__main__":
    cli()
