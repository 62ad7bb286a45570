"""CLI entry point for Conductor.

Commands:
- conductor init: Write a default config file
- conductor config show / set: Inspect or change settings
- conductor providers: List CLI provider profiles
- conductor classify: Run the classifier and fast path on a captured transcript
- conductor decompose: Split a task into parallel sub-tasks
- conductor history: List, show or delete past sessions
"""

import asyncio
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from conductor.cli_ui.session_view import ClassificationReport, SessionView
from conductor.core.classifier import (
    classify_status,
    detect_task_completion,
    parse_stats,
    strip_ansi,
)
from conductor.core.config import (
    ConfigError,
    ConfigStore,
    OrchestratorConfig,
    default_history_path,
)
from conductor.core.fast_path import fast_path_response
from conductor.core.gateway import DecisionGateway
from conductor.core.history import HistoryError, SessionHistory
from conductor.core.models import DecisionProvider, SafetyLevel
from conductor.core.profiles import ProfileLoader, ProfileNotFoundError, ProfileValidationError
from conductor.core.transport import ChatCompletionsClient

console = Console()

SECRET_KEYS = ("groq_api_key", "openai_api_key")


def _mask(value: str) -> str:
    if not value:
        return "[dim]<not set>[/dim]"
    return f"{value[:4]}…{value[-2:]}" if len(value) > 8 else "****"


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Conductor - multi-terminal orchestrator for CLI coding assistants."""
    _configure_logging(verbose)


@main.command()
@click.option("--force", is_flag=True, help="Overwrite an existing config file")
def init(force: bool) -> None:
    """Write a default config file."""
    store = ConfigStore()
    if store.path.exists() and not force:
        console.print(f"[yellow]Config already exists at {store.path}[/yellow]")
        return
    store.save(OrchestratorConfig())
    console.print(f"[green]✓[/green] Wrote default config to {store.path}")
    console.print("\nNext steps:")
    console.print("  1. conductor config set groq_api_key <key>  (or export GROQ_API_KEY)")
    console.print("  2. conductor providers")


@main.group()
def config() -> None:
    """Inspect or change settings."""
    pass


@config.command("show")
def config_show() -> None:
    """Show the effective configuration (API keys masked)."""
    store = ConfigStore()
    try:
        cfg = store.load()
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    table = Table(title=f"Configuration ({store.path})")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="white")
    for key, value in cfg.model_dump(mode="json").items():
        table.add_row(key, _mask(value) if key in SECRET_KEYS else str(value))
    console.print(table)


@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str) -> None:
    """Set one configuration KEY to VALUE."""
    store = ConfigStore()
    try:
        store.set(key, value)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    shown = _mask(value) if key in SECRET_KEYS else escape(value)
    console.print(f"[green]✓[/green] {key} = {shown}")


@main.command()
def providers() -> None:
    """List available CLI provider profiles."""
    loader = ProfileLoader()
    table = Table(title="Available Providers")
    table.add_column("Provider", style="cyan")
    table.add_column("Name", style="white")
    table.add_column("Description", style="dim")

    for profile_id in loader.list_available():
        try:
            profile = loader.load(profile_id)
            table.add_row(profile.id, profile.name, profile.description)
        except (ProfileNotFoundError, ProfileValidationError) as e:
            table.add_row(profile_id, "[red]Error loading[/red]", escape(str(e)))

    console.print(table)


@main.command()
@click.argument("transcript", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--provider", "provider_id", default=None, help="CLI provider profile (default: from config)")
@click.option(
    "--safety",
    type=click.Choice([level.value for level in SafetyLevel]),
    default=SafetyLevel.SAFE.value,
    help="Safety level for the fast-path danger check",
)
@click.option("--task", default="", help="Task text the fast path would send")
@click.option("--task-sent", is_flag=True, help="Treat the task as already sent")
def classify(
    transcript: Path, provider_id: str | None, safety: str, task: str, task_sent: bool
) -> None:
    """Classify a captured terminal TRANSCRIPT.

    Example:
        conductor classify session.log --task "write tests"
    """
    try:
        if provider_id is None:
            provider_id = ConfigStore().load().cli_provider
        profile = ProfileLoader().load(provider_id)
    except (ConfigError, ProfileNotFoundError, ProfileValidationError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    clean = strip_ansi(transcript.read_text(encoding="utf-8", errors="replace"))
    result = fast_path_response(clean, task_sent, task, SafetyLevel(safety), profile)
    report = ClassificationReport(
        provider=profile.id,
        status=classify_status(clean, profile),
        completed=detect_task_completion(clean, profile),
        stats=parse_stats(clean),
        fast_path=result.response if result else None,
        question=result.question if result else None,
    )
    SessionView(console).show_classification(report)


async def _decompose(cfg: OrchestratorConfig, provider: DecisionProvider, task: str, count: int) -> list[str] | None:
    async with ChatCompletionsClient() as client:
        gateway = DecisionGateway(client, provider, cfg.api_key_for(provider), cfg.model_for(provider))
        return await gateway.decompose_task(task, count)


@main.command()
@click.argument("task")
@click.option("-n", "--count", type=click.IntRange(min=1), default=2, help="Number of sub-tasks")
@click.option(
    "--provider",
    type=click.Choice([p.value for p in DecisionProvider]),
    default=None,
    help="Decision provider (default: from config)",
)
def decompose(task: str, count: int, provider: str | None) -> None:
    """Split TASK into parallel sub-tasks using the decision model."""
    try:
        cfg = ConfigStore().load()
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    selected = DecisionProvider(provider) if provider else cfg.default_provider
    if not cfg.api_key_for(selected):
        console.print(f"[red]Error:[/red] No {selected.value} API key configured")
        sys.exit(1)

    subtasks = asyncio.run(_decompose(cfg, selected, task, count))
    if not subtasks:
        console.print("[red]Decomposition failed.[/red] Every terminal would get the master task.")
        sys.exit(1)
    for i, subtask in enumerate(subtasks, 1):
        console.print(f"[cyan]{i}.[/cyan] {escape(subtask)}")


def _open_history() -> SessionHistory:
    try:
        return SessionHistory(default_history_path())
    except HistoryError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)


@main.group(invoke_without_command=True)
@click.option("--limit", type=int, default=20, help="Number of sessions to list")
@click.pass_context
def history(ctx: click.Context, limit: int) -> None:
    """List, show or delete past sessions."""
    if ctx.invoked_subcommand is None:
        ctx.invoke(history_list, limit=limit)


@history.command("list")
@click.option("--limit", type=int, default=20, help="Number of sessions to list")
def history_list(limit: int) -> None:
    """List recent sessions, newest first."""
    try:
        records = _open_history().list_recent(limit)
    except HistoryError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    SessionView(console).show_history(records)


@history.command("show")
@click.argument("session_id")
def history_show(session_id: str) -> None:
    """Show one session with its coordinator log."""
    try:
        record = _open_history().get(session_id)
    except HistoryError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    if record is None:
        console.print(f"[red]Session not found:[/red] {session_id}")
        sys.exit(1)
    SessionView(console).show_record(record)


@history.command("delete")
@click.argument("session_id")
def history_delete(session_id: str) -> None:
    """Delete one session from history."""
    try:
        deleted = _open_history().delete(session_id)
    except HistoryError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    if not deleted:
        console.print(f"[yellow]Session not found:[/yellow] {session_id}")
        sys.exit(1)
    console.print(f"[green]✓[/green] Deleted {session_id}")


@main.command()
def version() -> None:
    """Show version information."""
    from conductor import __version__

    console.print(f"Conductor v{__version__}")
    console.print("Multi-terminal orchestrator for CLI coding assistants")


if __name__ == "__main__":
    main()
