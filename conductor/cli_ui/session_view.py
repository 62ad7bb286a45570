"""Rich views for session history and transcript classification."""

from dataclasses import dataclass, field
from datetime import datetime

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from conductor.core.models import LogEntryType, SessionOutcome, SessionRecord

OUTCOME_STYLES = {
    SessionOutcome.COMPLETED: "green",
    SessionOutcome.STOPPED: "yellow",
    SessionOutcome.ERROR: "red",
}

LOG_STYLES = {
    LogEntryType.ERROR: "red",
    LogEntryType.COMPLETE: "green",
    LogEntryType.READY: "cyan",
    LogEntryType.DECISION: "magenta",
    LogEntryType.STOP: "yellow",
}


@dataclass
class ClassificationReport:
    """What the classifier and fast path make of a captured transcript."""

    provider: str
    status: str
    completed: bool
    stats: dict[str, int] = field(default_factory=dict)
    fast_path: str | None = None
    question: str | None = None


def _format_time(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


def _format_duration(seconds: int) -> str:
    minutes, secs = divmod(seconds, 60)
    return f"{minutes}m {secs:02d}s" if minutes else f"{secs}s"


class SessionView:
    """Terminal rendering for CLI commands."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def show_history(self, records: list[SessionRecord]) -> None:
        if not records:
            self.console.print("[dim]No sessions recorded yet.[/dim]")
            return

        table = Table(title="Session History")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Started", style="dim")
        table.add_column("Duration", justify="right")
        table.add_column("Mode")
        table.add_column("Terminals", justify="right")
        table.add_column("Outcome")
        table.add_column("Task", style="white", max_width=50)

        for record in records:
            style = OUTCOME_STYLES.get(record.status, "white")
            table.add_row(
                record.id,
                _format_time(record.start_time),
                _format_duration(record.duration),
                record.mode.value,
                str(record.terminal_count),
                f"[{style}]{record.status.value}[/]",
                escape(record.task),
            )
        self.console.print(table)

    def show_record(self, record: SessionRecord) -> None:
        style = OUTCOME_STYLES.get(record.status, "white")
        summary = Table(show_header=False, box=None)
        summary.add_column("Field", style="dim")
        summary.add_column("Value", style="bold")
        summary.add_row("Task", escape(record.task))
        summary.add_row("Outcome", f"[{style}]{record.status.value}[/]")
        summary.add_row("Mode", record.mode.value)
        summary.add_row("Provider", record.provider.value)
        summary.add_row("Terminals", str(record.terminal_count))
        summary.add_row("Started", _format_time(record.start_time))
        summary.add_row("Duration", _format_duration(record.duration))
        if record.project_folder:
            summary.add_row("Project", escape(record.project_folder))
        self.console.print(Panel(summary, title=f"Session {record.id}"))

        if not record.activity_log:
            return
        log = Table(title="Coordinator Log")
        log.add_column("Time", style="dim", no_wrap=True)
        log.add_column("Type")
        log.add_column("Message")
        for entry in record.activity_log:
            entry_style = LOG_STYLES.get(entry.type, "white")
            log.add_row(
                datetime.fromtimestamp(entry.timestamp).strftime("%H:%M:%S"),
                f"[{entry_style}]{entry.type.value}[/]",
                escape(entry.message),
            )
        self.console.print(log)

    def show_classification(self, report: ClassificationReport) -> None:
        table = Table(show_header=False, box=None)
        table.add_column("Check", style="dim")
        table.add_column("Result", style="bold")
        table.add_row("Provider", report.provider)
        table.add_row("Status", report.status)
        table.add_row("Task complete", "yes" if report.completed else "no")
        if report.fast_path is None:
            table.add_row("Fast path", "[dim]none (decision call needed)[/dim]")
        else:
            table.add_row("Fast path", escape(repr(report.fast_path)))
        if report.question:
            table.add_row("Question", escape(report.question))
        for name, value in sorted(report.stats.items()):
            table.add_row(name.replace("_", " "), str(value))
        self.console.print(Panel(table, title="Transcript Classification"))
