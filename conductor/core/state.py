"""Observable orchestrator state.

OrchestratorStore is the single state container a host UI watches. The
coordinator and supervisors mutate it; listeners receive a StoreEvent for
every log entry and status change. Buffers and logs are bounded.
"""

import logging
import time
from collections.abc import Callable
from enum import Enum

from pydantic import BaseModel, Field

from conductor.core.models import (
    DecomposedTask,
    LogEntry,
    LogEntryType,
    Session,
    SessionOutcome,
    SessionRecord,
    SessionStats,
    TerminalAgentState,
    TerminalSpec,
    TerminalStatus,
)

logger = logging.getLogger(__name__)

MAX_BUFFER = 100_000
MAX_LOG_ENTRIES = 500


class StoreEventType(str, Enum):
    """Types of events delivered to store listeners."""

    SESSION_STARTED = "session_started"
    SESSION_STOPPED = "session_stopped"
    TERMINAL_LOG = "terminal_log"
    COORDINATOR_LOG = "coordinator_log"
    STATUS_CHANGED = "status_changed"


class StoreEvent(BaseModel):
    """Notification sent to store listeners."""

    event_type: StoreEventType
    session_id: str | None = None
    terminal_id: str | None = None
    entry: LogEntry | None = None
    status: TerminalStatus | None = None
    outcome: SessionOutcome | None = None
    timestamp: float = Field(default_factory=time.time)


Listener = Callable[[StoreEvent], None]


def _append_bounded(log: list[LogEntry], entry: LogEntry) -> None:
    log.append(entry)
    if len(log) > MAX_LOG_ENTRIES:
        del log[: len(log) - MAX_LOG_ENTRIES]


def _trim_buffer(buffer: str) -> str:
    return buffer[-MAX_BUFFER:] if len(buffer) > MAX_BUFFER else buffer


class OrchestratorStore:
    """Session, terminal snapshots and coordinator log, with change listeners.

    Terminal snapshots and the coordinator log stay readable after
    stop_session() until the next start_session().
    """

    def __init__(self) -> None:
        self.session: Session | None = None
        self.terminals: dict[str, TerminalAgentState] = {}
        self.coordinator_log: list[LogEntry] = []
        self.decomposed_tasks: list[DecomposedTask] = []
        self._listeners: list[Listener] = []

    @property
    def is_running(self) -> bool:
        return self.session is not None and self.session.is_running

    @property
    def is_paused(self) -> bool:
        return self.session is not None and self.session.is_paused

    # --- Listeners ---

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: StoreEvent) -> None:
        if self.session is not None and event.session_id is None:
            event.session_id = self.session.id
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Store listener failed on {event.event_type.value}: {e}")

    # --- Session lifecycle ---

    def start_session(self, session: Session) -> None:
        self.session = session
        self.terminals = {}
        self.decomposed_tasks = []
        self.coordinator_log = []
        self.add_coordinator_log(
            LogEntryType.START,
            f"Orchestrator started in {session.mode.value} mode: {session.master_task}",
        )
        self._emit(StoreEvent(event_type=StoreEventType.SESSION_STARTED, session_id=session.id))

    def stop_session(self, outcome: SessionOutcome = SessionOutcome.STOPPED) -> SessionRecord | None:
        """End the session and return its history record (None if not running)."""
        session = self.session
        if session is None:
            return None

        end_time = time.time()
        self.add_coordinator_log(LogEntryType.STOP, f"Orchestrator {outcome.value}")
        record = SessionRecord(
            id=session.id,
            task=session.master_task,
            start_time=session.start_time,
            end_time=end_time,
            duration=int(end_time - session.start_time),
            status=outcome,
            activity_log=list(self.coordinator_log),
            provider=session.provider,
            project_folder=session.project_folder,
            mode=session.mode,
            terminal_count=len(self.terminals),
        )
        session.is_running = False
        session.is_paused = False
        self._emit(
            StoreEvent(
                event_type=StoreEventType.SESSION_STOPPED, session_id=session.id, outcome=outcome
            )
        )
        self.session = None
        return record

    def set_paused(self, paused: bool) -> None:
        if self.session is None:
            return
        self.session.is_paused = paused
        if paused:
            self.add_coordinator_log(LogEntryType.STOP, "Orchestrator paused")
        else:
            self.add_coordinator_log(LogEntryType.START, "Orchestrator resumed")

    def set_decomposed_tasks(self, tasks: list[DecomposedTask]) -> None:
        self.decomposed_tasks = list(tasks)
        if self.session is not None:
            self.session.decomposed_tasks = list(tasks)

    # --- Terminals ---

    def add_terminal(self, spec: TerminalSpec, task: str) -> TerminalAgentState:
        state = TerminalAgentState(
            terminal_id=spec.terminal_id,
            tab_id=spec.tab_id,
            panel_id=spec.panel_id,
            task=task,
            last_output_time=time.time(),
        )
        self.terminals[spec.terminal_id] = state
        return state

    def get_terminal(self, terminal_id: str) -> TerminalAgentState | None:
        return self.terminals.get(terminal_id)

    def update_terminal(self, terminal_id: str, **changes: object) -> None:
        state = self.terminals.get(terminal_id)
        if state is None:
            return
        for name, value in changes.items():
            setattr(state, name, value)

    def set_status(self, terminal_id: str, status: TerminalStatus) -> None:
        state = self.terminals.get(terminal_id)
        if state is None or state.status == status:
            return
        state.status = status
        self._emit(
            StoreEvent(
                event_type=StoreEventType.STATUS_CHANGED, terminal_id=terminal_id, status=status
            )
        )

    def append_output(self, terminal_id: str, data: str) -> None:
        state = self.terminals.get(terminal_id)
        if state is None:
            return
        state.output_buffer = _trim_buffer(state.output_buffer + data)
        state.last_output_time = time.time()
        state.is_idle = False

    def mark_sent(self, terminal_id: str, text: str) -> None:
        """Record sent input in the buffer so later prompts see it."""
        state = self.terminals.get(terminal_id)
        if state is None:
            return
        marker = f'\n--- AGENT SENT: "{text}" ---\n'
        state.output_buffer = _trim_buffer(state.output_buffer + marker)
        state.last_response = text

    def add_terminal_log(
        self,
        terminal_id: str,
        entry_type: LogEntryType,
        message: str,
        detail: str | None = None,
    ) -> None:
        state = self.terminals.get(terminal_id)
        if state is None:
            return
        entry = LogEntry(type=entry_type, message=message, detail=detail)
        _append_bounded(state.activity_log, entry)
        self._emit(
            StoreEvent(event_type=StoreEventType.TERMINAL_LOG, terminal_id=terminal_id, entry=entry)
        )

    def update_stats(self, terminal_id: str, stats: dict[str, int]) -> None:
        """Merge counters, keeping the larger value for each."""
        state = self.terminals.get(terminal_id)
        if state is None:
            return
        current = state.session_stats.model_dump()
        for name, value in stats.items():
            if name in current:
                current[name] = max(current[name], value)
        state.session_stats = SessionStats(**current)

    def increment_stat(self, terminal_id: str, name: str, amount: int = 1) -> None:
        state = self.terminals.get(terminal_id)
        if state is None:
            return
        setattr(state.session_stats, name, getattr(state.session_stats, name) + amount)

    # --- Coordinator log ---

    def add_coordinator_log(
        self, entry_type: LogEntryType, message: str, detail: str | None = None
    ) -> None:
        entry = LogEntry(type=entry_type, message=message, detail=detail)
        _append_bounded(self.coordinator_log, entry)
        self._emit(StoreEvent(event_type=StoreEventType.COORDINATOR_LOG, entry=entry))
