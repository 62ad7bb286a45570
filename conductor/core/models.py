"""Data models for the Conductor orchestrator.

Uses Pydantic for the session, terminal and decision-call schemas.
"""

import time
from enum import Enum

from pydantic import BaseModel, Field


class OrchestratorMode(str, Enum):
    """How the master task is distributed across terminals."""

    SPLIT = "split"  # Master task decomposed into one sub-task per terminal
    PARALLEL = "parallel"  # Each terminal gets its own (or the shared) task


class SafetyLevel(str, Enum):
    """How aggressively dangerous commands are blocked."""

    SAFE = "safe"
    MODERATE = "moderate"
    YOLO = "yolo"


class TerminalStatus(str, Enum):
    """Lifecycle status of a managed terminal."""

    PENDING = "pending"
    RUNNING = "running"
    IDLE = "idle"
    COMPLETED = "completed"
    ERROR = "error"


class DecisionProvider(str, Enum):
    """Remote decision-call providers (OpenAI-compatible chat APIs)."""

    GROQ = "groq"
    OPENAI = "openai"


class SessionOutcome(str, Enum):
    """Why a session ended."""

    COMPLETED = "completed"
    STOPPED = "stopped"
    ERROR = "error"


class LogEntryType(str, Enum):
    """Kinds of activity-log entries shown to the host UI."""

    START = "start"
    INPUT = "input"
    DECISION = "decision"
    FAST_PATH = "fast-path"
    PERMISSION = "permission"
    COMPLETE = "complete"
    ERROR = "error"
    STOP = "stop"
    WORKING = "working"
    WAITING = "waiting"
    READY = "ready"


# --- Activity log ---


class LogEntry(BaseModel):
    """Timestamped activity-log entry."""

    timestamp: float = Field(default_factory=time.time)
    type: LogEntryType
    message: str
    detail: str | None = None


# --- Terminal state ---


class SessionStats(BaseModel):
    """Best-effort counters for one terminal's session."""

    files_written: int = 0
    files_read: int = 0
    tests_passed: int = 0
    tests_failed: int = 0
    errors_encountered: int = 0
    tokens_used: int = 0
    fast_path_decisions: int = 0
    llm_decisions: int = 0
    decision_tokens: int = 0  # Spent by decision calls, not by the assistant


class TerminalAgentState(BaseModel):
    """Observable state of one managed terminal."""

    terminal_id: str
    tab_id: str = ""
    panel_id: str = ""
    task: str = ""
    status: TerminalStatus = TerminalStatus.PENDING
    output_buffer: str = ""
    last_output_time: float = 0.0
    is_idle: bool = False
    task_sent: bool = False
    last_response: str = ""
    consecutive_waits: int = 0
    failed_permanently: bool = False
    activity_log: list[LogEntry] = Field(default_factory=list)
    session_stats: SessionStats = Field(default_factory=SessionStats)

    @property
    def is_finished(self) -> bool:
        """True once the terminal can no longer make progress."""
        if self.status == TerminalStatus.COMPLETED:
            return True
        return self.status == TerminalStatus.ERROR and self.failed_permanently


class TerminalSpec(BaseModel):
    """A terminal handed to the coordinator at start."""

    terminal_id: str
    tab_id: str = ""
    panel_id: str = ""


class DecomposedTask(BaseModel):
    """One sub-task assignment produced in split mode."""

    terminal_id: str
    task: str
    order: int


# --- Session ---


class Session(BaseModel):
    """One orchestrator run. Created on start, dropped on stop."""

    id: str
    mode: OrchestratorMode
    master_task: str
    start_time: float = Field(default_factory=time.time)
    time_limit: float = 0  # minutes, 0 = unlimited
    safety_level: SafetyLevel = SafetyLevel.SAFE
    provider: DecisionProvider = DecisionProvider.GROQ
    api_key: str = Field(default="", repr=False)
    model: str = ""
    cli_provider: str = "claude"
    project_folder: str = ""
    is_running: bool = True
    is_paused: bool = False
    decomposed_tasks: list[DecomposedTask] = Field(default_factory=list)


class StartRequest(BaseModel):
    """Arguments for SessionCoordinator.start()."""

    mode: OrchestratorMode = OrchestratorMode.PARALLEL
    master_task: str
    terminals: list[TerminalSpec]
    tasks: dict[str, str] = Field(default_factory=dict)  # terminal_id -> task (parallel)
    time_limit: float | None = None  # minutes
    safety_level: SafetyLevel | None = None
    provider: DecisionProvider | None = None
    cli_provider: str | None = None
    project_folder: str = ""


class SessionRecord(BaseModel):
    """Persisted summary of a finished session."""

    id: str
    task: str
    start_time: float
    end_time: float
    duration: int  # seconds
    status: SessionOutcome
    activity_log: list[LogEntry] = Field(default_factory=list)
    provider: DecisionProvider
    project_folder: str = ""
    mode: OrchestratorMode
    terminal_count: int = 0


# --- Decision-call boundary ---


class DecisionRequest(BaseModel):
    """Payload for one remote decision call."""

    provider: DecisionProvider
    api_key: str = Field(repr=False)
    model: str
    system_prompt: str
    user_prompt: str
    temperature: float = 0.2


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class DecisionResponse(BaseModel):
    """Result of one remote decision call. Never raised, always returned."""

    success: bool
    content: str | None = None
    error: str | None = None
    usage: TokenUsage | None = None

    @classmethod
    def failure(cls, error: str) -> "DecisionResponse":
        return cls(success=False, error=error)
