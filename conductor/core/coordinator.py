"""Session coordinator: owns the supervisors and the session lifecycle.

The coordinator is the only object a host talks to. It validates start
preconditions, assigns tasks (split or parallel), routes terminal output to
the right supervisor, and enforces the session time budget. There is no
module-level state; two coordinators in one process are independent.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from typing import Protocol

from conductor.core.call_queue import CallQueue
from conductor.core.config import ConfigStore, OrchestratorConfig
from conductor.core.gateway import DecisionCaller, DecisionGateway, RetryPolicy
from conductor.core.history import HistoryError, SessionHistory
from conductor.core.models import (
    DecomposedTask,
    LogEntryType,
    OrchestratorMode,
    Session,
    SessionOutcome,
    SessionRecord,
    StartRequest,
    TerminalStatus,
)
from conductor.core.profiles import ProfileLoader
from conductor.core.state import OrchestratorStore
from conductor.core.supervisor import SupervisorTimings, TerminalSupervisor

logger = logging.getLogger(__name__)


class OrchestratorError(Exception):
    """A start precondition was violated."""

    pass


class AlreadyRunningError(OrchestratorError):
    """The orchestrator already has a running session."""

    pass


class ExclusiveModeActiveError(OrchestratorError):
    """A mutually exclusive single-agent mode is running."""

    pass


class MissingCredentialError(OrchestratorError):
    """No API key is configured for the selected decision provider."""

    pass


class TerminalWriter(Protocol):
    """Terminal I/O boundary. ``write`` submits one line of input, fire-and-forget."""

    def write(self, text: str, terminal_id: str) -> None: ...


class SessionCoordinator:
    """Runs one orchestrator session at a time over N terminals."""

    def __init__(
        self,
        terminal: TerminalWriter,
        decision_caller: DecisionCaller,
        config_store: ConfigStore | None = None,
        store: OrchestratorStore | None = None,
        history: SessionHistory | None = None,
        profiles: ProfileLoader | None = None,
        timings: SupervisorTimings | None = None,
        retry_policy: RetryPolicy | None = None,
        exclusive_mode_active: Callable[[], bool] | None = None,
    ):
        self.terminal = terminal
        self.decision_caller = decision_caller
        self.config_store = config_store or ConfigStore()
        self.store = store or OrchestratorStore()
        self.history = history
        self.profiles = profiles or ProfileLoader()
        self.timings = timings
        self.retry_policy = retry_policy
        self.exclusive_mode_active = exclusive_mode_active or (lambda: False)

        self.config: OrchestratorConfig | None = None
        self.call_queue: CallQueue | None = None
        self.supervisors: dict[str, TerminalSupervisor] = {}
        self._session: Session | None = None
        self._duration_timer: asyncio.TimerHandle | None = None

    # --- Queries ---

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def is_running(self) -> bool:
        return self._session is not None and self._session.is_running

    def is_active(self, session_id: str) -> bool:
        """True while session_id is the current, running session."""
        return self._session is not None and self._session.id == session_id and self._session.is_running

    # --- Lifecycle ---

    async def start(self, request: StartRequest) -> Session:
        """Start a session.

        Raises:
            ExclusiveModeActiveError: If a single-agent mode is running
            AlreadyRunningError: If this orchestrator is already running
            MissingCredentialError: If the selected provider has no API key
            ConfigError: If the configuration file is invalid
        """
        if self.exclusive_mode_active():
            raise ExclusiveModeActiveError("Cannot start while a single-agent session is running")
        if self.is_running:
            raise AlreadyRunningError("Orchestrator already running")
        if not request.terminals:
            raise OrchestratorError("At least one terminal is required")

        config = self.config_store.load()
        provider = request.provider or config.default_provider
        api_key = config.api_key_for(provider)
        if not api_key:
            raise MissingCredentialError(f"No {provider.value} API key configured")

        cli_provider = request.cli_provider or config.cli_provider
        profile = self.profiles.load(cli_provider)
        time_limit = request.time_limit if request.time_limit is not None else config.max_duration

        session = Session(
            id=f"orch_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}",
            mode=request.mode,
            master_task=request.master_task,
            time_limit=time_limit,
            safety_level=request.safety_level or config.default_safety_level,
            provider=provider,
            api_key=api_key,
            model=config.model_for(provider),
            cli_provider=cli_provider,
            project_folder=request.project_folder,
        )
        self.config = config
        self._session = session
        self.call_queue = CallQueue(config.max_concurrent_calls, config.call_stagger_ms / 1000)
        gateway = DecisionGateway(
            self.decision_caller, provider, api_key, session.model, self.retry_policy
        )
        timings = self.timings or SupervisorTimings(idle_timeout=config.idle_timeout)
        self.store.start_session(session)
        logger.info(f"Starting session {session.id} ({session.mode.value}, {len(request.terminals)} terminals)")

        tasks = await self._assign_tasks(request, gateway)
        if not self.is_active(session.id):
            return session

        for spec in request.terminals:
            self.store.add_terminal(spec, tasks[spec.terminal_id])
            supervisor = TerminalSupervisor(
                terminal_id=spec.terminal_id,
                session=session,
                store=self.store,
                writer=self.terminal.write,
                gateway=gateway,
                call_queue=self.call_queue,
                profile=profile,
                timings=timings,
                is_active=self.is_active,
                on_finished=self.check_all_finished,
            )
            self.supervisors[spec.terminal_id] = supervisor
            supervisor.arm_ready_fallback()

        if time_limit > 0:
            loop = asyncio.get_running_loop()
            self._duration_timer = loop.call_later(time_limit * 60, self._on_time_limit, session.id)
        return session

    async def _assign_tasks(self, request: StartRequest, gateway: DecisionGateway) -> dict[str, str]:
        terminal_ids = [spec.terminal_id for spec in request.terminals]
        if request.mode == OrchestratorMode.PARALLEL:
            return {tid: request.tasks.get(tid) or request.master_task for tid in terminal_ids}

        self.store.add_coordinator_log(LogEntryType.DECISION, "Decomposing master task...")
        subtasks = await gateway.decompose_task(request.master_task, len(terminal_ids))
        if not subtasks:
            self.store.add_coordinator_log(
                LogEntryType.ERROR, "Failed to decompose task. Using master task for all terminals."
            )
            return {tid: request.master_task for tid in terminal_ids}

        decomposed = [
            DecomposedTask(terminal_id=tid, task=subtasks[min(i, len(subtasks) - 1)], order=i)
            for i, tid in enumerate(terminal_ids)
        ]
        self.store.set_decomposed_tasks(decomposed)
        self.store.add_coordinator_log(
            LogEntryType.DECISION, f"Decomposed into {len(decomposed)} sub-tasks"
        )
        return {item.terminal_id: item.task for item in decomposed}

    def _on_time_limit(self, session_id: str) -> None:
        self._duration_timer = None
        if not self.is_active(session_id):
            return
        limit = self._session.time_limit
        self.store.add_coordinator_log(LogEntryType.COMPLETE, f"Time limit reached ({limit:g} minutes)")
        self.stop(SessionOutcome.COMPLETED)

    def stop(self, outcome: SessionOutcome = SessionOutcome.STOPPED) -> SessionRecord | None:
        """Stop the session. Synchronous: no timer or queued call survives it."""
        if self._session is None:
            return None
        if self._duration_timer is not None:
            self._duration_timer.cancel()
            self._duration_timer = None
        for supervisor in self.supervisors.values():
            supervisor.teardown()
        if self.call_queue is not None:
            self.call_queue.clear()

        record = self.store.stop_session(outcome)
        self._session = None
        self.supervisors = {}
        logger.info(f"Session stopped ({outcome.value})")

        if record is not None and self.history is not None:
            try:
                self.history.save(record)
            except HistoryError as e:
                logger.error(f"Failed to save session history: {e}")
        return record

    def pause(self) -> None:
        if not self.is_running or self._session.is_paused:
            return
        self.store.set_paused(True)
        for supervisor in self.supervisors.values():
            supervisor.pause()

    def resume(self) -> None:
        if not self.is_running or not self._session.is_paused:
            return
        self.store.set_paused(False)
        for supervisor in self.supervisors.values():
            supervisor.resume()

    def nudge_all(self) -> None:
        """Operator escape hatch: start waiting terminals and re-evaluate all now."""
        if not self.is_running:
            return
        for supervisor in list(self.supervisors.values()):
            supervisor.nudge()

    # --- Routing ---

    def on_data(self, text: str, terminal_id: str) -> None:
        """Terminal I/O boundary inbound callback."""
        supervisor = self.supervisors.get(terminal_id)
        if supervisor is None:
            return
        supervisor.on_output(text)

    def check_all_finished(self) -> None:
        """Stop the session once every terminal reached a terminal state."""
        if not self.is_running:
            return
        terminals = [self.store.get_terminal(tid) for tid in self.supervisors]
        states = [state for state in terminals if state is not None]
        if not states or not all(state.is_finished for state in states):
            return
        if all(state.status == TerminalStatus.ERROR for state in states):
            self.store.add_coordinator_log(LogEntryType.ERROR, "All terminals failed. Stopping orchestrator.")
            self.stop(SessionOutcome.ERROR)
        else:
            self.store.add_coordinator_log(
                LogEntryType.COMPLETE, "All terminals finished! Stopping orchestrator."
            )
            self.stop(SessionOutcome.COMPLETED)
