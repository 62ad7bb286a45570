"""Per-terminal supervision loop.

A TerminalSupervisor owns one terminal for the lifetime of a session:

    pending --(ready prompt / fallback / nudge)--> running
    running --(idle timeout)--> evaluate --> write input, WAIT, or finish
    finish: completed (explicit completion signal)
            error     (after PERMANENT_FAILURE_THRESHOLD failed decision calls)

All waits are asyncio timers. Every continuation re-checks that the session
is still active before touching the terminal, so results that arrive after
stop() are discarded.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from conductor.core.call_queue import CallQueue
from conductor.core.classifier import (
    classify_status,
    detect_task_completion,
    is_dangerous,
    last_lines,
    parse_stats,
    strip_ansi,
)
from conductor.core.dedup import SuggestionFilter
from conductor.core.fast_path import fast_path_response, find_confirmation_question
from conductor.core.gateway import DecisionContext, DecisionGateway, PeerSummary
from conductor.core.models import (
    LogEntryType,
    Session,
    TerminalAgentState,
    TerminalStatus,
    TokenUsage,
)
from conductor.core.parser import DecisionAction, parse_decision
from conductor.core.profiles import ProviderProfile
from conductor.core.state import OrchestratorStore

logger = logging.getLogger(__name__)

ERROR_THRESHOLD = 3
PERMANENT_FAILURE_THRESHOLD = 8
MAX_CONSECUTIVE_WAITS = 5
WAIT_SHRINK_AFTER = 2
LONG_INSTRUCTION_CHARS = 20
SHORT_TOKEN_CHARS = 3
READY_WINDOW_LINES = 5
# Enough trailing text to hold the last status lines of any assistant
STATUS_TAIL_CHARS = 8000

FORCE_CONTINUE_MESSAGE = "Please continue with the next step or suggest an improvement"


@dataclass
class SupervisorTimings:
    """Every delay the supervisor uses, in seconds."""

    idle_timeout: float = 5.0
    working_recheck_cap: float = 8.0
    working_idle_floor: float = 8.0
    waiting_idle_cap: float = 1.5
    wait_poll_cap: float = 3.0
    duplicate_retry_delay: float = 3.0
    ready_fallback: float = 30.0
    post_ready_delay: float = 2.0
    error_backoff_base: float = 5.0
    error_backoff_max: float = 30.0
    waiting_escalation: float = 7.0

    def error_backoff(self, errors: int) -> float:
        exponent = max(0, errors - ERROR_THRESHOLD)
        return min(self.error_backoff_max, self.error_backoff_base * 2**exponent)


@dataclass
class TerminalRefs:
    """Ephemeral per-terminal state. Created on registration, dropped on stop."""

    idle_timer: asyncio.TimerHandle | None = None
    ready_timer: asyncio.TimerHandle | None = None
    ready_deadline: float | None = None  # loop time
    processing: bool = False
    task_sent: bool = False
    last_response: str = ""
    waiting_start: float | None = None
    consecutive_waits: int = 0
    decision_count: int = 0
    suggestions: SuggestionFilter = field(default_factory=SuggestionFilter)
    error_count: int = 0
    waiting_for_ready: bool = True
    output_chunks: int = 0
    chunks_at_send: int = -1
    last_sent: str = ""

    def cancel_timers(self) -> None:
        if self.idle_timer is not None:
            self.idle_timer.cancel()
            self.idle_timer = None
        if self.ready_timer is not None:
            self.ready_timer.cancel()
            self.ready_timer = None


class TerminalSupervisor:
    """Drives one terminal to completion."""

    def __init__(
        self,
        terminal_id: str,
        session: Session,
        store: OrchestratorStore,
        writer: Callable[[str, str], object],
        gateway: DecisionGateway,
        call_queue: CallQueue,
        profile: ProviderProfile,
        timings: SupervisorTimings,
        is_active: Callable[[str], bool],
        on_finished: Callable[[], None],
    ):
        self.terminal_id = terminal_id
        self.session = session
        self.store = store
        self.writer = writer
        self.gateway = gateway
        self.call_queue = call_queue
        self.profile = profile
        self.timings = timings
        self.is_active = is_active
        self.on_finished = on_finished
        self.refs = TerminalRefs()
        self._loop = asyncio.get_running_loop()
        self._tasks: set[asyncio.Task] = set()

    # --- Helpers ---

    @property
    def state(self) -> TerminalAgentState | None:
        return self.store.get_terminal(self.terminal_id)

    @property
    def label(self) -> str:
        state = self.state
        return (state.tab_id if state and state.tab_id else None) or self.terminal_id

    def _can_continue(self) -> bool:
        return self.is_active(self.session.id) and not self.session.is_paused

    def _is_finished(self) -> bool:
        state = self.state
        return state is None or state.is_finished

    def _log(self, entry_type: LogEntryType, message: str, detail: str | None = None) -> None:
        self.store.add_terminal_log(self.terminal_id, entry_type, message, detail)

    def _set_status(self, status: TerminalStatus) -> None:
        if self._is_finished():
            return
        self.store.set_status(self.terminal_id, status)

    def _spawn(self, coro_fn: Callable[[], object]) -> None:
        task = asyncio.ensure_future(coro_fn())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _reset_waits(self) -> None:
        self.refs.consecutive_waits = 0
        self.refs.waiting_start = None
        self.store.update_terminal(self.terminal_id, consecutive_waits=0)

    # --- Timers ---

    def _arm_idle(self, delay: float) -> None:
        if self.refs.idle_timer is not None:
            self.refs.idle_timer.cancel()
            self.refs.idle_timer = None
        if self._is_finished() or not self._can_continue():
            return
        self.refs.idle_timer = self._loop.call_later(max(0.0, delay), self._on_idle_timer)

    def _on_idle_timer(self) -> None:
        self.refs.idle_timer = None
        self._spawn(self.evaluate)

    def arm_ready_fallback(self) -> None:
        """Force-send the task if no ready prompt shows up in time."""
        self.refs.ready_deadline = self._loop.time() + self.timings.ready_fallback
        self.refs.ready_timer = self._loop.call_later(
            self.timings.ready_fallback, self._on_ready_timeout
        )

    def _on_ready_timeout(self) -> None:
        self.refs.ready_timer = None
        if not self._can_continue() or not self.refs.waiting_for_ready:
            return
        self.force_start("Auto-starting after timeout...")
        self._arm_idle(self.timings.post_ready_delay)

    def _output_delay(self) -> float:
        """Idle window after fresh output, shaped by what the assistant shows."""
        state = self.state
        base = self.timings.idle_timeout
        if state is None:
            return base
        status = classify_status(strip_ansi(state.output_buffer[-STATUS_TAIL_CHARS:]), self.profile)
        if status == "waiting":
            return min(base, self.timings.waiting_idle_cap)
        if status == "working":
            return max(base, self.timings.working_idle_floor)
        return base

    # --- Inbound output ---

    def on_output(self, data: str) -> None:
        """Handle a chunk of raw terminal output."""
        if not self.is_active(self.session.id):
            return
        state = self.state
        if state is None:
            return
        self.store.append_output(self.terminal_id, data)
        self.refs.output_chunks += 1
        if self.session.is_paused or state.is_finished:
            return

        if self.refs.waiting_for_ready:
            window = last_lines(strip_ansi(state.output_buffer[-STATUS_TAIL_CHARS:]), READY_WINDOW_LINES)
            if self._is_ready_prompt(window) and self._start_task("Assistant is ready! Sending task..."):
                self.store.add_coordinator_log(
                    LogEntryType.READY, f"Terminal {self.label} is ready, task sent"
                )
            return

        if state.status == TerminalStatus.IDLE:
            self._set_status(TerminalStatus.RUNNING)
        self._arm_idle(self._output_delay())

    def _is_ready_prompt(self, window: str) -> bool:
        if not self.profile.prompt_pattern.search(window):
            return False
        if ProviderProfile.any_match(self.profile.trust_patterns, window):
            return False
        return not ProviderProfile.any_match(self.profile.confirm_patterns, window)

    def _start_task(self, message: str) -> bool:
        """Leave the ready-wait state and send the assigned task."""
        refs = self.refs
        refs.waiting_for_ready = False
        if refs.ready_timer is not None:
            refs.ready_timer.cancel()
            refs.ready_timer = None
        state = self.state
        if state is None:
            return False
        self._log(LogEntryType.READY, message)
        self._set_status(TerminalStatus.RUNNING)
        if self._send(state.task):
            refs.task_sent = True
            self.store.update_terminal(self.terminal_id, task_sent=True)
            return True
        return False

    def force_start(self, message: str) -> bool:
        """Send the task now if still waiting for the ready prompt.

        Returns True only when this call performed the send.
        """
        if not self.refs.waiting_for_ready or self._is_finished():
            return False
        return self._start_task(message)

    # --- Operator controls ---

    def nudge(self) -> None:
        """Leave ready-wait if needed and evaluate immediately."""
        if self._is_finished() or not self._can_continue():
            return
        if self.refs.waiting_for_ready:
            self.force_start("Nudged! Starting...")
        else:
            self._log(LogEntryType.DECISION, "Nudged! Re-analyzing...")
        self._reset_waits()
        self.refs.cancel_timers()
        self._spawn(self.evaluate)

    def pause(self) -> None:
        self.refs.cancel_timers()

    def resume(self) -> None:
        """Re-arm timers from current state rather than restarting them."""
        if self._is_finished() or not self._can_continue():
            return
        refs = self.refs
        if refs.waiting_for_ready:
            deadline = refs.ready_deadline or self._loop.time()
            refs.ready_timer = self._loop.call_later(
                max(0.0, deadline - self._loop.time()), self._on_ready_timeout
            )
            return
        if refs.processing:
            return
        state = self.state
        elapsed = time.time() - state.last_output_time if state else 0.0
        delay = self.timings.idle_timeout - elapsed
        if refs.error_count >= ERROR_THRESHOLD:
            delay = max(delay, self.timings.error_backoff(refs.error_count))
        self._arm_idle(delay)

    def teardown(self) -> None:
        self.refs.cancel_timers()

    # --- Evaluation ---

    async def evaluate(self) -> None:
        """One idle-timeout pass. At most one runs per terminal at a time."""
        refs = self.refs
        if refs.processing or not self._can_continue():
            return
        state = self.state
        if state is None or state.is_finished:
            return

        refs.processing = True
        try:
            next_delay = await self._evaluate(state)
        finally:
            refs.processing = False

        if next_delay is not None and self._can_continue():
            self._arm_idle(next_delay)

    async def _evaluate(self, state: TerminalAgentState) -> float | None:
        """Returns the delay before the next pass, or None to wait for output."""
        timings = self.timings
        refs = self.refs
        clean = strip_ansi(state.output_buffer)

        stats = parse_stats(clean)
        if stats:
            self.store.update_stats(self.terminal_id, stats)

        if classify_status(clean, self.profile) == "working":
            self._log(LogEntryType.WORKING, "Assistant is working, skipping decision call")
            return min(timings.idle_timeout, timings.working_recheck_cap)

        result = fast_path_response(
            clean, refs.task_sent, state.task, self.session.safety_level, self.profile
        )
        if result is not None:
            if result.is_wait:
                self.store.increment_stat(self.terminal_id, "fast_path_decisions")
                self._log(LogEntryType.FAST_PATH, "WAIT (working pattern detected)")
                return timings.idle_timeout
            if refs.output_chunks == refs.chunks_at_send and result.response == refs.last_sent:
                self._log(LogEntryType.FAST_PATH, "No output since last input, waiting")
                return None

            self.store.increment_stat(self.terminal_id, "fast_path_decisions")
            is_task = result.question is None and result.response == state.task
            if result.question is not None:
                self._log(LogEntryType.PERMISSION, f"Approved: {result.response}", result.question)
            elif is_task:
                self._log(LogEntryType.FAST_PATH, "Sent task")
            else:
                self._log(LogEntryType.FAST_PATH, f"Auto: {result.response[:60]}")

            self._reset_waits()
            if self._send(result.response) and is_task:
                refs.task_sent = True
                self.store.update_terminal(self.terminal_id, task_sent=True)
            return timings.idle_timeout

        if detect_task_completion(clean, self.profile):
            self._complete("Task appears complete!")
            return None

        self.store.update_terminal(self.terminal_id, is_idle=True)
        if state.status == TerminalStatus.RUNNING:
            self._set_status(TerminalStatus.IDLE)
        self._log(LogEntryType.DECISION, "Terminal idle, consulting decision model...")

        next_delay: float | None = None

        async def consult() -> None:
            nonlocal next_delay
            next_delay = await self._consult(clean)

        ran = await self.call_queue.submit(consult)
        return next_delay if ran else None

    def _decision_context(self, state: TerminalAgentState) -> DecisionContext:
        refs = self.refs
        peers = []
        for terminal_id, other in self.store.terminals.items():
            if terminal_id == self.terminal_id:
                continue
            last = other.activity_log[-1].message if other.activity_log else ""
            peers.append(PeerSummary(task=other.task, status=other.status.value, last_message=last))
        waiting = time.time() - refs.waiting_start if refs.waiting_start is not None else 0.0
        return DecisionContext(
            task=state.task,
            task_sent=refs.task_sent,
            last_response=refs.last_response,
            waiting_seconds=waiting,
            consecutive_waits=refs.consecutive_waits,
            decision_count=refs.decision_count,
            mode=self.session.mode,
            peers=peers,
            escalate_after=self.timings.waiting_escalation,
        )

    def _log_retry(self, attempt: int, max_attempts: int, delay: float, error: str) -> None:
        self._log(
            LogEntryType.ERROR,
            f"Decision call failed, retrying in {delay:g}s ({attempt}/{max_attempts})...",
            error,
        )

    def _record_usage(self, usage: TokenUsage) -> None:
        self.store.increment_stat(self.terminal_id, "decision_tokens", usage.total_tokens)

    async def _consult(self, clean: str) -> float | None:
        """Run one decision call from inside the call queue."""
        state = self.state
        if state is None or not self._can_continue():
            return None
        raw = await self.gateway.request_decision(
            self._decision_context(state),
            clean,
            is_active=self._can_continue,
            on_retry=self._log_retry,
            on_usage=self._record_usage,
        )
        if not self._can_continue() or self._is_finished():
            return None
        if raw is None:
            return self._on_failure()
        return self._on_decision(raw)

    def _on_failure(self) -> float | None:
        refs = self.refs
        refs.error_count += 1
        errors = refs.error_count

        if errors >= PERMANENT_FAILURE_THRESHOLD:
            self._log(LogEntryType.ERROR, f"Terminal permanently failed after {errors} errors")
            logger.error(f"Terminal {self.terminal_id} failed permanently after {errors} errors")
            self.store.set_status(self.terminal_id, TerminalStatus.ERROR)
            self.store.update_terminal(self.terminal_id, failed_permanently=True)
            self.store.add_coordinator_log(
                LogEntryType.ERROR, f"Terminal {self.label} failed permanently"
            )
            self.refs.cancel_timers()
            self.on_finished()
            return None

        if errors >= ERROR_THRESHOLD:
            backoff = self.timings.error_backoff(errors)
            self._log(LogEntryType.ERROR, f"{errors} failures, retrying in {backoff:g}s...")
            self._set_status(TerminalStatus.ERROR)
            return backoff

        self._log(LogEntryType.ERROR, f"Decision call failed ({errors} in a row)")
        return self.timings.idle_timeout

    def _on_decision(self, raw: str) -> float | None:
        refs = self.refs
        timings = self.timings
        state = self.state
        if state is None:
            return None

        refs.error_count = 0
        if state.status == TerminalStatus.ERROR:
            self._set_status(TerminalStatus.RUNNING)
        refs.decision_count += 1
        self.store.increment_stat(self.terminal_id, "llm_decisions")

        decision = parse_decision(raw)
        text = decision.text
        is_short = len(text) <= SHORT_TOKEN_CHARS

        if not decision.is_wait and not is_short and text == refs.last_response:
            self._log(LogEntryType.DECISION, "Skipping repeated response")
            return timings.idle_timeout

        if not decision.is_wait and not is_short and refs.suggestions.is_duplicate(text):
            self._log(LogEntryType.DECISION, "Skipping similar suggestion")
            return timings.duplicate_retry_delay

        entry_type = LogEntryType.WAITING if decision.is_wait else LogEntryType.DECISION
        self._log(entry_type, f"Decision: {text}")
        if not decision.is_wait:
            refs.last_response = text
            refs.suggestions.remember(text)

        if decision.action == DecisionAction.WAIT:
            refs.consecutive_waits += 1
            self.store.update_terminal(self.terminal_id, consecutive_waits=refs.consecutive_waits)
            if refs.consecutive_waits >= MAX_CONSECUTIVE_WAITS:
                self._log(LogEntryType.DECISION, "WAIT limit reached. Forcing action...")
                self._reset_waits()
                self._send(FORCE_CONTINUE_MESSAGE)
                return timings.idle_timeout
            if refs.waiting_start is None:
                refs.waiting_start = time.time()
            if refs.consecutive_waits >= WAIT_SHRINK_AFTER:
                return min(timings.idle_timeout, timings.wait_poll_cap)
            return timings.idle_timeout

        if decision.action == DecisionAction.DONE:
            self._complete("Decision model reports task complete")
            return None

        self._reset_waits()

        if decision.action in (DecisionAction.YES, DecisionAction.NO):
            if decision.action == DecisionAction.YES:
                question = find_confirmation_question(strip_ansi(state.output_buffer), self.profile)
                if question and is_dangerous(question, self.session.safety_level):
                    self._log(LogEntryType.PERMISSION, "Blocked approval of dangerous command", question)
                    self.store.add_coordinator_log(
                        LogEntryType.PERMISSION,
                        f"Terminal {self.label} is waiting on a dangerous confirmation",
                        question,
                    )
                    return None
            self._send(text.lower())
            return timings.idle_timeout

        if len(text) > LONG_INSTRUCTION_CHARS and not refs.task_sent:
            refs.task_sent = True
            self.store.update_terminal(self.terminal_id, task_sent=True)
        self._send(text)
        return timings.idle_timeout

    def _complete(self, message: str) -> None:
        self._log(LogEntryType.COMPLETE, message)
        self._reset_waits()
        self._set_status(TerminalStatus.COMPLETED)
        self.store.add_coordinator_log(
            LogEntryType.COMPLETE, f"Terminal {self.label} finished its task"
        )
        self.refs.cancel_timers()
        self.on_finished()

    # --- Outbound input ---

    def _send(self, text: str) -> bool:
        """Write input to the terminal. Dangerous input is never written."""
        if is_dangerous(text, self.session.safety_level):
            self._log(LogEntryType.PERMISSION, f"Blocked dangerous command: {text[:60]}", text)
            logger.warning(f"Blocked dangerous input for terminal {self.terminal_id}: {text!r}")
            return False
        if not self._can_continue():
            return False

        self._log(LogEntryType.INPUT, f"Sending: {text[:100]}")
        try:
            self.writer(text, self.terminal_id)
        except Exception as e:
            self._log(LogEntryType.ERROR, f"Failed to write to terminal: {e}")
            logger.error(f"Write to terminal {self.terminal_id} failed: {e}")
            return False

        self.store.mark_sent(self.terminal_id, text)
        state = self.state
        if state is not None and state.status == TerminalStatus.IDLE:
            self._set_status(TerminalStatus.RUNNING)
        self.refs.last_sent = text
        self.refs.chunks_at_send = self.refs.output_chunks
        return True
