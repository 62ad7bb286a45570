"""Tests for the per-terminal supervision loop.

Each test runs a one-terminal session through the coordinator so the
supervisor sees real timers, a real call queue and a real store.
"""

from __future__ import annotations

import asyncio

import pytest

from conductor.core.models import (
    DecisionResponse,
    LogEntryType,
    StartRequest,
    TerminalSpec,
    TerminalStatus,
    TokenUsage,
)
from conductor.core.state import StoreEventType
from conductor.core.supervisor import SupervisorTimings

READY = "Welcome to Claude Code\n\n❯ "
WAIT_JSON = '{"action": "wait"}'


def send_json(text: str) -> str:
    return '{"action": "send", "text": "%s"}' % text


async def start_ready(coordinator, *terminal_ids: str, **kwargs):
    """Start a session and deliver the ready prompt to every terminal."""
    ids = terminal_ids or ("t1",)
    kwargs.setdefault("master_task", "write tests")
    await coordinator.start(
        StartRequest(terminals=[TerminalSpec(terminal_id=t) for t in ids], **kwargs)
    )
    for terminal_id in ids:
        coordinator.on_data(READY, terminal_id)


def log_of(coordinator, terminal_id: str = "t1"):
    return coordinator.store.get_terminal(terminal_id).activity_log


def has_message(coordinator, text: str, terminal_id: str = "t1") -> bool:
    return any(text in entry.message for entry in log_of(coordinator, terminal_id))


class TestSupervisorTimings:
    def test_error_backoff_doubles_and_caps(self):
        timings = SupervisorTimings()
        assert [timings.error_backoff(n) for n in (3, 4, 5, 6, 7)] == [5.0, 10.0, 20.0, 30.0, 30.0]


# =============================================================================
# Ready Wait
# =============================================================================


class TestReadyWait:
    """Tests for the pending state before the task is sent."""

    @pytest.mark.asyncio
    async def test_trust_dialog_is_not_ready(self, make_coordinator, terminal):
        coordinator = make_coordinator()
        await coordinator.start(StartRequest(master_task="write tests", terminals=[TerminalSpec(terminal_id="t1")]))

        coordinator.on_data("Do you trust the files in this folder?\n\n❯ ", "t1")
        await asyncio.sleep(0.1)

        assert terminal.writes == []
        assert coordinator.store.get_terminal("t1").status == TerminalStatus.PENDING
        coordinator.stop()

    @pytest.mark.asyncio
    async def test_fallback_sends_task_after_timeout(
        self, make_coordinator, decision_api, fast_timings, terminal, wait_until
    ):
        fast_timings.ready_fallback = 0.05
        decision_api.default = WAIT_JSON
        coordinator = make_coordinator()
        await coordinator.start(StartRequest(master_task="write tests", terminals=[TerminalSpec(terminal_id="t1")]))
        coordinator.on_data("Starting up\n", "t1")

        await wait_until(lambda: terminal.writes == [("write tests", "t1")])
        assert has_message(coordinator, "Auto-starting after timeout...")
        assert coordinator.store.get_terminal("t1").task_sent

        # The post-ready timer leads to a normal evaluation
        await wait_until(lambda: decision_api.calls >= 1)
        coordinator.stop()

    @pytest.mark.asyncio
    async def test_failed_write_leaves_task_unsent(self, make_coordinator, terminal):
        terminal.fail = True
        coordinator = make_coordinator()
        await start_ready(coordinator)

        state = coordinator.store.get_terminal("t1")
        assert not state.task_sent
        assert has_message(coordinator, "Failed to write to terminal")
        assert not any(e.type == LogEntryType.READY for e in coordinator.store.coordinator_log)
        coordinator.stop()


# =============================================================================
# Evaluation
# =============================================================================


class TestEvaluation:
    """Tests for one idle-timeout evaluation pass."""

    @pytest.mark.asyncio
    async def test_working_output_skips_decision_call(self, make_coordinator, decision_api):
        coordinator = make_coordinator()
        await start_ready(coordinator)

        coordinator.on_data("\nRunning the test suite\n", "t1")
        await asyncio.sleep(0.2)

        assert decision_api.calls == 0
        assert any(e.type == LogEntryType.WORKING for e in log_of(coordinator))
        coordinator.stop()

    @pytest.mark.asyncio
    async def test_fast_path_approves_once(self, make_coordinator, decision_api, terminal, wait_until):
        coordinator = make_coordinator()
        await start_ready(coordinator)

        coordinator.on_data("\nEdit src/app.py\nAllow? (y/n)", "t1")
        await wait_until(lambda: "y" in terminal.sent_to("t1"))
        await asyncio.sleep(0.15)

        assert terminal.sent_to("t1") == ["write tests", "y"]
        assert decision_api.calls == 0
        approvals = [e for e in log_of(coordinator) if e.type == LogEntryType.PERMISSION]
        assert approvals[0].message == "Approved: y"
        assert approvals[0].detail == "Edit src/app.py Allow? (y/n)"
        assert coordinator.store.get_terminal("t1").session_stats.fast_path_decisions == 1
        coordinator.stop()

    @pytest.mark.asyncio
    async def test_completion_detected_without_decision_call(
        self, make_coordinator, decision_api, wait_until
    ):
        coordinator = make_coordinator()
        await start_ready(coordinator)

        coordinator.on_data("\nI created the tests and fixed the bug.\nIs there anything else?\n", "t1")
        await wait_until(lambda: not coordinator.is_running)

        assert coordinator.store.get_terminal("t1").status == TerminalStatus.COMPLETED
        assert decision_api.calls == 0
        assert has_message(coordinator, "Task appears complete!")

    @pytest.mark.asyncio
    async def test_decision_sent_verbatim(self, make_coordinator, decision_api, terminal, wait_until):
        decision_api.script = [send_json("Add a README section for setup")]
        decision_api.default = WAIT_JSON
        coordinator = make_coordinator()
        await start_ready(coordinator)

        coordinator.on_data("\nWhat should I do next?\n", "t1")
        await wait_until(lambda: len(terminal.sent_to("t1")) == 2)

        assert terminal.sent_to("t1")[1] == "Add a README section for setup"
        state = coordinator.store.get_terminal("t1")
        assert state.output_buffer.endswith('--- AGENT SENT: "Add a README section for setup" ---\n')
        assert state.session_stats.llm_decisions >= 1
        coordinator.stop()

    @pytest.mark.asyncio
    async def test_similar_suggestion_skipped(self, make_coordinator, decision_api, terminal, wait_until):
        decision_api.script = [
            send_json("Add unit tests for the parser module"),
            send_json("add unit tests for parser module"),
        ]
        decision_api.default = WAIT_JSON
        coordinator = make_coordinator()
        await start_ready(coordinator)

        coordinator.on_data("\nWhat should I do next?\n", "t1")
        await wait_until(lambda: has_message(coordinator, "Skipping similar suggestion"))

        assert terminal.sent_to("t1") == ["write tests", "Add unit tests for the parser module"]
        coordinator.stop()

    @pytest.mark.asyncio
    async def test_repeated_response_skipped(self, make_coordinator, decision_api, terminal, wait_until):
        decision_api.script = [send_json("Refactor the database layer")] * 2
        decision_api.default = WAIT_JSON
        coordinator = make_coordinator()
        await start_ready(coordinator)

        coordinator.on_data("\nWhat should I do next?\n", "t1")
        await wait_until(lambda: has_message(coordinator, "Skipping repeated response"))

        assert terminal.sent_to("t1").count("Refactor the database layer") == 1
        coordinator.stop()

    @pytest.mark.asyncio
    async def test_yes_for_dangerous_question_blocked(
        self, make_coordinator, decision_api, terminal, wait_until
    ):
        decision_api.script = ["y"]
        coordinator = make_coordinator()
        await start_ready(coordinator)

        coordinator.on_data("\nrm -rf /\nAllow? (y/n)", "t1")
        await wait_until(lambda: has_message(coordinator, "Blocked approval of dangerous command"))

        assert terminal.sent_to("t1") == ["write tests"]
        stalled = [e for e in coordinator.store.coordinator_log if e.type == LogEntryType.PERMISSION]
        assert stalled[0].message == "Terminal t1 is waiting on a dangerous confirmation"
        assert "rm -rf /" in stalled[0].detail
        coordinator.stop()

    @pytest.mark.asyncio
    async def test_peers_included_in_prompt(self, make_coordinator, decision_api, wait_until):
        decision_api.default = WAIT_JSON
        coordinator = make_coordinator()
        await start_ready(
            coordinator, "t1", "t2", tasks={"t1": "write tests", "t2": "fix the login bug"}
        )

        coordinator.on_data("\nWhat should I do next?\n", "t1")
        await wait_until(lambda: decision_api.calls >= 1)

        prompt = decision_api.requests[0].system_prompt
        assert "=== OTHER TERMINALS ===" in prompt
        assert '"fix the login bug" [running]' in prompt
        coordinator.stop()


# =============================================================================
# Failure Recovery
# =============================================================================


class TestFailureRecovery:
    @pytest.mark.asyncio
    async def test_error_status_recovers_on_success(
        self, make_coordinator, decision_api, terminal, wait_until
    ):
        failure = DecisionResponse.failure("API error 500: overloaded")
        decision_api.script = [failure, failure, failure, send_json("Add a README section for setup")]
        decision_api.default = WAIT_JSON
        coordinator = make_coordinator()
        statuses = []

        def on_event(event):
            if event.event_type == StoreEventType.STATUS_CHANGED:
                statuses.append(event.status)

        coordinator.store.subscribe(on_event)
        await start_ready(coordinator)

        coordinator.on_data("\nHere is my plan.\n", "t1")
        await wait_until(lambda: "Add a README section for setup" in terminal.sent_to("t1"))

        assert statuses[:4] == [
            TerminalStatus.RUNNING,
            TerminalStatus.IDLE,
            TerminalStatus.ERROR,
            TerminalStatus.RUNNING,
        ]
        assert coordinator.supervisors["t1"].refs.error_count == 0
        assert coordinator.store.get_terminal("t1").status == TerminalStatus.RUNNING
        coordinator.stop()

    @pytest.mark.asyncio
    async def test_resume_keeps_error_backoff(
        self, make_coordinator, decision_api, fast_timings, wait_until
    ):
        fast_timings.error_backoff_base = 0.3
        fast_timings.error_backoff_max = 0.3
        coordinator = make_coordinator()
        await start_ready(coordinator)

        coordinator.on_data("\nHere is my plan.\n", "t1")
        await wait_until(lambda: decision_api.calls == 3)
        await wait_until(lambda: coordinator.store.get_terminal("t1").status == TerminalStatus.ERROR)

        coordinator.pause()
        await asyncio.sleep(0.1)
        coordinator.resume()
        await asyncio.sleep(0.15)

        assert decision_api.calls == 3
        await wait_until(lambda: decision_api.calls == 4)
        coordinator.stop()


# =============================================================================
# Concurrency and Status
# =============================================================================


class TestEvaluationGuard:
    @pytest.mark.asyncio
    async def test_concurrent_evaluations_do_not_interleave(
        self, make_coordinator, decision_api, wait_until
    ):
        """A second pass started while one is in flight returns without calling."""
        decision_api.gate = asyncio.Event()
        decision_api.default = WAIT_JSON
        coordinator = make_coordinator()
        await start_ready(coordinator)
        coordinator.on_data("\nWhat should I do next?\n", "t1")
        supervisor = coordinator.supervisors["t1"]
        supervisor.refs.cancel_timers()

        first = asyncio.ensure_future(supervisor.evaluate())
        second = asyncio.ensure_future(supervisor.evaluate())
        await wait_until(lambda: decision_api.in_flight == 1)
        await asyncio.sleep(0.05)

        assert second.done()
        assert decision_api.calls == 1
        assert supervisor.refs.processing

        decision_api.gate.set()
        await first
        assert decision_api.calls == 1
        assert not supervisor.refs.processing
        coordinator.stop()


class TestStatusAndStats:
    @pytest.mark.asyncio
    async def test_idle_while_consulting_then_running_after_input(
        self, make_coordinator, decision_api, terminal, wait_until
    ):
        decision_api.script = [WAIT_JSON, send_json("Add a README section for setup")]
        decision_api.default = WAIT_JSON
        coordinator = make_coordinator()
        statuses = []

        def on_event(event):
            if event.event_type == StoreEventType.STATUS_CHANGED:
                statuses.append(event.status)

        coordinator.store.subscribe(on_event)
        await start_ready(coordinator)

        coordinator.on_data("\nWhat should I do next?\n", "t1")
        await wait_until(lambda: "Add a README section for setup" in terminal.sent_to("t1"))

        assert statuses[:3] == [TerminalStatus.RUNNING, TerminalStatus.IDLE, TerminalStatus.RUNNING]
        waits = [e for e in log_of(coordinator) if e.type == LogEntryType.WAITING]
        assert waits[0].message == "Decision: WAIT"
        coordinator.stop()

    @pytest.mark.asyncio
    async def test_decision_tokens_accumulate(self, make_coordinator, decision_api, wait_until):
        spent = TokenUsage(prompt_tokens=90, completion_tokens=10, total_tokens=100)
        decision_api.script = [DecisionResponse(success=True, content=WAIT_JSON, usage=spent)] * 2
        decision_api.default = WAIT_JSON
        coordinator = make_coordinator()
        await start_ready(coordinator)

        coordinator.on_data("\nWhat should I do next?\n", "t1")
        await wait_until(lambda: decision_api.calls >= 3)

        stats = coordinator.store.get_terminal("t1").session_stats
        assert stats.decision_tokens == 200
        assert stats.tokens_used == 0
        coordinator.stop()


# =============================================================================
# Pause and Resume
# =============================================================================


class TestPauseResume:
    """Resume re-arms timers from elapsed time, not from zero."""

    @pytest.mark.asyncio
    async def test_idle_pass_runs_at_once_when_quiet_period_elapsed(
        self, make_coordinator, decision_api, fast_timings, wait_until
    ):
        fast_timings.idle_timeout = 0.3
        decision_api.default = WAIT_JSON
        coordinator = make_coordinator()
        await start_ready(coordinator)

        coordinator.on_data("\nHere is my plan.\n", "t1")
        coordinator.pause()
        await asyncio.sleep(0.4)
        assert decision_api.calls == 0

        coordinator.resume()
        await wait_until(lambda: decision_api.calls == 1, timeout=0.1)
        coordinator.stop()

    @pytest.mark.asyncio
    async def test_idle_pass_waits_out_remaining_quiet_period(
        self, make_coordinator, decision_api, fast_timings, wait_until
    ):
        fast_timings.idle_timeout = 0.3
        decision_api.default = WAIT_JSON
        coordinator = make_coordinator()
        await start_ready(coordinator)

        coordinator.on_data("\nHere is my plan.\n", "t1")
        coordinator.pause()
        await asyncio.sleep(0.1)
        coordinator.resume()

        await asyncio.sleep(0.1)
        assert decision_api.calls == 0
        await wait_until(lambda: decision_api.calls == 1, timeout=0.3)
        coordinator.stop()

    @pytest.mark.asyncio
    async def test_ready_fallback_keeps_original_deadline(
        self, make_coordinator, fast_timings, terminal, wait_until
    ):
        fast_timings.ready_fallback = 0.3
        coordinator = make_coordinator()
        await coordinator.start(StartRequest(master_task="write tests", terminals=[TerminalSpec(terminal_id="t1")]))
        supervisor = coordinator.supervisors["t1"]
        deadline = supervisor.refs.ready_deadline

        await asyncio.sleep(0.1)
        coordinator.pause()
        await asyncio.sleep(0.3)
        assert terminal.writes == []

        coordinator.resume()
        assert supervisor.refs.ready_deadline == deadline
        await wait_until(lambda: terminal.writes == [("write tests", "t1")], timeout=0.1)
        assert has_message(coordinator, "Auto-starting after timeout...")
        coordinator.stop()
