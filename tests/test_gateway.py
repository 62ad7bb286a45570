"""Tests for the decision-call gateway.

Covers prompt construction (state-dependent sections, peer awareness,
output summarization) and the retried decision / decomposition calls.
"""

from __future__ import annotations

import pytest

from conductor.core.gateway import (
    DECISION_TEMPERATURE,
    DECOMPOSE_TEMPERATURE,
    DecisionContext,
    DecisionGateway,
    PeerSummary,
    RetryPolicy,
    build_system_prompt,
    build_user_prompt,
)
from conductor.core.models import DecisionProvider, DecisionResponse, OrchestratorMode, TokenUsage


def make_gateway(api, attempts: int = 3) -> DecisionGateway:
    return DecisionGateway(
        api,
        DecisionProvider.GROQ,
        "gsk-test-key",
        "llama-3.3-70b-versatile",
        RetryPolicy(max_attempts=attempts, base_delay=0),
    )


class TestBuildSystemPrompt:
    """Tests for build_system_prompt()."""

    def test_base_prompt_has_mode_and_task(self):
        prompt = build_system_prompt(DecisionContext(task="build a todo app"))
        assert "MODE: PARALLEL" in prompt
        assert "TASK: build a todo app" in prompt
        assert "ALREADY been sent" not in prompt
        assert "URGENT" not in prompt

    def test_task_sent_section(self):
        prompt = build_system_prompt(DecisionContext(task="t", task_sent=True))
        assert "The task has ALREADY been sent" in prompt

    def test_last_response_section(self):
        prompt = build_system_prompt(DecisionContext(task="t", last_response="Add tests"))
        assert 'Your last response was: "Add tests"' in prompt

    @pytest.mark.parametrize(
        "waiting_seconds,consecutive_waits,urgent",
        [(0.0, 0, False), (7.5, 0, True), (0.0, 2, True), (7.0, 1, False)],
    )
    def test_urgency_escalation(self, waiting_seconds, consecutive_waits, urgent):
        context = DecisionContext(
            task="t", waiting_seconds=waiting_seconds, consecutive_waits=consecutive_waits
        )
        assert ("URGENT" in build_system_prompt(context)) is urgent

    def test_escalation_threshold_configurable(self):
        context = DecisionContext(task="t", waiting_seconds=1.0, escalate_after=0.5)
        assert "URGENT" in build_system_prompt(context)

    @pytest.mark.parametrize("count,reminder", [(0, False), (5, False), (10, True), (20, True)])
    def test_periodic_reminder(self, count, reminder):
        prompt = build_system_prompt(DecisionContext(task="ship it", decision_count=count))
        assert ('REMINDER: Your task is: "ship it"' in prompt) is reminder

    def test_peer_section_split_mode(self):
        context = DecisionContext(
            task="backend",
            mode=OrchestratorMode.SPLIT,
            peers=[PeerSummary(task="frontend", status="running", last_message="Sending: npm test")],
        )
        prompt = build_system_prompt(context)
        assert "=== OTHER TERMINALS ===" in prompt
        assert '- "frontend" [running] (Sending: npm test)' in prompt
        assert "sub-tasks of the same project" in prompt

    def test_peer_section_parallel_mode(self):
        context = DecisionContext(task="a", peers=[PeerSummary(task="b", status="pending")])
        prompt = build_system_prompt(context)
        assert '- "b" [pending]' in prompt
        assert "separate tasks" in prompt


class TestPeerSummary:
    def test_truncates_long_fields(self):
        line = PeerSummary(task="t" * 200, status="idle", last_message="m" * 200).render()
        assert line == f'- "{"t" * 80}" [idle] ({"m" * 50})'


class TestBuildUserPrompt:
    def test_wraps_output(self):
        prompt = build_user_prompt("Which database?")
        assert prompt.startswith("TERMINAL OUTPUT:\n```\nWhich database?\n```")
        assert '"action": "wait"|"send"|"done"' in prompt

    def test_long_output_summarized(self):
        output = "\n".join(f"line {i} " + "x" * 80 for i in range(500))
        prompt = build_user_prompt(output, max_chars=2000)
        assert "line 499" in prompt
        assert len(prompt) < 2300


class TestRetryPolicy:
    def test_linear_delay(self):
        policy = RetryPolicy(max_attempts=3, base_delay=1.0)
        assert [policy.get_delay(n) for n in (1, 2, 3)] == [1.0, 2.0, 3.0]


class TestRequestDecision:
    """Tests for DecisionGateway.request_decision()."""

    @pytest.mark.asyncio
    async def test_success_returns_content(self, make_api):
        api = make_api(["Add tests"])
        result = await make_gateway(api).request_decision(DecisionContext(task="t"), "output")

        assert result == "Add tests"
        request = api.requests[0]
        assert request.temperature == DECISION_TEMPERATURE
        assert request.api_key == "gsk-test-key"
        assert request.model == "llama-3.3-70b-versatile"
        assert "TERMINAL OUTPUT" in request.user_prompt

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, make_api):
        api = make_api([DecisionResponse.failure("boom"), DecisionResponse.failure("boom"), "y"])
        retries = []

        result = await make_gateway(api).request_decision(
            DecisionContext(task="t"),
            "output",
            on_retry=lambda attempt, total, delay, error: retries.append((attempt, total, error)),
        )

        assert result == "y"
        assert api.calls == 3
        assert retries == [(1, 3, "boom"), (2, 3, "boom")]

    @pytest.mark.asyncio
    async def test_usage_reported_for_every_attempt(self, make_api):
        spent = TokenUsage(prompt_tokens=40, completion_tokens=2, total_tokens=42)
        api = make_api(
            [
                DecisionResponse(success=False, error="rate limited", usage=spent),
                DecisionResponse(success=True, content="y", usage=spent),
            ]
        )
        usages = []

        result = await make_gateway(api).request_decision(
            DecisionContext(task="t"), "output", on_usage=usages.append
        )

        assert result == "y"
        assert [u.total_tokens for u in usages] == [42, 42]

    @pytest.mark.asyncio
    async def test_exhaustion_returns_none(self, make_api):
        api = make_api(default=DecisionResponse.failure("down"))
        result = await make_gateway(api).request_decision(DecisionContext(task="t"), "output")
        assert result is None
        assert api.calls == 3

    @pytest.mark.asyncio
    async def test_caller_exception_treated_as_failure(self):
        async def broken(request):
            raise RuntimeError("socket closed")

        gateway = DecisionGateway(broken, DecisionProvider.GROQ, "k", "m", RetryPolicy(1, 0))
        assert await gateway.request_decision(DecisionContext(task="t"), "output") is None

    @pytest.mark.asyncio
    async def test_empty_content_is_none(self, make_api):
        api = make_api([""])
        assert await make_gateway(api).request_decision(DecisionContext(task="t"), "o") is None

    @pytest.mark.asyncio
    async def test_inactive_session_stops_retrying(self, make_api):
        api = make_api(default=DecisionResponse.failure("down"))
        active = iter([True, False])

        result = await make_gateway(api).request_decision(
            DecisionContext(task="t"), "output", is_active=lambda: next(active)
        )

        assert result is None
        assert api.calls == 1


class TestDecomposeTask:
    """Tests for DecisionGateway.decompose_task()."""

    @pytest.mark.asyncio
    async def test_returns_subtasks(self, make_api):
        api = make_api(['["build API", "write UI"]'])
        result = await make_gateway(api).decompose_task("build an app", 2)

        assert result == ["build API", "write UI"]
        request = api.requests[0]
        assert request.temperature == DECOMPOSE_TEMPERATURE
        assert "JSON array of 2 strings" in request.system_prompt
        assert "build an app" in request.user_prompt

    @pytest.mark.asyncio
    async def test_malformed_answer_is_none(self, make_api):
        api = make_api(["I would split it into frontend and backend."])
        assert await make_gateway(api).decompose_task("build an app", 2) is None

    @pytest.mark.asyncio
    async def test_failed_call_is_none_without_retry(self, make_api):
        api = make_api(default=DecisionResponse.failure("down"))
        assert await make_gateway(api).decompose_task("build an app", 2) is None
        assert api.calls == 1
