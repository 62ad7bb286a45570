# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the Conductor test suite.

This module provides the fakes and configuration used across test modules:
- A fake terminal writer that records every input line
- A scripted decision API with concurrency instrumentation
- Fast supervisor timings so timer-driven tests finish in milliseconds
- An isolated config file and provider profile loader

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from pathlib import Path

import pytest
import yaml

import conductor
from conductor.core.config import ConfigStore
from conductor.core.coordinator import SessionCoordinator
from conductor.core.gateway import RetryPolicy
from conductor.core.history import SessionHistory
from conductor.core.models import DecisionRequest, DecisionResponse
from conductor.core.profiles import ProfileLoader
from conductor.core.supervisor import SupervisorTimings

PROVIDERS_DIR = Path(conductor.__file__).parent / "config" / "providers"


# =============================================================================
# Fakes
# =============================================================================


class FakeTerminal:
    """Terminal writer that records (text, terminal_id) pairs."""

    def __init__(self) -> None:
        self.writes: list[tuple[str, str]] = []
        self.fail = False

    def write(self, text: str, terminal_id: str) -> None:
        if self.fail:
            raise OSError("terminal closed")
        self.writes.append((text, terminal_id))

    def sent_to(self, terminal_id: str) -> list[str]:
        return [text for text, tid in self.writes if tid == terminal_id]


class FakeDecisionAPI:
    """Scripted decision caller.

    Responses are consumed in order; once the script runs out, ``default``
    is returned. A response may be a string (success content) or a
    DecisionResponse. While ``gate`` is set to an unset asyncio.Event,
    calls block until it is set.
    """

    def __init__(self, script: list[str | DecisionResponse] | None = None, default=None) -> None:
        self.script = list(script or [])
        self.default: str | DecisionResponse = (
            default if default is not None else DecisionResponse.failure("script exhausted")
        )
        self.requests: list[DecisionRequest] = []
        self.in_flight = 0
        self.high_water = 0
        self.gate: asyncio.Event | None = None
        self.delay = 0.0

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def __call__(self, request: DecisionRequest) -> DecisionResponse:
        self.requests.append(request)
        self.in_flight += 1
        self.high_water = max(self.high_water, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            item = self.script.pop(0) if self.script else self.default
        finally:
            self.in_flight -= 1
        if isinstance(item, DecisionResponse):
            return item
        return DecisionResponse(success=True, content=item)


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep tests away from real API keys and the user's config."""
    monkeypatch.delenv("GROQ_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setenv("CONDUCTOR_CONFIG", str(tmp_path / "home" / "config.yaml"))


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    """Config file with a groq key and no dispatch stagger."""
    path = tmp_path / "conductor" / "config.yaml"
    path.parent.mkdir(parents=True)
    path.write_text(
        yaml.safe_dump(
            {
                "groq_api_key": "gsk-test-key",
                "idle_timeout": 0.05,
                "max_duration": 0,
                "call_stagger_ms": 0,
            }
        )
    )
    return path


@pytest.fixture
def config_store(config_path: Path) -> ConfigStore:
    return ConfigStore(config_path)


@pytest.fixture
def profiles() -> ProfileLoader:
    """Loader restricted to the built-in profiles."""
    return ProfileLoader(search_paths=[PROVIDERS_DIR])


@pytest.fixture
def claude_profile(profiles: ProfileLoader):
    return profiles.load("claude")


@pytest.fixture
def fast_timings() -> SupervisorTimings:
    """Millisecond timings. The ready fallback stays long unless a test shortens it."""
    return SupervisorTimings(
        idle_timeout=0.05,
        working_recheck_cap=0.05,
        working_idle_floor=0.05,
        waiting_idle_cap=0.02,
        wait_poll_cap=0.03,
        duplicate_retry_delay=0.03,
        ready_fallback=10.0,
        post_ready_delay=0.02,
        error_backoff_base=0.01,
        error_backoff_max=0.04,
        waiting_escalation=7.0,
    )


# =============================================================================
# Orchestrator Fixtures
# =============================================================================


@pytest.fixture
def terminal() -> FakeTerminal:
    return FakeTerminal()


@pytest.fixture
def decision_api() -> FakeDecisionAPI:
    return FakeDecisionAPI()


@pytest.fixture
def history(tmp_path: Path) -> SessionHistory:
    return SessionHistory(tmp_path / "history.db")


@pytest.fixture
def make_coordinator(
    terminal: FakeTerminal,
    decision_api: FakeDecisionAPI,
    config_store: ConfigStore,
    profiles: ProfileLoader,
    fast_timings: SupervisorTimings,
    history: SessionHistory,
):
    """Factory for coordinators wired to the fakes.

    Keyword arguments override constructor arguments. Coordinators still
    running at teardown are stopped.
    """
    created: list[SessionCoordinator] = []

    def factory(**overrides) -> SessionCoordinator:
        kwargs = {
            "terminal": terminal,
            "decision_caller": decision_api,
            "config_store": config_store,
            "profiles": profiles,
            "timings": fast_timings,
            "retry_policy": RetryPolicy(max_attempts=1, base_delay=0),
            "history": history,
        }
        kwargs.update(overrides)
        coordinator = SessionCoordinator(**kwargs)
        created.append(coordinator)
        return coordinator

    yield factory

    for coordinator in created:
        if coordinator.is_running:
            coordinator.stop()


@pytest.fixture
def wait_until() -> Callable:
    """Poll an async condition instead of sleeping a fixed amount."""

    async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return _wait_until


@pytest.fixture
def make_api() -> type[FakeDecisionAPI]:
    """FakeDecisionAPI class, for tests that need more than one or a custom script."""
    return FakeDecisionAPI
