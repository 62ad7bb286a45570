"""Decision-call gateway: prompt construction and retried remote calls.

The gateway is provider-agnostic. It builds the system and user prompts for
one terminal, performs the call through an injected DecisionCaller with a
bounded linear retry, and reports exhaustion as None instead of raising.
Escalation after repeated failures belongs to the supervisor.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from conductor.core.classifier import summarize_output
from conductor.core.models import (
    DecisionProvider,
    DecisionRequest,
    DecisionResponse,
    OrchestratorMode,
    TokenUsage,
)
from conductor.core.parser import parse_subtasks

logger = logging.getLogger(__name__)

DecisionCaller = Callable[[DecisionRequest], Awaitable[DecisionResponse]]
RetryCallback = Callable[[int, int, float, str], None]
UsageCallback = Callable[[TokenUsage], None]

DECISION_TEMPERATURE = 0.2
DECOMPOSE_TEMPERATURE = 0.3
OUTPUT_CHAR_LIMIT = 4000
REMINDER_EVERY = 10
WAITING_ESCALATION_SECONDS = 7.0
WAITING_ESCALATION_WAITS = 2

SYSTEM_PROMPT = """You are an autonomous operator driving a CLI coding assistant in a terminal.
Keep it working on its task until the task is complete and polished.

MODE: {mode}
TASK: {task}

=== HOW TO DECIDE (first rule that applies wins) ===
1. The assistant is busy (spinner, trailing "...", tool calls such as Read( or Bash( in progress):
   answer WAIT.
2. A yes/no prompt such as "(y/n)", "[Y/n]" or "Allow?": answer y, or n if approving would be destructive.
3. A question: give a specific answer that moves the task forward.
4. Numbered options: pick the number that best serves the task.
5. The assistant finished a step or asks "anything else?": give the next concrete improvement.
6. The task is fully implemented, tested and nothing meaningful is left: answer DONE.

=== RULES ===
- Output only the exact text to type into the terminal, nothing else.
- Never write "You should type:" or "Suggest adding ...". Write the instruction itself ("Add ...").
- Never repeat a previous message or a close paraphrase of one.
- Be specific. Vary the focus: tests, error handling, performance, UX, documentation."""

DECOMPOSE_PROMPT = """You are a task decomposition assistant. Break a master task into {count} independent sub-tasks that separate CLI coding agents can work on in parallel.

Each sub-task must be:
- Self-contained enough to work on independently
- Specific and actionable
- Roughly equal in scope

Respond ONLY with a JSON array of {count} strings, one per agent:
["sub-task 1", "sub-task 2", ...]"""

SPLIT_NOTE = "These terminals work on sub-tasks of the same project. Avoid duplicating their work."
PARALLEL_NOTE = "These terminals work on separate tasks. Avoid interfering with their files."


@dataclass(frozen=True)
class PeerSummary:
    """What one sibling terminal is doing, for cross-terminal awareness."""

    task: str
    status: str
    last_message: str = ""

    def render(self) -> str:
        line = f'- "{self.task[:80]}" [{self.status}]'
        if self.last_message:
            line += f" ({self.last_message[:50]})"
        return line


@dataclass
class DecisionContext:
    """Per-terminal state that shapes the system prompt."""

    task: str
    task_sent: bool = False
    last_response: str = ""
    waiting_seconds: float = 0.0
    consecutive_waits: int = 0
    decision_count: int = 0
    mode: OrchestratorMode = OrchestratorMode.PARALLEL
    peers: list[PeerSummary] = field(default_factory=list)
    escalate_after: float = WAITING_ESCALATION_SECONDS


def build_system_prompt(context: DecisionContext) -> str:
    """Render the system prompt with the state-dependent sections appended."""
    prompt = SYSTEM_PROMPT.format(mode=context.mode.value.upper(), task=context.task)
    sections: list[str] = []

    if context.task_sent:
        sections.append("IMPORTANT: The task has ALREADY been sent. Do NOT send the task again.")
    if context.last_response:
        sections.append(f'Your last response was: "{context.last_response}". Do NOT repeat it.')
    if (
        context.waiting_seconds > context.escalate_after
        or context.consecutive_waits >= WAITING_ESCALATION_WAITS
    ):
        sections.append(
            "URGENT: The assistant has been WAITING for input too long. "
            "You MUST provide actual input now, not WAIT."
        )
    if context.decision_count > 0 and context.decision_count % REMINDER_EVERY == 0:
        sections.append(f'REMINDER: Your task is: "{context.task}". Stay focused.')
    if context.peers:
        note = SPLIT_NOTE if context.mode == OrchestratorMode.SPLIT else PARALLEL_NOTE
        peers = "\n".join(peer.render() for peer in context.peers)
        sections.append(f"=== OTHER TERMINALS ===\n{peers}\n{note}")

    if sections:
        prompt += "\n\n" + "\n\n".join(sections)
    return prompt


def build_user_prompt(clean_output: str, max_chars: int = OUTPUT_CHAR_LIMIT) -> str:
    summary = summarize_output(clean_output, max_chars)
    return (
        f"TERMINAL OUTPUT:\n```\n{summary}\n```\n\n"
        'Respond with JSON: {"action": "wait"|"send"|"done", "text": "..."}'
    )


@dataclass
class RetryPolicy:
    """Bounded retry with linear backoff.

    The delay after failed attempt n (1-indexed) is n * base_delay.
    """

    max_attempts: int = 3
    base_delay: float = 1.0

    def get_delay(self, attempt: int) -> float:
        return attempt * self.base_delay


class DecisionGateway:
    """Performs decision calls for one session's provider and credentials."""

    def __init__(
        self,
        caller: DecisionCaller,
        provider: DecisionProvider,
        api_key: str,
        model: str,
        retry_policy: RetryPolicy | None = None,
    ):
        self.caller = caller
        self.provider = provider
        self.api_key = api_key
        self.model = model
        self.retry_policy = retry_policy or RetryPolicy()

    def _request(self, system_prompt: str, user_prompt: str, temperature: float) -> DecisionRequest:
        return DecisionRequest(
            provider=self.provider,
            api_key=self.api_key,
            model=self.model,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            temperature=temperature,
        )

    async def _call_once(self, request: DecisionRequest) -> DecisionResponse:
        try:
            return await self.caller(request)
        except Exception as e:
            logger.warning(f"Decision caller raised: {e}")
            return DecisionResponse.failure(str(e))

    async def request_decision(
        self,
        context: DecisionContext,
        clean_output: str,
        is_active: Callable[[], bool] = lambda: True,
        on_retry: RetryCallback | None = None,
        on_usage: UsageCallback | None = None,
    ) -> str | None:
        """Ask the decision model what to type next.

        Returns the raw response text, or None once every attempt failed or
        the session went away between attempts.
        """
        request = self._request(
            build_system_prompt(context), build_user_prompt(clean_output), DECISION_TEMPERATURE
        )
        policy = self.retry_policy

        for attempt in range(1, policy.max_attempts + 1):
            if not is_active():
                return None
            response = await self._call_once(request)
            if response.usage is not None and on_usage is not None:
                on_usage(response.usage)
            if response.success:
                return response.content or None

            error = response.error or "unknown error"
            if attempt < policy.max_attempts:
                delay = policy.get_delay(attempt)
                if on_retry is not None:
                    on_retry(attempt, policy.max_attempts, delay, error)
                await asyncio.sleep(delay)
            else:
                logger.warning(f"Decision call failed after {attempt} attempts: {error}")
        return None

    async def decompose_task(self, master_task: str, count: int) -> list[str] | None:
        """Split master_task into count sub-tasks. Returns None on any failure."""
        request = self._request(
            DECOMPOSE_PROMPT.format(count=count),
            f"Break this task into {count} parallel sub-tasks:\n\n{master_task}",
            DECOMPOSE_TEMPERATURE,
        )
        response = await self._call_once(request)
        if not response.success or not response.content:
            logger.warning(f"Task decomposition call failed: {response.error}")
            return None
        tasks = parse_subtasks(response.content)
        if tasks is None:
            logger.warning("Task decomposition returned no usable JSON array")
        return tasks
