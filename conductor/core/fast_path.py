"""Fast-path decisions that never need a remote decision call.

A fast-path rule either answers immediately (approve a yes/no prompt,
send the initial task) or returns WAIT while the assistant is visibly busy.
Everything here is a pure function of its arguments.
"""

from dataclasses import dataclass

from conductor.core.classifier import classify_status, is_dangerous, last_lines
from conductor.core.models import SafetyLevel
from conductor.core.profiles import ProviderProfile

WAIT = "WAIT"
PROMPT_WINDOW_LINES = 10


@dataclass(frozen=True)
class FastPathResult:
    """An immediate decision. ``question`` is set for approved prompts."""

    response: str
    question: str | None = None

    @property
    def is_wait(self) -> bool:
        return self.response == WAIT


def find_confirmation_question(clean_output: str, profile: ProviderProfile) -> str | None:
    """Return the yes/no question near the end of the output, if any.

    The question is the matching line joined with the line before it, since
    assistants usually print the command on one line and "Allow?" below it.
    """
    lines = [line for line in last_lines(clean_output, PROMPT_WINDOW_LINES).split("\n") if line.strip()]
    for idx, line in enumerate(lines):
        if ProviderProfile.any_match(profile.confirm_patterns, line):
            return " ".join(lines[max(0, idx - 1) : idx + 1]).strip()
    return None


def fast_path_response(
    clean_output: str,
    task_sent: bool,
    task: str,
    safety_level: SafetyLevel,
    profile: ProviderProfile,
) -> FastPathResult | None:
    """Return an immediate decision, or None to fall through to a decision call.

    Rules, first match wins:
    1. Assistant is working: WAIT.
    2. A yes/no confirmation: "y", unless the question is dangerous.
    3. A trust-this-project dialog: "y".
    4. Ready prompt and the task was not sent yet: the task itself,
       unless the task is dangerous.
    """
    if classify_status(clean_output, profile) == "working":
        return FastPathResult(WAIT)

    window = last_lines(clean_output, PROMPT_WINDOW_LINES)

    question = find_confirmation_question(clean_output, profile)
    if question is not None:
        if is_dangerous(question, safety_level):
            return None
        return FastPathResult("y", question)

    if ProviderProfile.any_match(profile.trust_patterns, window):
        return FastPathResult("y", "Trust this project?")

    if not task_sent and task and profile.prompt_pattern.search(window):
        if is_dangerous(task, safety_level):
            return None
        return FastPathResult(task)

    return None
