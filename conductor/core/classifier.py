"""Output classifier: pure functions over a terminal's output buffer.

Every matcher here expects CLEANED text. Callers strip ANSI escapes with
strip_ansi() first; raw PTY bytes carry colour codes and cursor movement
that break line-anchored patterns.
"""

import re
from typing import Literal

from conductor.core.models import SafetyLevel
from conductor.core.profiles import ProviderProfile

ClaudeStatus = Literal["working", "waiting", "unknown"]

# CSI sequences, OSC sequences (BEL or ST terminated) and two-byte escapes
ANSI_ESCAPE = re.compile(
    r"\x1B\][^\x07\x1B]*(?:\x07|\x1B\\)"
    r"|\x1B\[[0-?]*[ -/]*[@-~]"
    r"|\x1B[@-Z\\-_]"
)

STATUS_WINDOW_LINES = 15
COMPLETION_WINDOW_LINES = 20
COMPLETION_EVIDENCE_CHARS = 3000


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences and normalize line endings."""
    cleaned = ANSI_ESCAPE.sub("", text)
    return cleaned.replace("\r\n", "\n").replace("\r", "\n")


def last_lines(text: str, count: int) -> str:
    return "\n".join(text.split("\n")[-count:])


def classify_status(clean_output: str, profile: ProviderProfile) -> ClaudeStatus:
    """Classify the assistant as working, waiting for input, or unknown.

    Working patterns win over waiting patterns: a trailing prompt glyph can
    show up inside tool output that is still streaming.
    """
    window = last_lines(clean_output, STATUS_WINDOW_LINES)
    if ProviderProfile.any_match(profile.working_patterns, window):
        return "working"
    if ProviderProfile.any_match(profile.waiting_patterns, window):
        return "waiting"
    if profile.prompt_pattern.search(window):
        return "waiting"
    return "unknown"


def detect_task_completion(clean_output: str, profile: ProviderProfile) -> bool:
    """Conservative check that the assistant finished and is asking for more.

    Requires both an explicit "anything else?" style phrase near the end AND
    evidence of work in the recent output, so a fresh session greeting is
    never mistaken for completion.
    """
    window = last_lines(clean_output, COMPLETION_WINDOW_LINES)
    if not ProviderProfile.any_match(profile.completion_patterns, window):
        return False
    evidence = clean_output[-COMPLETION_EVIDENCE_CHARS:]
    return ProviderProfile.any_match(profile.work_done_patterns, evidence)


# --- Dangerous command detection ---

# Blocked at SAFE and MODERATE
CRITICAL_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\brm\s+(?:-[a-zA-Z]*[rf][a-zA-Z]*\s+)+(?:--no-preserve-root\s+)?(?:/|~|\$HOME)(?:\s|$|\*)", re.I),
    re.compile(r"\bmkfs(?:\.\w+)?\b", re.I),
    re.compile(r"\bdd\s+if=", re.I),
    re.compile(r"\bformat\s+c:", re.I),
    re.compile(r":\(\)\s*\{\s*:\|:&\s*\};:"),
    re.compile(r"\bdrop\s+(?:database|schema)\b", re.I),
    re.compile(r"\bchmod\s+-R\s+777\s+/(?:\s|$)", re.I),
    re.compile(r">\s*/dev/sd[a-z]\b", re.I),
)

# Blocked at SAFE only
ELEVATED_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\brm\s+-[a-zA-Z]*r[a-zA-Z]*f|\brm\s+-[a-zA-Z]*f[a-zA-Z]*r", re.I),
    re.compile(r"\brm\s+--force\b", re.I),
    re.compile(r"\bgit\s+push\s+(?:.*\s)?(?:--force\b|-f\b)", re.I),
    re.compile(r"\bgit\s+reset\s+--hard\b", re.I),
    re.compile(r"\bgit\s+clean\s+-[a-zA-Z]*f", re.I),
    re.compile(r"\bsudo\b", re.I),
    re.compile(r"\btruncate\s+table\b", re.I),
    re.compile(r"\bdelete\s+from\b.*\bwhere\b.*\b1\s*=\s*1\b", re.I),
    re.compile(r"\b(?:curl|wget)\b[^|]*\|\s*(?:sudo\s+)?(?:ba|z)?sh\b", re.I),
)

DANGER_TABLES: dict[SafetyLevel, tuple[re.Pattern[str], ...]] = {
    SafetyLevel.SAFE: CRITICAL_PATTERNS + ELEVATED_PATTERNS,
    SafetyLevel.MODERATE: CRITICAL_PATTERNS,
    SafetyLevel.YOLO: (),
}


def is_dangerous(command: str, level: SafetyLevel) -> bool:
    """Return True if command must be blocked at the given safety level."""
    return any(p.search(command) for p in DANGER_TABLES[SafetyLevel(level)])


# --- Stats ---

_WRITE_CALL = re.compile(r"\b(?:Write|Edit)\([^)]+\)", re.I)
_READ_CALL = re.compile(r"\bRead\([^)]+\)", re.I)
_TESTS_PASSED = re.compile(r"(\d+)\s+(?:tests?\s+)?passed", re.I)
_TESTS_FAILED = re.compile(r"(\d+)\s+(?:tests?\s+)?failed", re.I)
_ERROR_MARK = re.compile(r"\b(?:Error|error|ERROR):")
_TOKENS = re.compile(r"(\d[\d,]*(?:\.\d+)?)\s*([kK])?\s+tokens\b")


def _parse_token_count(number: str, suffix: str | None) -> int:
    value = float(number.replace(",", ""))
    if suffix:
        value *= 1000
    return int(value)


def parse_stats(clean_output: str) -> dict[str, int]:
    """Best-effort numeric counters. Missing counters are simply absent."""
    stats: dict[str, int] = {}

    writes = _WRITE_CALL.findall(clean_output)
    if writes:
        stats["files_written"] = len(writes)
    reads = _READ_CALL.findall(clean_output)
    if reads:
        stats["files_read"] = len(reads)

    # Last summary line wins: test runners print a final tally
    passed = _TESTS_PASSED.findall(clean_output)
    if passed:
        stats["tests_passed"] = int(passed[-1])
    failed = _TESTS_FAILED.findall(clean_output)
    if failed:
        stats["tests_failed"] = int(failed[-1])

    errors = _ERROR_MARK.findall(clean_output)
    if errors:
        stats["errors_encountered"] = len(errors)

    tokens = _TOKENS.findall(clean_output)
    if tokens:
        try:
            stats["tokens_used"] = _parse_token_count(*tokens[-1])
        except ValueError:
            pass
    return stats


# --- Summarization ---

_IMPORTANT_LINE = re.compile(
    r"error|warning|created|wrote|updated|failed|success|test|passed|TODO|FIXME", re.I
)
HEAD_LINES = 10
TAIL_LINES = 30
MAX_IMPORTANT_LINES = 20


def summarize_output(clean_output: str, max_chars: int = 4000) -> str:
    """Shrink output for a decision prompt, keeping head, salient middle and tail.

    The result never exceeds max_chars. When even the skeleton is too long,
    the most recent text is kept.
    """
    if len(clean_output) <= max_chars:
        return clean_output

    lines = clean_output.split("\n")
    if len(lines) <= HEAD_LINES + TAIL_LINES:
        return clean_output[-max_chars:]

    head = "\n".join(lines[:HEAD_LINES])
    tail = "\n".join(lines[-TAIL_LINES:])
    middle = lines[HEAD_LINES:-TAIL_LINES]
    important = [line for line in middle if _IMPORTANT_LINE.search(line)][-MAX_IMPORTANT_LINES:]

    budget = max_chars - len(head) - len(tail) - 100  # room for the separators
    important_text = "\n".join(important)[: max(0, budget)]

    summary = (
        f"{head}\n\n--- [{len(middle)} lines summarized, showing errors/key events] ---\n"
        f"{important_text}\n\n--- [Recent output] ---\n{tail}"
    )
    if len(summary) > max_chars:
        return summary[-max_chars:]
    return summary
