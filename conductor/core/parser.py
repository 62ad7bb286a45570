"""Parsing of raw decision-call output.

Decision models are asked for JSON ({"action": ..., "text": ...}) but often
answer with prose, markdown fences or meta-phrases such as "You should type:".
parse_decision() accepts all of these and reduces them to a Decision.
"""

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ValidationError


class ParsingError(Exception):
    """Failed to parse structured output from a decision response."""

    pass


class DecisionAction(str, Enum):
    WAIT = "WAIT"
    DONE = "DONE"
    YES = "Y"
    NO = "N"
    SEND = "SEND"


@dataclass(frozen=True)
class Decision:
    """Parsed decision. ``text`` is what would be typed into the terminal."""

    action: DecisionAction
    text: str

    @property
    def is_wait(self) -> bool:
        return self.action == DecisionAction.WAIT


class DecisionOutput(BaseModel):
    """JSON answer format requested from the decision model."""

    action: Literal["wait", "send", "done"]
    text: str = ""


# Fenced block, with or without a language tag
_FENCE = re.compile(r"```(?:json|text|bash|sh)?\s*([\s\S]*?)\s*```", re.I)
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_JSON_ARRAY = re.compile(r"\[[\s\S]*\]")

_META_PATTERNS = (
    re.compile(r"^You should (?:type|say|respond|enter|input):\s*[\"']?(.+?)[\"']?$", re.I | re.S),
    re.compile(r"^(?:Type|Say|Respond|Enter|Send):\s*[\"']?(.+?)[\"']?$", re.I | re.S),
    re.compile(r"^Run (?:this )?(?:command|script)?:?\s*[\"']?(.+?)[\"']?$", re.I | re.S),
    re.compile(r"^Suggest(?:ion)?:\s*[\"']?(.+?)[\"']?$", re.I | re.S),
)
_WAIT_PHRASE = re.compile(r"^WAIT\b|\bI'll wait\b", re.I)


def extract_json_object(raw_output: str) -> str | None:
    """Return the JSON object in raw_output, looking inside fences first."""
    for block in reversed(_FENCE.findall(raw_output)):
        if block.lstrip().startswith("{"):
            return block.strip()
    match = _JSON_OBJECT.search(raw_output)
    return match.group(0) if match else None


def parse_decision_output(raw_output: str) -> DecisionOutput:
    """Validate the JSON answer format.

    Raises:
        ParsingError: If no JSON object is present or it does not validate
    """
    json_str = extract_json_object(raw_output)
    if not json_str:
        raise ParsingError("No JSON object found in decision output")
    try:
        return DecisionOutput.model_validate_json(json_str)
    except ValidationError as e:
        raise ParsingError(f"Invalid decision JSON: {e}")


def _strip_meta(text: str) -> str:
    text = text.strip()
    fenced = _FENCE.fullmatch(text)
    if fenced:
        text = fenced.group(1).strip()

    for pattern in _META_PATTERNS:
        match = pattern.match(text)
        if match and match.group(1):
            text = match.group(1).strip()
            break

    lowered = text.lower()
    if lowered.startswith("suggest adding "):
        text = "Add " + text[len("suggest adding ") :]
    elif lowered.startswith("suggest "):
        text = text[len("suggest ") :]

    if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'`":
        text = text[1:-1].strip()
    return text


def _classify_text(text: str) -> Decision:
    upper = text.upper()
    if _WAIT_PHRASE.search(text):
        return Decision(DecisionAction.WAIT, "WAIT")
    if upper == "DONE":
        return Decision(DecisionAction.DONE, "DONE")
    if upper in ("Y", "YES"):
        return Decision(DecisionAction.YES, "y")
    if upper in ("N", "NO"):
        return Decision(DecisionAction.NO, "n")
    return Decision(DecisionAction.SEND, text)


def parse_decision(raw_output: str) -> Decision:
    """Reduce raw decision text to a Decision. Never raises.

    Empty output is treated as WAIT so the caller simply polls again.
    """
    raw = raw_output.strip()
    if not raw:
        return Decision(DecisionAction.WAIT, "WAIT")

    try:
        output = parse_decision_output(raw)
    except ParsingError:
        return _classify_text(_strip_meta(raw))

    if output.action == "wait":
        return Decision(DecisionAction.WAIT, "WAIT")
    if output.action == "done":
        return Decision(DecisionAction.DONE, "DONE")
    text = _strip_meta(output.text)
    if not text:
        return Decision(DecisionAction.WAIT, "WAIT")
    return _classify_text(text)


def parse_subtasks(raw_output: str) -> list[str] | None:
    """Parse a decomposition answer into a list of sub-task strings.

    Accepts a bare JSON array, or the first [...] block embedded in prose.
    Returns None when nothing usable is found.
    """
    candidates = [raw_output.strip()]
    match = _JSON_ARRAY.search(raw_output)
    if match:
        candidates.append(match.group(0))

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, list) and data:
            tasks = [str(item).strip() for item in data if str(item).strip()]
            if tasks:
                return tasks
    return None
