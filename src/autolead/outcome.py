"""Decode whether a reasoning round finished, blocked, or should continue.

The structured path is the ``finish_task`` tool: a call to it is decoded
deterministically. Free-text sentinels are the fallback for services that
cannot emit tool calls reliably.
"""

from __future__ import annotations

from dataclasses import dataclass

from autolead.model import CompletionRound


FINISH_TOOL_NAME = "finish_task"

FINISH_TOOL: dict = {
    "name": FINISH_TOOL_NAME,
    "description": (
        "Call this exactly once when the task is finished or when you cannot "
        "continue. Use status 'completed' with a summary, or 'blocked' with "
        "the reason."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "status": {"type": "string", "enum": ["completed", "blocked"]},
            "summary": {"type": "string", "description": "What was done"},
            "reason": {"type": "string", "description": "Why you are blocked"},
        },
        "required": ["status"],
    },
}


@dataclass(frozen=True)
class Sentinels:
    complete: str
    blocked: str | None = None   # followed by ": <reason>"


IMPLEMENTATION_SENTINELS = Sentinels("IMPLEMENTATION_COMPLETE", "IMPLEMENTATION_BLOCKED")
PHASE_SENTINELS = Sentinels("PHASE_COMPLETE")


@dataclass(frozen=True)
class Continuing:
    pass


@dataclass(frozen=True)
class Completed:
    summary: str


@dataclass(frozen=True)
class Blocked:
    reason: str


Outcome = Continuing | Completed | Blocked


def parse_sentinels(text: str, sentinels: Sentinels) -> Outcome:
    """Fallback parser for sentinel phrases embedded in free text."""
    if sentinels.blocked and f"{sentinels.blocked}:" in text:
        reason = text.split(f"{sentinels.blocked}:", 1)[1].strip()
        return Blocked(reason.splitlines()[0].strip() if reason else "Unknown")
    if sentinels.complete in text:
        return Completed(strip_sentinel(text, sentinels.complete))
    return Continuing()


def strip_sentinel(text: str, sentinel: str) -> str:
    return text.replace(sentinel, "").strip()


def decode_outcome(rnd: CompletionRound, sentinels: Sentinels) -> Outcome:
    for call in rnd.tool_calls:
        if call["name"] != FINISH_TOOL_NAME:
            continue
        status = call["input"].get("status")
        if status == "blocked":
            return Blocked(call["input"].get("reason") or "Unknown")
        if status == "completed":
            return Completed(call["input"].get("summary") or rnd.content.strip())
    return parse_sentinels(rnd.content, sentinels)
