from __future__ import annotations

from dataclasses import dataclass

OUTCOME_COMPLETED = "completed"
OUTCOME_BLOCKED = "blocked"
OUTCOME_CEILING = "ceiling"
OUTCOME_WAITING = "waiting"

COMMENT_OUTPUT_CHARS = 3000


@dataclass
class RunStarted:
    repo: str
    issue_number: int
    mode: str                       # "lead" or "pipeline"
    phase: str


@dataclass
class Delegating:
    agent: str
    instructions: str | None = None


@dataclass
class DelegationFinished:
    agent: str
    success: bool
    output: str
    error: str = ""


@dataclass
class PhaseAdvanced:
    from_phase: str
    to_phase: str


@dataclass
class QuestionAsked:
    """Run paused waiting for a human reply."""
    question: str
    source: str                     # capability name or "lead"


@dataclass
class Notice:
    message: str


@dataclass
class RunFinished:
    outcome: str                    # completed | blocked | ceiling | waiting
    status: str                     # session status after the run
    summary: str
    iterations: int = 0
    delegations: int = 0
    attempted: str = ""


Event = RunStarted | Delegating | DelegationFinished | PhaseAdvanced | QuestionAsked | Notice | RunFinished


def render_event(event: Event) -> str | None:
    """Issue comment for an event, or None when the event is not posted."""
    if isinstance(event, Delegating):
        focus = f"\n\n_Focus: {event.instructions}_" if event.instructions else ""
        return f"**Team Lead**: Delegating to **{event.agent}** agent...{focus}"
    if isinstance(event, DelegationFinished):
        if not event.output and not event.error:
            return None
        mark = "Success" if event.success else "Failed"
        body = event.output or event.error
        return f"**{event.agent}** result ({mark}):\n\n{body[:COMMENT_OUTPUT_CHARS]}"
    if isinstance(event, PhaseAdvanced):
        return f"Moving from **{event.from_phase}** to **{event.to_phase}**."
    if isinstance(event, QuestionAsked):
        return f"**Question from {event.source}:**\n\n{event.question}\n\n_Reply to this issue to continue._"
    if isinstance(event, Notice):
        return event.message
    if isinstance(event, RunFinished):
        return _render_finish(event)
    return None


def _render_finish(event: RunFinished) -> str | None:
    if event.outcome == OUTCOME_COMPLETED:
        stats = ""
        if event.iterations:
            stats = (
                f"\n\n---\n_Processed in {event.iterations} iterations "
                f"with {event.delegations} delegations._"
            )
        return f"**Ticket complete!**\n\n{event.summary}{stats}"
    if event.outcome == OUTCOME_BLOCKED:
        attempted = f"\n\n**Attempted:** {event.attempted}" if event.attempted else ""
        return (
            f"**Blocked**\n\n**Reason:** {event.summary}{attempted}\n\n"
            f"_Reply to this issue or restart the agent after resolving the blocker._"
        )
    if event.outcome == OUTCOME_CEILING:
        return (
            f"**Paused for review**: {event.summary}\n\n"
            f"_{event.delegations} delegations completed._"
        )
    # Waiting: the question was already posted
    return None
