from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum


class Phase(str, Enum):
    CLARIFYING = "clarifying"
    SCOPING = "scoping"
    DESIGNING = "designing"
    PLANNING = "planning"
    IMPLEMENTING = "implementing"
    TESTING = "testing"
    COMPLETED = "completed"


class Status(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


PHASE_ORDER = list(Phase)
TERMINAL_STATUSES = {Status.COMPLETED, Status.CANCELLED}


class PhaseTransitionError(Exception):
    """Raised when a fixed-pipeline transition would move backward."""
    pass


class ArtifactOwnershipError(Exception):
    """Raised when a writer updates an artifact it does not own."""
    pass


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Message:
    role: str                   # "user" (human) or "assistant" (agent)
    content: str
    timestamp: str = field(default_factory=now_iso)
    metadata: dict = field(default_factory=dict)


@dataclass
class Artifacts:
    """Named artifacts accumulated over a session.

    Changed only through merge_artifacts; see ARTIFACT_OWNERS for who may
    write which field.
    """
    issue_title: str | None = None
    issue_body: str | None = None
    started_by: str | None = None
    mode: str | None = None                 # "lead" or "pipeline"
    scope: str | None = None
    design: str | None = None
    plan: str | None = None
    implemented_files: list[str] | None = None
    test_results: list[dict] | None = None
    tests_passed: bool | None = None
    pending_plan: str | None = None         # external tool plan awaiting approval
    plan_summary: str | None = None
    approved_plan: str | None = None
    plan_feedback: str | None = None        # "modify: ..." reply for the next plan
    escalation_declined: bool | None = None
    complexity_score: int | None = None
    pr_number: int | None = None
    pr_url: str | None = None
    last_human_response: str | None = None
    last_human_response_at: str | None = None


# Writers: capability names plus "intake" (start events) and "human" (replies)
ARTIFACT_OWNERS: dict[str, tuple[str, ...]] = {
    "issue_title": ("intake",),
    "issue_body": ("intake",),
    "started_by": ("intake",),
    "mode": ("intake",),
    "scope": ("scope",),
    "design": ("designer",),
    "plan": ("planner",),
    "implemented_files": ("implementer",),
    "test_results": ("tester",),
    "tests_passed": ("tester",),
    "pending_plan": ("implementer", "human"),
    "plan_summary": ("implementer", "human"),
    "approved_plan": ("implementer", "human"),
    "plan_feedback": ("implementer", "human"),
    "escalation_declined": ("human",),
    "complexity_score": ("implementer",),
    "pr_number": ("pr-creator",),
    "pr_url": ("pr-creator",),
    "last_human_response": ("human",),
    "last_human_response_at": ("human",),
}

_ARTIFACT_FIELDS = {f.name for f in fields(Artifacts)}


def merge_artifacts(artifacts: Artifacts, updates: dict, writer: str) -> Artifacts:
    """Return a copy with `updates` applied.

    Keys absent from `updates` are kept. A key present with None clears it.
    """
    for key in updates:
        if key not in _ARTIFACT_FIELDS:
            raise KeyError(f"Unknown artifact: {key}")
        if writer not in ARTIFACT_OWNERS[key]:
            raise ArtifactOwnershipError(
                f"'{writer}' may not write artifact '{key}' "
                f"(owners: {', '.join(ARTIFACT_OWNERS[key])})"
            )
    return replace(artifacts, **updates)


@dataclass
class Session:
    repo: str
    issue_number: int
    phase: Phase = Phase.CLARIFYING
    status: Status = Status.ACTIVE
    conversation: list[Message] = field(default_factory=list)
    artifacts: Artifacts = field(default_factory=Artifacts)
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    @property
    def key(self) -> tuple[str, int]:
        return (self.repo, self.issue_number)

    @property
    def is_lead_mode(self) -> bool:
        return self.artifacts.mode == "lead"

    def phase_messages(self, phase: str) -> list[Message]:
        """Messages tagged with a phase, in insertion order."""
        return [m for m in self.conversation if m.metadata.get("phase") == phase]

    def to_dict(self) -> dict:
        data = asdict(self)
        data["phase"] = self.phase.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> Session:
        return cls(
            repo=data["repo"],
            issue_number=data["issue_number"],
            phase=Phase(data["phase"]),
            status=Status(data["status"]),
            conversation=[Message(**m) for m in data.get("conversation", [])],
            artifacts=Artifacts(**{
                k: v for k, v in data.get("artifacts", {}).items()
                if k in _ARTIFACT_FIELDS
            }),
            created_at=data.get("created_at", now_iso()),
            updated_at=data.get("updated_at", now_iso()),
        )


def phase_index(phase: Phase) -> int:
    return PHASE_ORDER.index(phase)


def next_phase(phase: Phase) -> Phase:
    """The phase after `phase`; completed stays completed."""
    idx = phase_index(phase)
    return PHASE_ORDER[min(idx + 1, len(PHASE_ORDER) - 1)]


def is_forward(current: Phase, target: Phase) -> bool:
    return phase_index(target) >= phase_index(current)


def check_pipeline_transition(current: Phase, target: Phase) -> None:
    """Raise PhaseTransitionError unless target is not behind current."""
    if not is_forward(current, target):
        raise PhaseTransitionError(
            f"Cannot move from '{current.value}' back to '{target.value}'"
        )


def can_cancel(status: Status) -> bool:
    return status in (Status.ACTIVE, Status.PAUSED)
