"""Fixed-pipeline router: the session phase decides which capability runs.

Phases only move forward here. The one exception is reopen_for_implementation,
which moves a refined (planning or completed) session into implementing.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator

from loguru import logger

from autolead.capabilities import (
    CAPABILITY_PHASE,
    Capability,
    CapabilityDeps,
    record_result,
    run_capability,
)
from autolead.events import (
    OUTCOME_BLOCKED,
    OUTCOME_COMPLETED,
    OUTCOME_WAITING,
    DelegationFinished,
    Event,
    Notice,
    PhaseAdvanced,
    QuestionAsked,
    RunFinished,
    RunStarted,
)
from autolead.session import (
    Phase,
    PhaseTransitionError,
    Session,
    Status,
    check_pipeline_transition,
)
from autolead.store import SessionStore

PHASE_CAPABILITY: dict[Phase, Capability] = {phase: cap for cap, phase in CAPABILITY_PHASE.items()}

REFINEMENT_CHAIN = [Capability.CLARIFIER, Capability.SCOPE, Capability.DESIGNER, Capability.PLANNER]
IMPLEMENTABLE_PHASES = {Phase.PLANNING, Phase.COMPLETED}


@dataclass
class PipelineDeps:
    store: SessionStore
    capabilities: CapabilityDeps


def advance_phase(store: SessionStore, session: Session, target: Phase) -> Session:
    """Move forward to target. Reaching completed also completes the status."""
    check_pipeline_transition(session.phase, target)
    session = store.update_phase(session.repo, session.issue_number, target)
    if target == Phase.COMPLETED:
        session = store.update_status(session.repo, session.issue_number, Status.COMPLETED)
    logger.info(f"[PIPELINE] {session.repo}#{session.issue_number} -> {target.value}")
    return session


def completion_target(capability: Capability) -> Phase:
    """Phase reached when a refinement capability reports completion."""
    if capability == Capability.PLANNER:
        # Refinement ends here; implementation is a separate trigger
        return Phase.COMPLETED
    nxt = REFINEMENT_CHAIN[REFINEMENT_CHAIN.index(capability) + 1]
    return CAPABILITY_PHASE[nxt]


def _wait(store: SessionStore, session: Session, question: str, source: str) -> Iterator[Event]:
    session = store.update_status(session.repo, session.issue_number, Status.PAUSED)
    yield QuestionAsked(question, source)
    yield RunFinished(OUTCOME_WAITING, session.status.value, question)


def run_pipeline(session: Session, deps: PipelineDeps, instructions: str | None = None) -> Iterator[Event]:
    """Run refinement capabilities from the current phase until one waits or planning completes."""
    store = deps.store
    yield RunStarted(session.repo, session.issue_number, "pipeline", session.phase.value)

    while True:
        capability = PHASE_CAPABILITY.get(session.phase)
        if capability not in REFINEMENT_CHAIN:
            yield Notice(f"Nothing to refine in phase **{session.phase.value}**.")
            return

        result = run_capability(capability, session, deps.capabilities, instructions)
        session = record_result(store, session, capability, result)
        yield DelegationFinished(capability.value, result.success, result.output, result.error)

        if not result.complete:
            # Keep the phase; the next human reply re-enters this capability
            yield from _wait(store, session, result.question or result.output, capability.value)
            return

        previous = session.phase
        session = advance_phase(store, session, completion_target(capability))
        yield PhaseAdvanced(previous.value, session.phase.value)
        if session.phase == Phase.COMPLETED:
            yield RunFinished(
                OUTCOME_COMPLETED,
                session.status.value,
                "All refinement phases complete. The ticket is ready for implementation.",
            )
            return
        instructions = None


def reopen_for_implementation(store: SessionStore, session: Session) -> Session:
    """Move a refined session into implementing and make it active again."""
    if session.status == Status.CANCELLED:
        raise PhaseTransitionError("Cannot implement a cancelled session.")
    if session.phase not in IMPLEMENTABLE_PHASES:
        raise PhaseTransitionError(
            f"Cannot implement yet. Current phase: '{session.phase.value}'. "
            f"Complete all planning phases first."
        )
    session = store.update_phase(session.repo, session.issue_number, Phase.IMPLEMENTING)
    return store.update_status(session.repo, session.issue_number, Status.ACTIVE)


def run_single(
    capability: Capability,
    session: Session,
    deps: PipelineDeps,
    instructions: str | None = None,
) -> Iterator[Event]:
    """Run one capability. The generator returns whether it completed."""
    result = run_capability(capability, session, deps.capabilities, instructions)
    session = record_result(deps.store, session, capability, result)
    yield DelegationFinished(capability.value, result.success, result.output, result.error)
    if result.needs_human and result.question:
        yield from _wait(deps.store, session, result.question, capability.value)
        return False
    if not result.complete:
        session = deps.store.update_status(session.repo, session.issue_number, Status.PAUSED)
        yield RunFinished(OUTCOME_BLOCKED, session.status.value, result.error or result.output)
        return False
    return True


def run_implementation(session: Session, deps: PipelineDeps) -> Iterator[Event]:
    """implementer -> tester -> pr-creator, stopping at the first step that does not complete.

    A refined session is reopened into implementing. A session already in
    implementing or testing resumes from its current step.
    """
    store = deps.store
    if session.phase in (Phase.IMPLEMENTING, Phase.TESTING):
        session = store.update_status(session.repo, session.issue_number, Status.ACTIVE)
    else:
        session = reopen_for_implementation(store, session)
    yield RunStarted(session.repo, session.issue_number, "pipeline", session.phase.value)

    if session.phase == Phase.IMPLEMENTING:
        if not (yield from run_single(Capability.IMPLEMENTER, session, deps)):
            return
        session = store.get(session.repo, session.issue_number)
        previous = session.phase
        session = advance_phase(store, session, Phase.TESTING)
        yield PhaseAdvanced(previous.value, session.phase.value)

    if not (yield from run_single(Capability.TESTER, session, deps)):
        return
    session = store.get(session.repo, session.issue_number)

    if not (yield from run_single(Capability.PR_CREATOR, session, deps)):
        return
    yield from _finish_with_pr(store, session)


def _finish_with_pr(store: SessionStore, session: Session) -> Iterator[Event]:
    session = store.get(session.repo, session.issue_number)
    previous = session.phase
    session = advance_phase(store, session, Phase.COMPLETED)
    if previous != Phase.COMPLETED:
        yield PhaseAdvanced(previous.value, session.phase.value)
    yield RunFinished(
        OUTCOME_COMPLETED,
        session.status.value,
        f"PR created successfully: {session.artifacts.pr_url}",
    )


def run_tests(session: Session, deps: PipelineDeps) -> Iterator[Event]:
    """Run the configured checks, then open a PR when they pass."""
    yield RunStarted(session.repo, session.issue_number, "pipeline", session.phase.value)
    if not (yield from run_single(Capability.TESTER, session, deps)):
        return
    session = deps.store.get(session.repo, session.issue_number)
    if not (yield from run_single(Capability.PR_CREATOR, session, deps)):
        return
    yield from _finish_with_pr(deps.store, session)


def run_create_pr(session: Session, deps: PipelineDeps) -> Iterator[Event]:
    yield RunStarted(session.repo, session.issue_number, "pipeline", session.phase.value)
    if not (yield from run_single(Capability.PR_CREATOR, session, deps)):
        return
    yield from _finish_with_pr(deps.store, session)
