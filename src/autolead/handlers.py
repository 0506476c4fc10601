"""Event handlers: one per incoming event type, all reached through dispatch_event."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator

from loguru import logger

from autolead.capabilities import CapabilityDeps
from autolead.escalation import ExternalCodeTool, parse_plan_reply, plan_reply_updates
from autolead.events import OUTCOME_COMPLETED, Event, RunFinished, render_event
from autolead.fileguard import FileGuard
from autolead.lead import LeadDeps, run_lead
from autolead.model import Completer
from autolead.notifier import Notifier
from autolead.pipeline import (
    IMPLEMENTABLE_PHASES,
    REFINEMENT_CHAIN,
    PHASE_CAPABILITY,
    PipelineDeps,
    run_create_pr,
    run_implementation,
    run_pipeline,
    run_tests,
)
from autolead.prompts import QA_REVIEW_PROMPT
from autolead.session import Artifacts, Message, Phase, Session, Status, can_cancel, now_iso
from autolead.store import SessionStore
from autolead.types import ConfigDict

LABEL_START = "agent:start"
LABEL_COMPLETE = "agent:complete"

LEAD_INTRO = (
    "**Team Lead Agent Started**\n\n"
    "I'll manage this ticket through completion, delegating to specialist agents: "
    "clarifier, scope, designer, planner, implementer, tester and pr-creator.\n\n"
    "Analyzing the ticket now..."
)

PIPELINE_INTRO = (
    "**Agent Session Started**\n\n"
    "I'll help refine this ticket through a few phases:\n"
    "1. **Clarifying** - understanding the requirements\n"
    "2. **Scoping** - defining boundaries and acceptance criteria\n"
    "3. **Designing** - technical approach\n"
    "4. **Planning** - breaking the work into tasks\n\n"
    "Starting with clarifying questions..."
)

ALREADY_COMPLETED = (
    "This ticket has already been completed. Remove the `agent:complete` label "
    "and add `agent:start` again to re-process it."
)

QA_MAX_TOKENS = 2048


@dataclass
class HandlerDeps:
    config: ConfigDict
    store: SessionStore
    notifier: Notifier
    complete: Completer
    code_tool: ExternalCodeTool | None = None
    prompt_overrides: dict[str, str] = field(default_factory=dict)

    def capability_deps(self) -> CapabilityDeps:
        return CapabilityDeps(
            complete=self.complete,
            guard=FileGuard(Path(self.config["repo_path"]), self.config["sandbox"]),
            config=self.config,
            notifier=self.notifier,
            code_tool=self.code_tool,
            prompt_overrides=self.prompt_overrides,
        )

    def lead_deps(self) -> LeadDeps:
        lead_cfg = self.config["lead"]
        return LeadDeps(
            complete=self.complete,
            store=self.store,
            capabilities=self.capability_deps(),
            max_iterations=lead_cfg["max_iterations"],
            max_tokens=lead_cfg["max_tokens"],
            recent_delegations=lead_cfg["recent_delegations"],
        )

    def pipeline_deps(self) -> PipelineDeps:
        return PipelineDeps(store=self.store, capabilities=self.capability_deps())


def publish(deps: HandlerDeps, repo: str, issue_number: int, events: Iterator[Event]) -> list[Event]:
    """Drain a run, posting each renderable event as an issue comment."""
    seen = []
    for event in events:
        seen.append(event)
        body = render_event(event)
        if body:
            deps.notifier.post_comment(repo, issue_number, body)
        if isinstance(event, RunFinished):
            logger.info(f"[HANDLER] Run finished: {event.outcome} (status={event.status})")
            if event.outcome == OUTCOME_COMPLETED:
                deps.notifier.remove_label(repo, issue_number, LABEL_START)
                deps.notifier.add_label(repo, issue_number, LABEL_COMPLETE)
    return seen


def _require_issue(payload: dict) -> tuple[str, int]:
    repo = payload.get("source_repo")
    issue = payload.get("issue_number")
    if not repo or not issue:
        raise ValueError("Missing required fields: source_repo, issue_number")
    return repo, int(issue)


def _intake_artifacts(payload: dict, mode: str) -> Artifacts:
    return Artifacts(
        issue_title=payload.get("issue_title"),
        issue_body=payload.get("issue_body"),
        started_by=payload.get("sender"),
        mode=mode,
    )


def _open_session(payload: dict, deps: HandlerDeps, mode: str, intro: str) -> Session | None:
    """Create, resume, or refuse a session for a start event. None means do not run."""
    repo, issue = _require_issue(payload)
    session = deps.store.get(repo, issue)

    if session is None:
        session = deps.store.create(repo, issue, _intake_artifacts(payload, mode))
        deps.notifier.post_comment(repo, issue, intro)
        return session
    if session.status == Status.COMPLETED:
        deps.notifier.post_comment(repo, issue, ALREADY_COMPLETED)
        return None
    if session.status == Status.CANCELLED:
        logger.info(f"[HANDLER] Session {repo}#{issue} was cancelled, not restarting")
        deps.notifier.post_comment(
            repo, issue,
            "This agent session was cancelled and cannot be resumed.",
        )
        return None
    if session.status == Status.PAUSED:
        session = deps.store.update_status(repo, issue, Status.ACTIVE)
        deps.notifier.post_comment(repo, issue, "**Agent Resumed**\n\nContinuing from where we left off...")
    else:
        deps.notifier.post_comment(repo, issue, "Agent session is already active. Continuing from where we left off...")
    return session


def handle_agent_start(payload: dict, deps: HandlerDeps) -> list[Event]:
    session = _open_session(payload, deps, "lead", LEAD_INTRO)
    if session is None:
        return []
    return publish(deps, session.repo, session.issue_number, run_lead(session, deps.lead_deps()))


def handle_agent_start_pipeline(payload: dict, deps: HandlerDeps) -> list[Event]:
    session = _open_session(payload, deps, "pipeline", PIPELINE_INTRO)
    if session is None:
        return []
    return publish(deps, session.repo, session.issue_number, run_pipeline(session, deps.pipeline_deps()))


def handle_agent_stop(payload: dict, deps: HandlerDeps) -> list[Event]:
    repo, issue = _require_issue(payload)
    session = deps.store.get(repo, issue)
    if session is None:
        logger.info(f"[HANDLER] No session for {repo}#{issue}")
        return []
    if not can_cancel(session.status):
        logger.info(f"[HANDLER] Session already {session.status.value}")
        return []
    deps.store.update_status(repo, issue, Status.CANCELLED)
    deps.notifier.post_comment(
        repo, issue,
        f"**Agent Session Stopped**\n\nSession cancelled by @{payload.get('sender') or 'unknown'}.",
    )
    return []


def handle_human_response(payload: dict, deps: HandlerDeps) -> list[Event]:
    repo, issue = _require_issue(payload)
    body = payload.get("comment_body")
    if not body:
        raise ValueError("Missing required field: comment_body")

    session = deps.store.get(repo, issue)
    if session is None:
        logger.info(f"[HANDLER] No session for {repo}#{issue}, ignoring reply")
        return []
    if session.status == Status.CANCELLED:
        logger.info(f"[HANDLER] Session {repo}#{issue} is cancelled, ignoring reply")
        return []
    if session.status == Status.COMPLETED:
        deps.notifier.post_comment(
            repo, issue,
            "This ticket has already been fully processed. All phases are complete.",
        )
        return []

    phase_tag = "lead" if session.is_lead_mode else session.phase.value
    deps.store.append_message(repo, issue, Message(
        role="user",
        content=body,
        metadata={"author": payload.get("comment_author"), "phase": phase_tag},
    ))
    updates = {"last_human_response": body, "last_human_response_at": now_iso()}
    if session.artifacts.pending_plan:
        reply = parse_plan_reply(body)
        logger.info(f"[HANDLER] Plan reply: {reply.kind}")
        updates.update(plan_reply_updates(session.artifacts.pending_plan, reply))
    deps.store.merge_artifacts(repo, issue, updates, "human")
    session = deps.store.update_status(repo, issue, Status.ACTIVE)

    if session.is_lead_mode:
        deps.notifier.post_comment(repo, issue, "**Team Lead**: Got it, continuing...")
        return publish(deps, repo, issue, run_lead(session, deps.lead_deps()))
    if PHASE_CAPABILITY.get(session.phase) in REFINEMENT_CHAIN:
        return publish(deps, repo, issue, run_pipeline(session, deps.pipeline_deps()))
    return publish(deps, repo, issue, run_implementation(session, deps.pipeline_deps()))


def _existing_session(payload: dict, deps: HandlerDeps) -> Session | None:
    repo, issue = _require_issue(payload)
    session = deps.store.get(repo, issue)
    if session is None:
        deps.notifier.post_comment(
            repo, issue,
            "No agent session found. Add the `agent:start` label first.",
        )
        return None
    if session.status == Status.CANCELLED:
        logger.info(f"[HANDLER] Session {repo}#{issue} was cancelled, ignoring trigger")
        deps.notifier.post_comment(
            repo, issue,
            "This agent session was cancelled and cannot be resumed.",
        )
        return None
    return session


def handle_agent_implement(payload: dict, deps: HandlerDeps) -> list[Event]:
    session = _existing_session(payload, deps)
    if session is None:
        return []
    if session.phase not in IMPLEMENTABLE_PHASES:
        deps.notifier.post_comment(
            session.repo, session.issue_number,
            f"Cannot implement yet. Current phase: **{session.phase.value}**\n\n"
            f"Please complete all planning phases first.",
        )
        return []
    return publish(deps, session.repo, session.issue_number,
                   run_implementation(session, deps.pipeline_deps()))


def handle_agent_test(payload: dict, deps: HandlerDeps) -> list[Event]:
    session = _existing_session(payload, deps)
    if session is None:
        return []
    return publish(deps, session.repo, session.issue_number, run_tests(session, deps.pipeline_deps()))


def handle_agent_create_pr(payload: dict, deps: HandlerDeps) -> list[Event]:
    session = _existing_session(payload, deps)
    if session is None:
        return []
    return publish(deps, session.repo, session.issue_number, run_create_pr(session, deps.pipeline_deps()))


def build_review_request(payload: dict, session: Session | None) -> str:
    parts = [
        f"PR Title: {payload.get('pr_title') or 'N/A'}",
        f"PR Description: {payload.get('pr_body') or 'N/A'}",
    ]
    if session is not None:
        art = session.artifacts
        for label, value in (("Scope", art.scope), ("Design", art.design), ("Plan", art.plan)):
            if value:
                parts.append(f"Related ticket {label.lower()}:\n{value}")
    diff = payload.get("diff")
    parts.append(f"Diff:\n```\n{diff}\n```" if diff else "No diff provided")
    return "\n\n".join(parts)


def handle_qa_review(payload: dict, deps: HandlerDeps) -> list[Event]:
    repo = payload.get("source_repo")
    pr_number = payload.get("pr_number")
    if not repo or not pr_number:
        raise ValueError("Missing required fields: source_repo, pr_number")
    logger.info(f"[HANDLER] QA review for {repo}#{pr_number}")

    session = None
    if payload.get("issue_number"):
        session = deps.store.get(repo, int(payload["issue_number"]))
    messages = [
        {"role": "system", "content": QA_REVIEW_PROMPT},
        {"role": "user", "content": build_review_request(payload, session)},
    ]
    rnd = deps.complete(messages, None, QA_MAX_TOKENS)
    review = rnd.content.strip() or "Unable to generate review"
    deps.notifier.post_comment(repo, int(pr_number), f"**Automated QA Review**\n\n{review}")
    return []


def handle_post_merge_monitor(payload: dict, deps: HandlerDeps) -> list[Event]:
    repo = payload.get("source_repo")
    if not repo:
        raise ValueError("Missing required field: source_repo")
    issue = payload.get("issue_number")
    if not issue:
        logger.info("[HANDLER] Merge without a linked issue")
        return []
    session = deps.store.get(repo, int(issue))
    if session is None or session.status != Status.ACTIVE:
        return []
    deps.store.update_phase(repo, int(issue), Phase.COMPLETED)
    session = deps.store.update_status(repo, int(issue), Status.COMPLETED)
    deps.notifier.post_comment(
        repo, int(issue),
        f"**Agent Session Complete**\n\nThe related PR #{payload.get('pr_number')} has been merged.\n\n"
        f"- Started: {session.created_at}\n"
        f"- Total messages: {len(session.conversation)}",
    )
    return []


HANDLERS: dict[str, Callable[[dict, HandlerDeps], list[Event]]] = {
    "agent_start": handle_agent_start,
    "agent_start_pipeline": handle_agent_start_pipeline,
    "agent_stop": handle_agent_stop,
    "human_response": handle_human_response,
    "agent_implement": handle_agent_implement,
    "agent_test": handle_agent_test,
    "agent_create_pr": handle_agent_create_pr,
    "qa_review": handle_qa_review,
    "post_merge_monitor": handle_post_merge_monitor,
}


def dispatch_event(event_type: str, payload: dict, deps: HandlerDeps) -> list[Event]:
    """Route one incoming event. Returns the events the run produced."""
    handler = HANDLERS.get(event_type)
    if handler is None:
        raise ValueError(f"Unknown event type: {event_type}")
    logger.info(f"[HANDLER] {event_type} for {payload.get('source_repo')}#{payload.get('issue_number')}")
    return handler(payload, deps)
