"""Delegation engine: a reasoning model picks which capability runs next.

run_lead() is a generator. It persists session changes through the store
and yields events for the caller to surface; it never posts anything
itself.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator

from loguru import logger

from autolead.capabilities import (
    CAPABILITY_PHASE,
    Capability,
    CapabilityDeps,
    CapabilityResult,
    UnknownCapabilityError,
    parse_capability,
    record_result,
    run_capability,
)
from autolead.events import (
    OUTCOME_BLOCKED,
    OUTCOME_CEILING,
    OUTCOME_COMPLETED,
    OUTCOME_WAITING,
    Delegating,
    DelegationFinished,
    Event,
    PhaseAdvanced,
    QuestionAsked,
    RunFinished,
    RunStarted,
)
from autolead.model import Completer
from autolead.prompts import LEAD_NUDGE, LEAD_SYSTEM_PROMPT, THINK_ACK
from autolead.session import Message, Phase, Session, Status, now_iso
from autolead.store import SessionStore

LEAD_TOOLS = [
    {
        "name": "delegate_to_agent",
        "description": "Delegate work to a specialist agent. Use this to move the ticket through phases.",
        "input_schema": {
            "type": "object",
            "properties": {
                "agent": {
                    "type": "string",
                    "enum": [c.value for c in Capability],
                    "description": "Which agent to delegate to",
                },
                "instructions": {
                    "type": "string",
                    "description": "Additional context or focus areas for the agent",
                },
            },
            "required": ["agent"],
        },
    },
    {
        "name": "ask_human",
        "description": "Ask the human a question when you need clarification or a decision. Use sparingly.",
        "input_schema": {
            "type": "object",
            "properties": {
                "question": {"type": "string", "description": "The question to ask the human"},
            },
            "required": ["question"],
        },
    },
    {
        "name": "think",
        "description": "Record your reasoning about what to do next.",
        "input_schema": {
            "type": "object",
            "properties": {
                "reasoning": {"type": "string", "description": "Your analysis and reasoning"},
            },
            "required": ["reasoning"],
        },
    },
    {
        "name": "mark_complete",
        "description": "Mark the ticket as fully processed. Use when the PR is created or the work is done.",
        "input_schema": {
            "type": "object",
            "properties": {
                "summary": {"type": "string", "description": "Summary of what was accomplished"},
            },
            "required": ["summary"],
        },
    },
    {
        "name": "mark_blocked",
        "description": "Mark the ticket as blocked when you cannot proceed without human intervention.",
        "input_schema": {
            "type": "object",
            "properties": {
                "reason": {"type": "string", "description": "Why the ticket is blocked"},
                "attempted": {"type": "string", "description": "What was attempted before getting blocked"},
            },
            "required": ["reason"],
        },
    },
]

LEAD_PHASE = "lead"


@dataclass
class Delegation:
    agent: str
    instructions: str
    success: bool
    output: str
    timestamp: str = field(default_factory=now_iso)


@dataclass
class LeadDeps:
    complete: Completer
    store: SessionStore
    capabilities: CapabilityDeps
    max_iterations: int = 25
    max_tokens: int = 2048
    recent_delegations: int = 5
    system_prompt: str = LEAD_SYSTEM_PROMPT


def _check(done: bool) -> str:
    return "done" if done else "not yet"


def build_state_context(session: Session, delegations: list[Delegation], recent: int = 5) -> str:
    """Decision context for one lead iteration, built from the live session."""
    art = session.artifacts
    lines = [
        "## Ticket",
        f"**Title:** {art.issue_title or 'N/A'}",
        f"**Description:** {art.issue_body or 'N/A'}",
        "",
        "## Current State",
        f"- **Phase:** {session.phase.value}",
        f"- **Status:** {session.status.value}",
        "",
        "## Completed Work",
        f"- **Scope:** {_check(bool(art.scope))}",
        f"- **Design:** {_check(bool(art.design))}",
        f"- **Plan:** {_check(bool(art.plan))}",
    ]
    if art.implemented_files:
        lines.append(f"- **Implementation:** files changed: {', '.join(art.implemented_files)}")
    else:
        lines.append("- **Implementation:** not yet")
    if art.test_results is None:
        lines.append("- **Tests:** not yet run")
    else:
        lines.append(f"- **Tests:** {'passed' if art.tests_passed else 'failed'}")
    lines.append(f"- **PR:** {art.pr_url or 'not yet created'}")

    if art.pending_plan:
        lines += ["", "## Escalation", "An external code tool plan is awaiting human approval."]
    elif art.approved_plan:
        lines += ["", "## Escalation", "An external code tool plan was approved. Delegate to implementer to execute it."]
    elif art.escalation_declined:
        lines += ["", "## Escalation", "The human chose basic tools; do not escalate again."]

    if art.last_human_response:
        lines += ["", "## Latest Human Response", art.last_human_response]

    if delegations:
        lines += ["", "## Recent Delegations"]
        for d in delegations[-recent:]:
            mark = "Success" if d.success else "Failed"
            lines.append(f"- {d.agent}: {mark} - {d.output[:200]}")

    lines += ["", "## Your Task", "Analyze the state and decide what to do next. Use tools to take action."]
    return "\n".join(lines)


def summarize_delegation(capability: Capability, result: CapabilityResult) -> str:
    """Tool-result text the lead sees after a delegation."""
    if result.success:
        text = f"{capability.value} completed successfully. Output: {result.output[:500]}"
        if result.suggested_next:
            text += f". Suggested next: {result.suggested_next.value}"
        return text
    return f"{capability.value} failed: {result.error or 'Unknown error'}"


def _pause_for_question(deps: LeadDeps, session: Session, question: str, source: str) -> Session:
    if source == LEAD_PHASE:
        session = deps.store.append_message(session.repo, session.issue_number, Message(
            role="assistant",
            content=question,
            metadata={"phase": LEAD_PHASE, "waiting_for": "human"},
        ))
    return deps.store.update_status(session.repo, session.issue_number, Status.PAUSED)


def _complete(deps: LeadDeps, session: Session) -> Session:
    session = deps.store.update_phase(session.repo, session.issue_number, Phase.COMPLETED)
    return deps.store.update_status(session.repo, session.issue_number, Status.COMPLETED)


def run_lead(session: Session, deps: LeadDeps) -> Iterator[Event]:
    """Run the delegation loop until completion, a question, a block, or the ceiling."""
    repo, issue = session.repo, session.issue_number
    delegations: list[Delegation] = []
    logger.info(f"[LEAD] Starting for {repo}#{issue}")
    yield RunStarted(repo, issue, "lead", session.phase.value)

    messages = [
        {"role": "system", "content": deps.system_prompt},
        {"role": "user", "content": build_state_context(session, delegations, deps.recent_delegations)},
    ]

    for iteration in range(1, deps.max_iterations + 1):
        logger.info(f"[LEAD] Iteration {iteration}/{deps.max_iterations}")
        rnd = deps.complete(messages, LEAD_TOOLS, deps.max_tokens)

        if not rnd.tool_calls:
            messages.append(rnd.assistant_message())
            messages.append({"role": "user", "content": LEAD_NUDGE})
            continue

        tool_results = []
        for call in rnd.tool_calls:
            name, args = call["name"], call["input"]

            if name == "think":
                logger.debug(f"[LEAD] Reasoning: {args.get('reasoning', '')[:200]}")
                tool_results.append({"id": call["id"], "result": THINK_ACK, "is_error": False})

            elif name == "delegate_to_agent":
                try:
                    capability = parse_capability(args.get("agent", ""))
                except UnknownCapabilityError as e:
                    logger.warning(f"[LEAD] {e}")
                    tool_results.append({"id": call["id"], "result": f"Error: {e}", "is_error": True})
                    continue
                instructions = args.get("instructions")
                logger.info(f"[LEAD] Delegating to {capability.value}")
                yield Delegating(capability.value, instructions)

                target = CAPABILITY_PHASE.get(capability)
                if target is not None and target != session.phase:
                    previous = session.phase
                    session = deps.store.update_phase(repo, issue, target)
                    yield PhaseAdvanced(previous.value, target.value)

                result = run_capability(capability, session, deps.capabilities, instructions)
                session = record_result(deps.store, session, capability, result)
                delegations.append(Delegation(
                    agent=capability.value,
                    instructions=instructions or "",
                    success=result.success,
                    output=result.output,
                ))
                yield DelegationFinished(capability.value, result.success, result.output, result.error)

                if result.needs_human and result.question:
                    session = _pause_for_question(deps, session, result.question, capability.value)
                    yield QuestionAsked(result.question, capability.value)
                    yield RunFinished(OUTCOME_WAITING, session.status.value,
                                      f"Waiting for human response to: {result.question}",
                                      iteration, len(delegations))
                    return

                if capability == Capability.PR_CREATOR and result.success:
                    previous = session.phase
                    session = _complete(deps, session)
                    yield PhaseAdvanced(previous.value, Phase.COMPLETED.value)
                    yield RunFinished(OUTCOME_COMPLETED, session.status.value,
                                      f"PR created successfully.\n\n{result.output}",
                                      iteration, len(delegations))
                    return

                tool_results.append({
                    "id": call["id"],
                    "result": summarize_delegation(capability, result),
                    "is_error": not result.success,
                })

            elif name == "ask_human":
                question = args.get("question", "")
                logger.info(f"[LEAD] Asking human: {question}")
                session = _pause_for_question(deps, session, question, LEAD_PHASE)
                yield QuestionAsked(question, LEAD_PHASE)
                yield RunFinished(OUTCOME_WAITING, session.status.value,
                                  f"Waiting for human response to: {question}",
                                  iteration, len(delegations))
                return

            elif name == "mark_complete":
                summary = args.get("summary", "")
                logger.info(f"[LEAD] Marking complete: {summary}")
                previous = session.phase
                session = _complete(deps, session)
                if previous != Phase.COMPLETED:
                    yield PhaseAdvanced(previous.value, Phase.COMPLETED.value)
                yield RunFinished(OUTCOME_COMPLETED, session.status.value, summary,
                                  iteration, len(delegations))
                return

            elif name == "mark_blocked":
                reason = args.get("reason", "")
                logger.warning(f"[LEAD] Marking blocked: {reason}")
                session = deps.store.update_status(repo, issue, Status.PAUSED)
                yield RunFinished(OUTCOME_BLOCKED, session.status.value, reason,
                                  iteration, len(delegations), attempted=args.get("attempted", ""))
                return

            else:
                tool_results.append({"id": call["id"], "result": f"Error: Unknown tool: {name}", "is_error": True})

        messages.extend(rnd.build_continuation(tool_results))
        # Decision context always reflects the live session
        messages[1] = {
            "role": "user",
            "content": build_state_context(session, delegations, deps.recent_delegations),
        }

    logger.warning(f"[LEAD] Reached maximum iterations ({deps.max_iterations})")
    session = deps.store.update_status(repo, issue, Status.PAUSED)
    yield RunFinished(OUTCOME_CEILING, session.status.value,
                      f"Reached maximum iterations ({deps.max_iterations}). Pausing for review.",
                      deps.max_iterations, len(delegations))
