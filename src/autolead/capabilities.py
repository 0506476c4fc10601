"""Specialist capabilities and the single dispatcher that runs them."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

from autolead.escalation import ExternalCodeTool, analyze_complexity
from autolead.fileguard import ErrorKind, FileGuard, NotAllowedError
from autolead.gitops import GitError, branch_name, changed_files, checkout_branch, commit_all, push_branch
from autolead.loop import (
    LOOP_BLOCKED,
    LOOP_COMPLETED,
    LOOP_PAUSED,
    gather_context,
    run_tool_loop,
)
from autolead.model import Completer
from autolead.notifier import Notifier, NotifierError
from autolead.outcome import IMPLEMENTATION_SENTINELS, PHASE_SENTINELS
from autolead.prompts import (
    CAPABILITY_PROMPTS,
    EXPLORATION_SUPPLEMENT,
    IMPLEMENTER_KICKOFF,
    IMPLEMENTER_NUDGE,
)
from autolead.session import Message, Phase, Session
from autolead.store import SessionStore
from autolead.tools import CODE_TOOLS, READ_ONLY_TOOLS, execute_tool
from autolead.types import CheckResultDict, ConfigDict


class Capability(str, Enum):
    CLARIFIER = "clarifier"
    SCOPE = "scope"
    DESIGNER = "designer"
    PLANNER = "planner"
    IMPLEMENTER = "implementer"
    TESTER = "tester"
    PR_CREATOR = "pr-creator"


class UnknownCapabilityError(NotAllowedError):
    pass


def parse_capability(name: str) -> Capability:
    """Map untrusted model output onto the closed set of capabilities."""
    try:
        return Capability(name)
    except ValueError:
        allowed = ", ".join(c.value for c in Capability)
        raise UnknownCapabilityError(f"Unknown agent '{name}'. Allowed: {allowed}")


NEXT_CAPABILITY: dict[Capability, Capability | None] = {
    Capability.CLARIFIER: Capability.SCOPE,
    Capability.SCOPE: Capability.DESIGNER,
    Capability.DESIGNER: Capability.PLANNER,
    Capability.PLANNER: Capability.IMPLEMENTER,
    Capability.IMPLEMENTER: Capability.TESTER,
    Capability.TESTER: Capability.PR_CREATOR,
    Capability.PR_CREATOR: None,
}

CAPABILITY_PHASE: dict[Capability, Phase] = {
    Capability.CLARIFIER: Phase.CLARIFYING,
    Capability.SCOPE: Phase.SCOPING,
    Capability.DESIGNER: Phase.DESIGNING,
    Capability.PLANNER: Phase.PLANNING,
    Capability.IMPLEMENTER: Phase.IMPLEMENTING,
    Capability.TESTER: Phase.TESTING,
}

# Artifact written by each refinement capability on completion
REFINEMENT_ARTIFACT: dict[Capability, str | None] = {
    Capability.CLARIFIER: None,
    Capability.SCOPE: "scope",
    Capability.DESIGNER: "design",
    Capability.PLANNER: "plan",
}

PRELOADING = {Capability.DESIGNER, Capability.PLANNER}


@dataclass
class CapabilityResult:
    success: bool
    output: str
    complete: bool = False
    needs_human: bool = False
    question: str | None = None
    suggested_next: Capability | None = None
    artifacts: dict = field(default_factory=dict)   # updates written as this capability
    error: str = ""
    tool_calls: int = 0
    changed_files: list[str] = field(default_factory=list)


@dataclass
class CapabilityDeps:
    """Collaborators a capability may use."""
    complete: Completer
    guard: FileGuard
    config: ConfigDict
    notifier: Notifier
    code_tool: ExternalCodeTool | None = None
    prompt_overrides: dict[str, str] = field(default_factory=dict)

    def prompt(self, capability: Capability) -> str:
        return self.prompt_overrides.get(capability.value) or CAPABILITY_PROMPTS[capability.value]


def build_task_context(session: Session, instructions: str | None = None) -> str:
    art = session.artifacts
    parts = [
        f"Issue: {art.issue_title or 'N/A'}",
        f"Description: {art.issue_body or 'N/A'}",
    ]
    if art.scope:
        parts.append(f"Scope:\n{art.scope}")
    if art.design:
        parts.append(f"Design:\n{art.design}")
    if art.plan:
        parts.append(f"Plan:\n{art.plan}")
    if instructions:
        parts.append(f"Additional Context:\n{instructions}")
    return "\n\n".join(parts)


def format_phase_history(messages: list[Message]) -> str:
    if not messages:
        return ""
    lines = ["## Conversation so far"]
    for msg in messages:
        speaker = "Human" if msg.role == "user" else "Agent"
        lines.append(f"**{speaker}:** {msg.content}")
    return "\n\n".join(lines)


def run_capability(
    capability: Capability,
    session: Session,
    deps: CapabilityDeps,
    instructions: str | None = None,
) -> CapabilityResult:
    """Run one capability. Execution-surface failures come back as results."""
    logger.info(f"[CAPABILITY] Running {capability.value} for {session.repo}#{session.issue_number}")
    if capability in REFINEMENT_ARTIFACT:
        return _run_refinement(capability, session, deps, instructions)
    if capability == Capability.IMPLEMENTER:
        return _run_implementer(session, deps, instructions)
    if capability == Capability.TESTER:
        return _run_tester(deps)
    return _run_pr_creator(session, deps)


def record_result(
    store: SessionStore,
    session: Session,
    capability: Capability,
    result: CapabilityResult,
) -> Session:
    """Persist a result's artifacts and conversation entry. Returns the fresh session."""
    if result.artifacts:
        session = store.merge_artifacts(session.repo, session.issue_number, result.artifacts, capability.value)
    content = result.question if result.needs_human and result.question else result.output
    if content:
        phase = CAPABILITY_PHASE.get(capability, session.phase)
        session = store.append_message(session.repo, session.issue_number, Message(
            role="assistant",
            content=content,
            metadata={
                "phase": phase.value,
                "capability": capability.value,
                "tool_calls": result.tool_calls,
                "complete": result.complete,
            },
        ))
    return session


# ── Refinement (read-only exploration) ───────────────────────────

def _run_refinement(
    capability: Capability,
    session: Session,
    deps: CapabilityDeps,
    instructions: str | None,
) -> CapabilityResult:
    loop_cfg = deps.config["loop"]
    system_prompt = f"{deps.prompt(capability)}\n\n{EXPLORATION_SUPPLEMENT}"
    sections = [build_task_context(session, instructions)]
    history = format_phase_history(session.phase_messages(CAPABILITY_PHASE[capability].value))
    if history:
        sections.append(history)
    if capability in PRELOADING:
        art = session.artifacts
        preload = gather_context(deps.guard, " ".join(filter(None, [art.scope, art.design, art.plan])))
        if preload:
            sections.append(preload)

    result = run_tool_loop(
        deps.complete,
        system_prompt,
        "\n\n".join(sections),
        deps.guard,
        READ_ONLY_TOOLS,
        max_iterations=loop_cfg["exploratory_max_iterations"],
        sentinels=PHASE_SENTINELS,
        max_tokens=loop_cfg["exploratory_max_tokens"],
        stop_on_text=True,
        tag=capability.value.upper(),
    )

    if result.status == LOOP_BLOCKED:
        return CapabilityResult(
            success=False,
            output=result.text,
            needs_human=True,
            question=result.reason,
            error=result.reason,
            tool_calls=result.tool_calls,
        )

    if result.status == LOOP_PAUSED:
        return CapabilityResult(
            success=False,
            output=result.text or f"Hit max iterations ({result.iterations})",
            needs_human=True,
            question=f"{capability.value} reached max iterations without finishing. Review progress and advise.",
            error=result.reason,
            tool_calls=result.tool_calls,
        )

    complete = result.status == LOOP_COMPLETED
    output = result.text or "No response generated"
    artifacts = {}
    key = REFINEMENT_ARTIFACT[capability]
    if complete and key:
        artifacts[key] = output
    needs_human = not complete and capability == Capability.CLARIFIER
    return CapabilityResult(
        success=True,
        output=output,
        complete=complete,
        needs_human=needs_human,
        question=output if needs_human else None,
        suggested_next=NEXT_CAPABILITY[capability] if complete else None,
        artifacts=artifacts,
        tool_calls=result.tool_calls,
    )


# ── Implementation ───────────────────────────────────────────────

def format_plan_question(score: int, plan: str, summary: str) -> str:
    return (
        f"**External Code Tool Plan**\n\n"
        f"This task is complex (score: {score}/100). The external code tool "
        f"generated a plan:\n\n{summary}\n\n{plan}\n\n---\n\n"
        f"**Please review and reply:**\n"
        f'- "approve" - Execute this plan\n'
        f'- "modify: [changes]" - Adjust the plan\n'
        f'- "basic" - Use basic tools instead'
    )


def _merge_files(previous: list[str] | None, new: list[str]) -> list[str]:
    merged = list(previous or [])
    for path in new:
        if path not in merged:
            merged.append(path)
    return merged


def _run_implementer(session: Session, deps: CapabilityDeps, instructions: str | None) -> CapabilityResult:
    art = session.artifacts
    task = build_task_context(session, instructions)

    if art.approved_plan:
        return _execute_approved_plan(session, deps, task)

    esc_cfg = deps.config["escalation"]
    analysis = analyze_complexity(art.plan or "", art.design or "", esc_cfg)
    logger.info(f"[IMPLEMENTER] Complexity score={analysis.score} escalate={analysis.escalate}")
    for reason in analysis.reasons:
        logger.debug(f"[IMPLEMENTER] {reason}")
    artifacts: dict = {"complexity_score": analysis.score}

    wants_escalation = (
        esc_cfg.get("enabled", True)
        and analysis.escalate
        and not art.escalation_declined
        and deps.code_tool is not None
    )
    if wants_escalation and art.pending_plan:
        return CapabilityResult(
            success=True,
            output=art.pending_plan,
            needs_human=True,
            question=format_plan_question(analysis.score, art.pending_plan, art.plan_summary or ""),
            artifacts=artifacts,
        )
    if wants_escalation:
        planned = deps.code_tool.plan(task, feedback=art.plan_feedback)
        if planned.success:
            artifacts.update({
                "pending_plan": planned.plan,
                "plan_summary": planned.summary,
                "plan_feedback": None,
            })
            return CapabilityResult(
                success=True,
                output=planned.output,
                needs_human=True,
                question=format_plan_question(analysis.score, planned.output, planned.summary),
                artifacts=artifacts,
            )
        if planned.kind == ErrorKind.TOOL_UNAVAILABLE:
            logger.info("[IMPLEMENTER] External code tool unavailable, using basic tools")
        else:
            logger.warning(f"[IMPLEMENTER] Plan generation failed ({planned.error}), using basic tools")

    return _run_basic_implementer(session, deps, task, artifacts)


def _execute_approved_plan(session: Session, deps: CapabilityDeps, task: str) -> CapabilityResult:
    plan = session.artifacts.approved_plan
    if deps.code_tool is None:
        return CapabilityResult(
            success=False,
            output="",
            needs_human=True,
            question="An approved plan exists but no external code tool is configured. Reply \"basic\" to use basic tools.",
            error="External code tool not configured",
            artifacts={"approved_plan": None, "pending_plan": plan},
        )
    executed = deps.code_tool.execute(task, plan)
    if not executed.success:
        return CapabilityResult(
            success=False,
            output=executed.output,
            needs_human=True,
            question=(
                f"External code tool execution failed:\n\n{executed.error}\n\n"
                f'Reply "approve" to retry the plan or "basic" to use basic tools.'
            ),
            error=executed.error,
            artifacts={"approved_plan": None, "pending_plan": plan},
        )
    files = _merge_files(session.artifacts.implemented_files, executed.files_changed)
    return CapabilityResult(
        success=True,
        output=f"{executed.summary}\n\n{executed.output}",
        complete=True,
        suggested_next=Capability.TESTER,
        artifacts={"approved_plan": None, "implemented_files": files},
        changed_files=executed.files_changed,
    )


def _run_basic_implementer(
    session: Session,
    deps: CapabilityDeps,
    task: str,
    artifacts: dict,
) -> CapabilityResult:
    loop_cfg = deps.config["loop"]
    art = session.artifacts
    preload = gather_context(deps.guard, f"{art.plan or ''} {art.design or ''}")
    sections = [task]
    if preload:
        sections.append(preload)
    sections.append(IMPLEMENTER_KICKOFF)

    result = run_tool_loop(
        deps.complete,
        deps.prompt(Capability.IMPLEMENTER),
        "\n\n".join(sections),
        deps.guard,
        CODE_TOOLS,
        max_iterations=loop_cfg["implementer_max_iterations"],
        sentinels=IMPLEMENTATION_SENTINELS,
        max_tokens=loop_cfg["implementer_max_tokens"],
        nudge=IMPLEMENTER_NUDGE,
        tag="IMPLEMENTER",
    )
    artifacts["implemented_files"] = _merge_files(art.implemented_files, result.changed_files)

    if result.status == LOOP_COMPLETED:
        return CapabilityResult(
            success=True,
            output=f"Implementation complete. Changed files: {', '.join(result.changed_files) or 'none'}",
            complete=True,
            suggested_next=Capability.TESTER,
            artifacts=artifacts,
            tool_calls=result.tool_calls,
            changed_files=result.changed_files,
        )
    if result.status == LOOP_BLOCKED:
        return CapabilityResult(
            success=False,
            output=f"Implementation blocked: {result.reason}",
            needs_human=True,
            question=f"Implementation is blocked: {result.reason}. How should we proceed?",
            error=result.reason,
            artifacts=artifacts,
            tool_calls=result.tool_calls,
            changed_files=result.changed_files,
        )
    # Iteration ceiling
    return CapabilityResult(
        success=False,
        output=f"Hit max iterations ({result.iterations})",
        needs_human=True,
        question="Implementation reached max iterations. Review progress and advise.",
        error=result.reason,
        artifacts=artifacts,
        tool_calls=result.tool_calls,
        changed_files=result.changed_files,
    )


# ── Testing ──────────────────────────────────────────────────────

def _run_tester(deps: CapabilityDeps) -> CapabilityResult:
    checks = deps.config["tester"].get("checks", [])
    if not checks:
        return CapabilityResult(
            success=True,
            output="No checks configured",
            complete=True,
            suggested_next=Capability.PR_CREATOR,
            artifacts={"test_results": [], "tests_passed": True},
        )

    results: list[CheckResultDict] = []
    lines = []
    for check in checks:
        critical = check.get("critical", True)
        outcome = execute_tool("run_command", {"command": check["command"]}, deps.guard)
        results.append({
            "name": check["name"],
            "command": check["command"],
            "critical": critical,
            "passed": outcome.success,
            "output": (outcome.output or outcome.error)[-2000:],
            "error_kind": outcome.kind.value if outcome.kind else None,
        })
        if outcome.success:
            lines.append(f"- PASS {check['name']}")
        elif critical:
            lines.append(f"- FAIL {check['name']}: {outcome.error}")
        else:
            lines.append(f"- WARN {check['name']} (non-blocking): {outcome.error}")

    failed = [r["name"] for r in results if r["critical"] and not r["passed"]]
    passed = not failed
    summary = "\n".join(lines)
    return CapabilityResult(
        success=passed,
        output=summary,
        complete=passed,
        suggested_next=Capability.PR_CREATOR if passed else None,
        artifacts={"test_results": results, "tests_passed": passed},
        error="" if passed else f"Critical checks failed: {', '.join(failed)}",
        tool_calls=len(results),
    )


# ── Pull request ─────────────────────────────────────────────────

def _run_pr_creator(session: Session, deps: CapabilityDeps) -> CapabilityResult:
    gh = deps.config["github"]
    repo_path = deps.guard.project_root
    branch = branch_name(gh["branch_prefix"], session.issue_number)
    title = session.artifacts.issue_title or f"Fix issue #{session.issue_number}"

    pending = changed_files(repo_path)
    if pending is None:
        return CapabilityResult(success=False, output="", error=f"Not a git repository: {repo_path}")
    if not pending:
        return CapabilityResult(success=False, output="No changes to commit", error="No changes")

    try:
        checkout_branch(repo_path, branch)
        commit_all(repo_path, title, gh["author_name"], gh["author_email"])
        push_branch(repo_path, branch)
        pr = deps.notifier.create_pull_request(
            session.repo,
            title=title,
            head=branch,
            base=gh["base_branch"],
            body=f"Closes #{session.issue_number}\n\n{session.artifacts.scope or ''}".rstrip(),
        )
    except (GitError, NotifierError) as e:
        logger.error(f"[PR] Failed to create pull request: {e}")
        return CapabilityResult(
            success=False,
            output="",
            needs_human=True,
            question=f"Creating the pull request failed: {e}. How should we proceed?",
            error=str(e),
        )

    return CapabilityResult(
        success=True,
        output=f"PR #{pr['number']} created: {pr['url']}",
        complete=True,
        artifacts={"pr_number": pr["number"], "pr_url": pr["url"]},
        changed_files=pending,
    )
