"""Complexity scoring and the external code tool's plan/execute handshake."""

from __future__ import annotations

import re
import shutil
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from loguru import logger

from autolead.fileguard import ErrorKind
from autolead.gitops import changed_files
from autolead.tools import as_text, merge_streams, truncate
from autolead.types import EscalationConfigDict


DEFAULT_KEYWORDS = [
    "refactor",
    "migrate",
    "migration",
    "restructure",
    "rewrite",
    "overhaul",
    "cross-cutting",
    "across all",
]

MAX_SCORE = 100

_FILE_REF_RE = re.compile(r"\.(?:ts|tsx|js|jsx|css|json|md|py)\b")
_FROM_TO_RE = re.compile(r"\bfrom\s+\S+.*?\bto\s+\S+", re.DOTALL)


@dataclass
class ComplexityAnalysis:
    score: int
    escalate: bool
    reasons: list[str] = field(default_factory=list)


def analyze_complexity(plan: str, design: str, thresholds: dict | None = None) -> ComplexityAnalysis:
    """Score plan and design text; escalate at or above the threshold."""
    thresholds = thresholds or {}
    file_count_threshold = thresholds.get("file_count_threshold", 3)
    score_threshold = thresholds.get("score_threshold", 25)
    keywords = thresholds.get("keywords", DEFAULT_KEYWORDS)

    combined = f"{plan} {design}".lower()
    score = 0
    reasons = []

    file_refs = len(_FILE_REF_RE.findall(combined))
    if file_refs > file_count_threshold:
        score += 30
        reasons.append(f"{file_refs} files mentioned (threshold: {file_count_threshold})")

    for keyword in keywords:
        if keyword.lower() in combined:
            score += 15
            reasons.append(f'Contains "{keyword}"')

    if "codebase" in combined or "project-wide" in combined:
        score += 25
        reasons.append("Codebase-wide change")

    if any(w in combined for w in ("architectural", "restructure", "redesign")):
        score += 20
        reasons.append("Architectural change")

    if ("migrate" in combined or "convert" in combined) and _FROM_TO_RE.search(combined):
        score += 20
        reasons.append("Migration pattern detected")

    score = min(score, MAX_SCORE)
    return ComplexityAnalysis(score=score, escalate=score >= score_threshold, reasons=reasons)


# ── External code tool ───────────────────────────────────────────

class EscalationMode(str, Enum):
    PLAN = "plan"          # must not touch the working tree
    EXECUTE = "execute"    # may modify the working tree


@dataclass
class ExternalToolResult:
    mode: EscalationMode
    success: bool
    output: str = ""
    error: str = ""
    kind: ErrorKind | None = None
    plan: str = ""
    summary: str = ""
    files_changed: list[str] = field(default_factory=list)


PLAN_PROMPT = """Analyze this task and create a detailed implementation plan. DO NOT make any changes yet.
List exactly which files you would modify or create, and what changes you would make to each.

Task: {task}
{feedback}
Output format:
## Files to Modify
- path/to/file1.ts: description of changes

## New Files to Create
- path/to/new-file.ts: purpose

## Implementation Steps
1. Step one

## Estimated Complexity
Simple/Medium/Complex

DO NOT execute any changes. Only provide the plan."""

EXECUTE_PROMPT = "Execute this approved plan:\n\n{plan}\n\nOriginal task: {task}"

_PLAN_FILE_RE = re.compile(r"^-\s+[`\"]?([^:`\"]+\.[a-z]+)[`\"]?:", re.IGNORECASE)
_PLAN_COMPLEXITY_RE = re.compile(r"estimated complexity[:\s#]*(simple|medium|complex)", re.IGNORECASE)


def parse_plan_files(plan: str) -> list[str]:
    files = []
    for line in plan.splitlines():
        match = _PLAN_FILE_RE.match(line.strip())
        if match and match.group(1).strip() not in files:
            files.append(match.group(1).strip())
    return files


def summarize_plan(plan: str) -> str:
    files = parse_plan_files(plan)
    lines = ["**Plan Summary**", f"- Files to modify: {len(files)}"]
    if "new files to create" in plan.lower():
        lines.append("- Will create new files")
    match = _PLAN_COMPLEXITY_RE.search(plan)
    if match:
        lines.append(f"- Complexity: {match.group(1).capitalize()}")
    return "\n".join(lines)


class ExternalCodeTool:
    """Opaque heavyweight code tool run as a subprocess.

    Not routed through the sandbox allow-list. PLAN mode is checked against
    the working tree before and after the run.
    """

    def __init__(self, repo_path: Path, config: EscalationConfigDict | None = None):
        config = config or {}
        self.repo_path = Path(repo_path)
        self.command = list(config.get("command", ["claude", "--print"]))
        self.execute_flags = list(config.get("execute_flags", ["--dangerously-skip-permissions"]))
        self.plan_timeout = config.get("plan_timeout_seconds", 300)
        self.execute_timeout = config.get("execute_timeout_seconds", 600)
        self.max_output_chars = config.get("max_output_chars", 10_000)

    def probe(self) -> bool:
        return shutil.which(self.command[0]) is not None

    def _argv(self, mode: EscalationMode, prompt: str) -> list[str]:
        if mode == EscalationMode.EXECUTE:
            return [*self.command, *self.execute_flags, prompt]
        return [*self.command, prompt]

    def _run(self, mode: EscalationMode, prompt: str) -> ExternalToolResult:
        if not self.probe():
            return ExternalToolResult(
                mode=mode,
                success=False,
                error=f"{self.command[0]} is not installed",
                kind=ErrorKind.TOOL_UNAVAILABLE,
            )
        timeout = self.plan_timeout if mode == EscalationMode.PLAN else self.execute_timeout
        logger.info(f"[ESCALATION] Running external tool in {mode.value} mode")
        try:
            result = subprocess.run(
                self._argv(mode, prompt),
                cwd=self.repo_path,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            partial = merge_streams(as_text(e.stdout), as_text(e.stderr))
            return ExternalToolResult(
                mode=mode,
                success=False,
                output=truncate(partial, self.max_output_chars),
                error=f"External tool timed out after {timeout}s",
                kind=ErrorKind.TIMEOUT,
            )
        output = result.stdout + (f"\n{result.stderr}" if result.stderr else "")
        if result.returncode != 0:
            return ExternalToolResult(
                mode=mode,
                success=False,
                output=truncate(result.stdout, self.max_output_chars),
                error=result.stderr.strip() or f"exit code {result.returncode}",
                kind=ErrorKind.IO_ERROR,
            )
        return ExternalToolResult(mode=mode, success=True, output=output)

    def plan(self, task: str, feedback: str | None = None) -> ExternalToolResult:
        """Ask for a plan. Fails if the working tree changed during the run."""
        before = changed_files(self.repo_path)
        feedback_text = f"\nReviewer feedback on the previous plan: {feedback}\n" if feedback else ""
        result = self._run(EscalationMode.PLAN, PLAN_PROMPT.format(task=task, feedback=feedback_text))
        if not result.success:
            return result
        after = changed_files(self.repo_path)
        if before is not None and after is not None and sorted(before) != sorted(after):
            touched = sorted(set(after) ^ set(before))
            return ExternalToolResult(
                mode=EscalationMode.PLAN,
                success=False,
                output=truncate(result.output, self.max_output_chars),
                error=f"Plan mode modified the working tree: {', '.join(touched)}",
                kind=ErrorKind.IO_ERROR,
            )
        result.plan = result.output
        result.output = truncate(result.output, self.max_output_chars)
        result.files_changed = parse_plan_files(result.plan)
        result.summary = summarize_plan(result.plan)
        return result

    def execute(self, task: str, approved_plan: str) -> ExternalToolResult:
        result = self._run(EscalationMode.EXECUTE, EXECUTE_PROMPT.format(plan=approved_plan, task=task))
        if not result.success:
            return result
        result.files_changed = changed_files(self.repo_path) or []
        result.output = truncate(result.output, self.max_output_chars)
        result.summary = (
            f"External tool modified {len(result.files_changed)} file(s): "
            + (", ".join(result.files_changed) or "none")
        )
        return result


# ── Plan replies ─────────────────────────────────────────────────

REPLY_APPROVE = "approve"
REPLY_BASIC = "basic"
REPLY_MODIFY = "modify"
REPLY_OTHER = "other"


@dataclass(frozen=True)
class PlanReply:
    kind: str
    feedback: str = ""


def parse_plan_reply(text: str) -> PlanReply:
    """Classify a human reply to a pending plan."""
    stripped = text.strip()
    lowered = stripped.lower()
    if lowered.startswith("modify:"):
        return PlanReply(REPLY_MODIFY, stripped[len("modify:"):].strip())
    first_word = lowered.split()[0].strip(".!,") if lowered else ""
    if first_word in ("approve", "approved"):
        return PlanReply(REPLY_APPROVE)
    if first_word == "basic":
        return PlanReply(REPLY_BASIC)
    return PlanReply(REPLY_OTHER, stripped)


def plan_reply_updates(pending_plan: str, reply: PlanReply) -> dict:
    """Artifact updates (writer "human") for a reply to a pending plan."""
    if reply.kind == REPLY_APPROVE:
        return {"approved_plan": pending_plan, "pending_plan": None, "plan_feedback": None}
    if reply.kind == REPLY_BASIC:
        return {"pending_plan": None, "plan_summary": None, "escalation_declined": True}
    if reply.kind == REPLY_MODIFY:
        return {"pending_plan": None, "plan_summary": None, "plan_feedback": reply.feedback}
    return {}
