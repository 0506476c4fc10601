from __future__ import annotations

import re
from dataclasses import dataclass, field

from loguru import logger

from autolead.fileguard import ErrorKind, FileGuard
from autolead.model import Completer
from autolead.outcome import (
    FINISH_TOOL,
    FINISH_TOOL_NAME,
    Blocked,
    Completed,
    Sentinels,
    decode_outcome,
)
from autolead.tools import (
    MUTATING_TOOLS,
    ToolResult,
    execute_tool,
    format_tool_operation,
)

LOOP_COMPLETED = "completed"
LOOP_BLOCKED = "blocked"
LOOP_PAUSED = "paused"
LOOP_ANSWERED = "answered"

FINISH_REJECTED = "finish_task status must be 'completed' or 'blocked'."

DEFAULT_NUDGE = (
    "Please continue. If you are done, say {complete}. "
    "If you are stuck, say {blocked}: <reason>."
)


@dataclass
class ToolInvocation:
    name: str
    input: dict
    result: ToolResult


@dataclass
class LoopResult:
    """How a tool loop run ended, plus what it touched."""
    status: str                 # completed | blocked | answered | paused
    text: str                   # final assistant text (sentinel removed)
    iterations: int
    summary: str = ""
    reason: str = ""
    changed_files: list[str] = field(default_factory=list)
    invocations: list[ToolInvocation] = field(default_factory=list)

    @property
    def tool_calls(self) -> int:
        return len(self.invocations)

    @property
    def ceiling_reached(self) -> bool:
        return self.status == LOOP_PAUSED

    @property
    def error_kind(self) -> ErrorKind | None:
        if self.status == LOOP_PAUSED:
            return ErrorKind.ITERATION_CEILING_REACHED
        return None


def format_nudge(sentinels: Sentinels) -> str:
    return DEFAULT_NUDGE.format(
        complete=sentinels.complete,
        blocked=sentinels.blocked or "BLOCKED",
    )


def run_tool_loop(
    complete: Completer,
    system_prompt: str,
    task: str,
    guard: FileGuard,
    tools: list[dict],
    max_iterations: int,
    sentinels: Sentinels,
    max_tokens: int = 4096,
    stop_on_text: bool = False,
    nudge: str | None = None,
    tag: str = "LOOP",
) -> LoopResult:
    """Drive one LLM task to a sentinel, a blocked marker, or the ceiling.

    Every tool request goes through execute_tool. With stop_on_text, a
    response without tool calls is taken as the final answer instead of
    being nudged.
    """
    messages = [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": task},
    ]
    schema = list(tools) + [FINISH_TOOL]
    nudge = nudge or format_nudge(sentinels)
    changed_files: list[str] = []
    invocations: list[ToolInvocation] = []
    last_text = ""

    for iteration in range(1, max_iterations + 1):
        logger.debug(f"[{tag}] Iteration {iteration}/{max_iterations}")
        rnd = complete(messages, schema, max_tokens)
        if rnd.content.strip():
            last_text = rnd.content

        # Outcome is checked before tool calls: a sentinel ends the run
        # even when the same response also asked for tools.
        outcome = decode_outcome(rnd, sentinels)
        if isinstance(outcome, Completed):
            logger.info(f"[{tag}] Completed after {iteration} iteration(s)")
            return LoopResult(
                status=LOOP_COMPLETED,
                text=outcome.summary,
                summary=outcome.summary,
                iterations=iteration,
                changed_files=changed_files,
                invocations=invocations,
            )
        if isinstance(outcome, Blocked):
            logger.warning(f"[{tag}] Blocked: {outcome.reason}")
            return LoopResult(
                status=LOOP_BLOCKED,
                text=rnd.content.strip(),
                reason=outcome.reason,
                iterations=iteration,
                changed_files=changed_files,
                invocations=invocations,
            )

        calls = [c for c in rnd.tool_calls if c["name"] != FINISH_TOOL_NAME]
        rejected = [c for c in rnd.tool_calls if c["name"] == FINISH_TOOL_NAME]
        if not calls and not rejected:
            if stop_on_text and rnd.content.strip():
                return LoopResult(
                    status=LOOP_ANSWERED,
                    text=rnd.content.strip(),
                    iterations=iteration,
                    changed_files=changed_files,
                    invocations=invocations,
                )
            messages.append(rnd.assistant_message())
            messages.append({"role": "user", "content": nudge})
            continue

        # An undecodable finish_task still needs a tool_result for its tool_use.
        tool_results = [
            {"id": call["id"], "result": FINISH_REJECTED, "is_error": True}
            for call in rejected
        ]
        for call in calls:
            result = execute_tool(call["name"], call["input"], guard)
            invocations.append(ToolInvocation(call["name"], call["input"], result))
            logger.info(f"[{tag}] {format_tool_operation(call['name'], call['input'], result)}")
            if result.success and call["name"] in MUTATING_TOOLS:
                path = call["input"]["path"]
                if path not in changed_files:
                    changed_files.append(path)
            tool_results.append({
                "id": call["id"],
                "result": result.as_content(),
                "is_error": not result.success,
            })
        messages.extend(rnd.build_continuation(tool_results))

    logger.warning(f"[{tag}] Reached iteration ceiling ({max_iterations})")
    return LoopResult(
        status=LOOP_PAUSED,
        text=last_text.strip(),
        reason=f"Reached max iterations ({max_iterations})",
        iterations=max_iterations,
        changed_files=changed_files,
        invocations=invocations,
    )


# ── Context preloading ───────────────────────────────────────────

MANIFEST_FILES = ["package.json", "pyproject.toml"]
MANIFEST_CHARS = 3000
MAX_PRELOAD_FILES = 5
MAX_PRELOAD_DIRS = 3

_FILE_PATH_RE = re.compile(r"[\w\-/.]+\.(?:tsx?|jsx?|json|css|md|py)\b")
_DIR_PATH_RE = re.compile(r"\b(?:app|src|components|lib|pages|tests)/[\w\-/]+")


def mentioned_files(text: str) -> list[str]:
    """Paths with a directory part mentioned in free text, deduplicated."""
    paths = []
    for match in _FILE_PATH_RE.findall(text):
        path = match.removeprefix("./")
        if "/" in path and path not in paths:
            paths.append(path)
    return paths


def mentioned_dirs(text: str) -> list[str]:
    dirs = []
    for match in _DIR_PATH_RE.findall(text):
        top = "/".join(match.split("/")[:2])
        if top not in dirs:
            dirs.append(top)
    return dirs


def gather_context(guard: FileGuard, artifact_text: str) -> str:
    """Read cheap context before a loop starts.

    Root listing, manifest files, and a bounded number of files and
    directories mentioned in prior artifacts. Failures are skipped.
    """
    sections = []

    root = execute_tool("list_directory", {"path": "."}, guard)
    if root.success:
        sections.append(f"## Project Structure (root)\n{root.output}")

    for manifest in MANIFEST_FILES:
        result = execute_tool("read_file", {"path": manifest}, guard)
        if result.success:
            sections.append(f"## {manifest}\n{result.output[:MANIFEST_CHARS]}")

    for path in mentioned_files(artifact_text)[:MAX_PRELOAD_FILES]:
        result = execute_tool("read_file", {"path": path}, guard)
        if result.success:
            logger.debug(f"[PRELOAD] {path} ({len(result.output)} chars)")
            sections.append(f"## {path}\n{result.output}")

    for directory in mentioned_dirs(artifact_text)[:MAX_PRELOAD_DIRS]:
        result = execute_tool("list_directory", {"path": directory}, guard)
        if result.success:
            sections.append(f"## Directory: {directory}\n{result.output}")

    if not sections:
        return ""
    logger.info(f"[PRELOAD] Gathered {len(sections)} context sections")
    return "# Pre-gathered Codebase Context\n\n" + "\n\n".join(sections)
