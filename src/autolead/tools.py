from __future__ import annotations

import os
import subprocess
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from loguru import logger

from autolead.fileguard import (
    EDIT_MATCH_UNIQUE,
    ErrorKind,
    FileGuard,
    NoMatchError,
    SandboxError,
)


TRUNCATION_MARKER = "\n... (output truncated)"
NO_MATCHES = "No matches found"
EMPTY_DIRECTORY = "(empty directory)"

MUTATING_TOOLS = {"write_file", "apply_diff"}


@dataclass
class ToolResult:
    """Uniform (success, output, error) triple returned by every tool."""
    success: bool
    output: str = ""
    error: str = ""
    kind: ErrorKind | None = None

    def as_content(self) -> str:
        """Text fed back into the conversation."""
        if self.success:
            return self.output
        if self.output:
            return f"Error: {self.error}\n{self.output}"
        return f"Error: {self.error}"


def _fail(kind: ErrorKind, error: str, output: str = "") -> ToolResult:
    return ToolResult(success=False, output=output, error=error, kind=kind)


class ListMode(str, Enum):
    IMMEDIATE = "immediate"
    RECURSIVE = "recursive"


_PATH_PROP = {
    "type": "string",
    "description": "Path relative to the repository root (e.g., 'src/index.ts')",
}

READ_FILE_TOOL = {
    "name": "read_file",
    "description": "Read the contents of a file. Path is relative to the repository root.",
    "input_schema": {
        "type": "object",
        "properties": {"path": _PATH_PROP},
        "required": ["path"],
    },
}

WRITE_FILE_TOOL = {
    "name": "write_file",
    "description": (
        "Write content to a file, replacing it entirely. Creates parent "
        "directories if needed."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "path": _PATH_PROP,
            "content": {"type": "string", "description": "Complete file content"},
        },
        "required": ["path", "content"],
    },
}

LIST_DIRECTORY_TOOL = {
    "name": "list_directory",
    "description": (
        "List files and directories at a path. Directories end with '/'. "
        "Use '.' for the repository root."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "path": _PATH_PROP,
            "recursive": {
                "type": "boolean",
                "description": "List all descendants instead of immediate entries",
            },
        },
        "required": ["path"],
    },
}

SEARCH_CODE_TOOL = {
    "name": "search_code",
    "description": "Search source files for a regular expression. Returns file:line:text matches.",
    "input_schema": {
        "type": "object",
        "properties": {
            "pattern": {"type": "string", "description": "Extended regular expression"},
            "file_glob": {
                "type": "string",
                "description": "Optional filename glob to restrict the search (e.g., '*.tsx')",
            },
        },
        "required": ["pattern"],
    },
}

RUN_COMMAND_TOOL = {
    "name": "run_command",
    "description": (
        "Run an allow-listed command (tests, build, lint, install) in the "
        "repository root. Other commands are rejected."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "Command line, e.g. 'npm test'"},
        },
        "required": ["command"],
    },
}

APPLY_DIFF_TOOL = {
    "name": "apply_diff",
    "description": (
        "Replace the first exact occurrence of 'original' with 'replacement' "
        "in a file. Include enough surrounding text to make 'original' unique."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "path": _PATH_PROP,
            "original": {
                "type": "string",
                "description": "The exact original text to find (must match exactly)",
            },
            "replacement": {"type": "string", "description": "The text to replace it with"},
        },
        "required": ["path", "original", "replacement"],
    },
}

CODE_TOOLS = [
    READ_FILE_TOOL,
    WRITE_FILE_TOOL,
    LIST_DIRECTORY_TOOL,
    SEARCH_CODE_TOOL,
    RUN_COMMAND_TOOL,
    APPLY_DIFF_TOOL,
]

READ_ONLY_TOOLS = [READ_FILE_TOOL, LIST_DIRECTORY_TOOL, SEARCH_CODE_TOOL]

_REQUIRED_FIELDS = {t["name"]: t["input_schema"]["required"] for t in CODE_TOOLS}


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


def execute_tool(tool_name: str, tool_input: dict, guard: FileGuard) -> ToolResult:
    """Execute one tool call. Always returns a ToolResult, never raises."""
    if tool_name not in _REQUIRED_FIELDS:
        return _fail(ErrorKind.NOT_ALLOWED, f"Unknown tool: {tool_name}")
    for field_name in _REQUIRED_FIELDS[tool_name]:
        if field_name not in tool_input:
            return _fail(
                ErrorKind.IO_ERROR,
                f"malformed tool call, missing '{field_name}' field",
            )
    try:
        if tool_name == "read_file":
            return _do_read(tool_input, guard)
        elif tool_name == "write_file":
            return _do_write(tool_input, guard)
        elif tool_name == "list_directory":
            mode = ListMode.RECURSIVE if tool_input.get("recursive") else ListMode.IMMEDIATE
            return _do_list(tool_input["path"], mode, guard)
        elif tool_name == "search_code":
            return _do_search(tool_input, guard)
        elif tool_name == "run_command":
            return _do_run_command(tool_input["command"], guard)
        else:
            return _do_apply_diff(tool_input, guard)
    except SandboxError as e:
        logger.warning(f"[SANDBOX] {tool_name} rejected: {e}")
        return _fail(e.kind, str(e))
    except OSError as e:
        return _fail(ErrorKind.IO_ERROR, str(e))


def _do_read(tool_input: dict, guard: FileGuard) -> ToolResult:
    path = guard.validate_read(tool_input["path"])
    if not path.exists():
        return _fail(ErrorKind.NOT_FOUND, f"File not found: {tool_input['path']}")
    if not path.is_file():
        return _fail(ErrorKind.IO_ERROR, f"Not a file: {tool_input['path']}")
    try:
        content = path.read_text()
    except UnicodeDecodeError:
        return _fail(ErrorKind.IO_ERROR, f"File is not valid text: {tool_input['path']}")
    return ToolResult(success=True, output=truncate(content, guard.max_output_chars))


def _atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def _do_write(tool_input: dict, guard: FileGuard) -> ToolResult:
    path = guard.validate_write(tool_input["path"])
    content = tool_input["content"]
    _atomic_write(path, content)
    return ToolResult(
        success=True,
        output=f"Successfully wrote {len(content)} characters to {tool_input['path']}",
    )


def list_entries(path: Path, mode: ListMode, guard: FileGuard) -> list[str]:
    """Sorted entries under path, directories suffixed with '/'."""
    if mode == ListMode.IMMEDIATE:
        return [
            f"{entry.name}/" if entry.is_dir() else entry.name
            for entry in sorted(path.iterdir(), key=lambda e: e.name)
            if not guard.is_ignored(entry.name)
        ]
    lines = []
    for dirpath, dirnames, filenames in os.walk(path):
        dirnames[:] = sorted(d for d in dirnames if not guard.is_ignored(d))
        base = Path(dirpath).relative_to(path)
        for d in dirnames:
            lines.append((base / d).as_posix() + "/")
        for name in filenames:
            if not guard.is_ignored(name):
                lines.append((base / name).as_posix())
    return sorted(lines)


def _do_list(relative_path: str, mode: ListMode, guard: FileGuard) -> ToolResult:
    path = guard.validate_read(relative_path)
    if not path.exists():
        return _fail(ErrorKind.NOT_FOUND, f"Directory not found: {relative_path}")
    if not path.is_dir():
        return _fail(ErrorKind.IO_ERROR, f"Not a directory: {relative_path}")
    lines = list_entries(path, mode, guard)
    if not lines:
        return ToolResult(success=True, output=EMPTY_DIRECTORY)
    return ToolResult(success=True, output=truncate("\n".join(lines), guard.max_output_chars))


def _do_search(tool_input: dict, guard: FileGuard) -> ToolResult:
    args = ["grep", "-rnE"]
    file_glob = tool_input.get("file_glob")
    if file_glob:
        args.append(f"--include={file_glob}")
    else:
        args.extend(f"--include=*.{ext}" for ext in guard.search_extensions)
    args.extend(f"--exclude-dir={d}" for d in sorted(guard.ignored_dirs))
    args.extend(["--exclude-dir=.git", "-e", tool_input["pattern"], "--", "."])

    try:
        result = subprocess.run(
            args,
            cwd=guard.project_root,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=guard.command_timeout,
        )
    except FileNotFoundError:
        return _fail(ErrorKind.IO_ERROR, "Search failed: grep is not installed")
    except subprocess.TimeoutExpired:
        return _fail(ErrorKind.TIMEOUT, "Search timed out")

    if result.returncode == 1:
        return ToolResult(success=True, output=NO_MATCHES)
    if result.returncode != 0:
        return _fail(ErrorKind.IO_ERROR, f"Search failed: {result.stderr.strip()}")
    output = "\n".join(
        line[2:] if line.startswith("./") else line
        for line in result.stdout.splitlines()
    )
    return ToolResult(success=True, output=truncate(output, guard.max_output_chars))


def as_text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode(errors="replace")
    return data


def merge_streams(stdout: str, stderr: str) -> str:
    if stderr:
        return f"{stdout}\nSTDERR:\n{stderr}"
    return stdout


def _do_run_command(command: str, guard: FileGuard) -> ToolResult:
    argv = guard.validate_command(command)
    limit = guard.max_command_output_bytes
    logger.info(f"[SANDBOX] Running: {command}")
    try:
        result = subprocess.run(
            argv,
            cwd=guard.project_root,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=guard.command_timeout,
        )
    except FileNotFoundError:
        return _fail(ErrorKind.NOT_FOUND, f"Command not found: {argv[0]}")
    except subprocess.TimeoutExpired as e:
        partial = merge_streams(as_text(e.stdout), as_text(e.stderr))
        return _fail(
            ErrorKind.TIMEOUT,
            f"Command timed out after {guard.command_timeout}s: {command}",
            output=truncate(partial, limit),
        )

    output = truncate(merge_streams(result.stdout, result.stderr), limit)
    if result.returncode != 0:
        return _fail(
            ErrorKind.IO_ERROR,
            f"Command exited with code {result.returncode}",
            output=output,
        )
    return ToolResult(success=True, output=output)


def _do_apply_diff(tool_input: dict, guard: FileGuard) -> ToolResult:
    path = guard.validate_write(tool_input["path"])
    if not path.is_file():
        return _fail(ErrorKind.NOT_FOUND, f"File not found: {tool_input['path']}")
    original = tool_input["original"]
    try:
        content = path.read_text()
    except UnicodeDecodeError:
        return _fail(ErrorKind.IO_ERROR, f"File is not valid text: {tool_input['path']}")
    count = content.count(original) if original else 0
    if count == 0:
        raise NoMatchError(
            "Original text not found in file. "
            "Make sure it matches exactly (including whitespace)."
        )
    if count > 1 and guard.edit_match == EDIT_MATCH_UNIQUE:
        raise NoMatchError(
            f"Original text occurs {count} times in file. "
            "Include more surrounding context so it matches exactly once."
        )
    _atomic_write(path, content.replace(original, tool_input["replacement"], 1))
    return ToolResult(success=True, output=f"Successfully applied edit to {tool_input['path']}")


def format_tool_operation(name: str, tool_input: dict, result: ToolResult) -> str:
    """One-line summary of a tool call for logs and comments."""
    target = tool_input.get("path") or tool_input.get("command") or tool_input.get("pattern", "")
    if not result.success:
        return f"[{name}] FAILED: {target} ({result.kind.value if result.kind else 'error'}: {result.error})"
    if name == "write_file":
        return f"[write_file] {target} ({len(tool_input.get('content', ''))} chars)"
    return f"[{name}] {target}"
