from __future__ import annotations

import shlex
from enum import Enum
from pathlib import Path, PurePath, PureWindowsPath

from autolead.types import SandboxConfigDict


class ErrorKind(str, Enum):
    PATH_TRAVERSAL = "PathTraversal"
    PROTECTED_PATH = "ProtectedPath"
    NOT_ALLOWED = "NotAllowed"
    NOT_FOUND = "NotFound"
    IO_ERROR = "IOError"
    NO_MATCH = "NoMatch"
    TIMEOUT = "Timeout"
    ITERATION_CEILING_REACHED = "IterationCeilingReached"
    TOOL_UNAVAILABLE = "ToolUnavailable"


class SandboxError(Exception):
    """Raised when an operation violates the working-tree sandbox."""
    kind = ErrorKind.IO_ERROR


class SecurityError(SandboxError):
    """Raised when a path escapes the working tree."""
    kind = ErrorKind.PATH_TRAVERSAL


PathTraversalError = SecurityError


class ProtectedPathError(SandboxError):
    kind = ErrorKind.PROTECTED_PATH


class NotAllowedError(SandboxError):
    kind = ErrorKind.NOT_ALLOWED


class NoMatchError(SandboxError):
    kind = ErrorKind.NO_MATCH


DEFAULT_PROTECTED_PATHS = [
    ".env",
    ".env.local",
    ".env.production",
    ".git",
    "node_modules",
    "package-lock.json",
    ".github/workflows",
]

DEFAULT_ALLOWED_COMMANDS = [
    "npm test",
    "npm run test",
    "npm run build",
    "npm run lint",
    "npm run type-check",
    "npm run typecheck",
    "npm install",
    "npm ci",
    "npx tsc --noEmit",
    "npx eslint",
    "npx prettier",
]

DEFAULT_SEARCH_EXTENSIONS = ["ts", "tsx", "js", "jsx", "json", "css", "html", "py"]

# Never listed, even in recursive mode
DEFAULT_IGNORED_DIRS = ["node_modules"]

# Edit policies for apply_diff when the original text occurs more than once
EDIT_MATCH_FIRST = "first"
EDIT_MATCH_UNIQUE = "unique"


def is_protected(rel_str: str, protected_paths: list[str]) -> bool:
    """Check a root-relative path against the denylist.

    A path is protected if it equals an entry or lies under it. Both
    separator conventions are accepted on either side of the comparison.
    """
    candidates = {rel_str, rel_str.replace("\\", "/")}
    for entry in protected_paths:
        entry = entry.rstrip("/\\")
        for variant in {entry, entry.replace("\\", "/"), entry.replace("/", "\\")}:
            for candidate in candidates:
                if candidate == variant:
                    return True
                if candidate.startswith(variant + "/") or candidate.startswith(variant + "\\"):
                    return True
    return False


def is_allowed_command(command: str, allowed_commands: list[str]) -> bool:
    """Exact match, or an allowed prefix followed by a space."""
    return any(
        command == allowed or command.startswith(allowed + " ")
        for allowed in allowed_commands
    )


class FileGuard:
    """Confines file and command operations to one working tree."""

    def __init__(self, project_root: Path, config: SandboxConfigDict | None = None):
        config = config or {}
        self.project_root = Path(project_root).resolve()
        self.protected_paths = list(config.get("protected_paths", DEFAULT_PROTECTED_PATHS))
        self.allowed_commands = list(config.get("allowed_commands", DEFAULT_ALLOWED_COMMANDS))
        self.ignored_dirs = set(config.get("ignored_dirs", DEFAULT_IGNORED_DIRS))
        self.search_extensions = list(config.get("search_extensions", DEFAULT_SEARCH_EXTENSIONS))
        self.max_output_chars = config.get("max_output_chars", 10_000)
        self.max_command_output_bytes = config.get("max_command_output_bytes", 5 * 1024 * 1024)
        self.command_timeout = config.get("command_timeout_seconds", 300)
        self.edit_match = config.get("edit_match", EDIT_MATCH_FIRST)

    def resolve(self, relative_path: str) -> Path:
        """Resolve a caller-supplied path. Raises SecurityError on escape.

        Runs before any filesystem access for the target.
        """
        if not relative_path or relative_path == ".":
            return self.project_root

        if relative_path.startswith(("/", "\\")) or PureWindowsPath(relative_path).drive:
            raise SecurityError(f"Path traversal not allowed: {relative_path}")

        parts = PurePath(relative_path.replace("\\", "/")).parts
        if ".." in parts:
            raise SecurityError(f"Path traversal not allowed: {relative_path}")

        resolved = (self.project_root / relative_path).resolve()
        if resolved != self.project_root and not resolved.is_relative_to(self.project_root):
            raise SecurityError(f"Path traversal not allowed: {relative_path}")
        return resolved

    def relative(self, resolved: Path) -> str:
        return resolved.relative_to(self.project_root).as_posix()

    def validate_read(self, relative_path: str) -> Path:
        return self.resolve(relative_path)

    def validate_write(self, relative_path: str) -> Path:
        """Validate a write or edit target. Returns resolved absolute path."""
        resolved = self.resolve(relative_path)
        rel = self.relative(resolved)
        if is_protected(rel, self.protected_paths) or is_protected(relative_path, self.protected_paths):
            raise ProtectedPathError(f"Cannot modify protected path: {relative_path}")
        return resolved

    def validate_command(self, command: str) -> list[str]:
        """Check the allow-list and split the command into argv.

        Raises NotAllowedError without spawning anything.
        """
        command = command.strip()
        if not is_allowed_command(command, self.allowed_commands):
            raise NotAllowedError(f"Command not allowed: {command}")
        try:
            return shlex.split(command)
        except ValueError as e:
            raise NotAllowedError(f"Command could not be parsed: {e}")

    def is_ignored(self, name: str) -> bool:
        return name.startswith(".") or name in self.ignored_dirs
