from __future__ import annotations

import copy
import json
import os
from pathlib import Path

from autolead.escalation import DEFAULT_KEYWORDS
from autolead.fileguard import (
    DEFAULT_ALLOWED_COMMANDS,
    DEFAULT_IGNORED_DIRS,
    DEFAULT_PROTECTED_PATHS,
    DEFAULT_SEARCH_EXTENSIONS,
    EDIT_MATCH_FIRST,
)
from autolead.types import ConfigDict

CONFIG_DIR_NAME = ".autolead"
CONFIG_FILE_NAME = "config.json"

DEFAULT_CONFIG: dict = {
    "model": {
        "provider": "anthropic",
        "base_url": "https://api.anthropic.com",
        "model": "claude-sonnet-4-20250514",
        "api_key": "$ANTHROPIC_API_KEY",
    },
    "repo_path": ".",
    "sessions_dir": f"{CONFIG_DIR_NAME}/sessions",
    "sandbox": {
        "protected_paths": DEFAULT_PROTECTED_PATHS,
        "allowed_commands": DEFAULT_ALLOWED_COMMANDS,
        "ignored_dirs": DEFAULT_IGNORED_DIRS,
        "search_extensions": DEFAULT_SEARCH_EXTENSIONS,
        "max_output_chars": 10_000,
        "max_command_output_bytes": 5 * 1024 * 1024,
        "command_timeout_seconds": 300,
        "edit_match": EDIT_MATCH_FIRST,
    },
    "loop": {
        "exploratory_max_iterations": 6,
        "exploratory_max_tokens": 2000,
        "implementer_max_iterations": 100,
        "implementer_max_tokens": 4096,
    },
    "lead": {
        "max_iterations": 25,
        "max_tokens": 2048,
        "recent_delegations": 5,
    },
    "escalation": {
        "enabled": True,
        "score_threshold": 25,
        "file_count_threshold": 3,
        "keywords": DEFAULT_KEYWORDS,
        "command": ["claude", "--print"],
        "execute_flags": ["--dangerously-skip-permissions"],
        "plan_timeout_seconds": 300,
        "execute_timeout_seconds": 600,
    },
    "tester": {
        "checks": [
            {"name": "Type Check", "command": "npx tsc --noEmit", "critical": True},
            {"name": "Lint", "command": "npm run lint", "critical": False},
            {"name": "Build", "command": "npm run build", "critical": True},
            {"name": "Tests", "command": "npm test", "critical": True},
        ],
    },
    "github": {
        "api_url": "https://api.github.com",
        "token": "$GITHUB_TOKEN",
        "base_branch": "main",
        "branch_prefix": "agent/issue-",
        "author_name": "autolead",
        "author_email": "autolead@users.noreply.github.com",
    },
}


def read_dotenv(dotenv_path: Path) -> dict[str, str]:
    """Read a .env file and return key=value pairs as a dict."""
    env = {}
    if not dotenv_path.exists():
        return env
    for line in dotenv_path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip()
        # Strip surrounding quotes
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]
        env[key] = value
    return env


def resolve_secret(value: str | None, dotenv_path: Path) -> str | None:
    """Resolve "$VAR" from .env first, then the environment."""
    if not value or not value.startswith("$"):
        return value
    env_var = value[1:]
    return read_dotenv(dotenv_path).get(env_var) or os.environ.get(env_var)


def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def find_config_dir(cwd: Path) -> Path | None:
    config_dir = cwd / CONFIG_DIR_NAME
    if config_dir.is_dir():
        return config_dir
    return None


def load_config(config_dir: Path) -> ConfigDict:
    """Load config.json over the defaults and resolve secrets and paths.

    Missing secrets resolve to None; callers that need them fail loudly.
    """
    config_path = config_dir / CONFIG_FILE_NAME
    user_config = {}
    if config_path.exists():
        try:
            user_config = json.loads(config_path.read_text())
        except json.JSONDecodeError as e:
            raise SystemExit(f"Error: invalid JSON in {config_path}: {e}")
    config = _deep_merge(DEFAULT_CONFIG, user_config)

    project_root = config_dir.parent.resolve()
    dotenv_path = project_root / ".env"
    config["model"]["api_key"] = resolve_secret(config["model"].get("api_key"), dotenv_path)
    config["github"]["token"] = resolve_secret(config["github"].get("token"), dotenv_path)
    config["project_root"] = str(project_root)
    config["repo_path"] = str((project_root / config["repo_path"]).resolve())
    config["sessions_dir"] = str((project_root / config["sessions_dir"]).resolve())
    return config


def write_default_config(config_dir: Path) -> Path:
    """Create config_dir/config.json with the default model and sandbox sections."""
    config_dir.mkdir(parents=True, exist_ok=True)
    path = config_dir / CONFIG_FILE_NAME
    if path.exists():
        raise SystemExit(f"Error: {path} already exists.")
    starter = {
        "model": DEFAULT_CONFIG["model"],
        "repo_path": DEFAULT_CONFIG["repo_path"],
        "sandbox": {
            "protected_paths": DEFAULT_PROTECTED_PATHS,
            "allowed_commands": DEFAULT_ALLOWED_COMMANDS,
        },
        "tester": DEFAULT_CONFIG["tester"],
    }
    path.write_text(json.dumps(starter, indent=2) + "\n")
    return path
