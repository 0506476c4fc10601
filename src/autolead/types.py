from __future__ import annotations

from typing import NotRequired, TypedDict


class ModelConfigDict(TypedDict):
    provider: NotRequired[str]
    base_url: str
    model: str
    api_key: NotRequired[str | None]


class SandboxConfigDict(TypedDict):
    protected_paths: NotRequired[list[str]]
    allowed_commands: NotRequired[list[str]]
    ignored_dirs: NotRequired[list[str]]
    search_extensions: NotRequired[list[str]]
    max_output_chars: NotRequired[int]
    max_command_output_bytes: NotRequired[int]
    command_timeout_seconds: NotRequired[int]
    edit_match: NotRequired[str]          # "first" or "unique"


class LoopConfigDict(TypedDict):
    exploratory_max_iterations: int
    exploratory_max_tokens: int
    implementer_max_iterations: int
    implementer_max_tokens: int


class LeadConfigDict(TypedDict):
    max_iterations: int
    max_tokens: int
    recent_delegations: int


class EscalationConfigDict(TypedDict):
    enabled: NotRequired[bool]
    score_threshold: NotRequired[int]
    file_count_threshold: NotRequired[int]
    keywords: NotRequired[list[str]]
    command: NotRequired[list[str]]
    execute_flags: NotRequired[list[str]]
    plan_timeout_seconds: NotRequired[int]
    execute_timeout_seconds: NotRequired[int]


class CheckDict(TypedDict):
    name: str
    command: str
    critical: NotRequired[bool]


class TesterConfigDict(TypedDict):
    checks: list[CheckDict]


class GitHubConfigDict(TypedDict):
    api_url: str
    token: str | None
    base_branch: str
    branch_prefix: str
    author_name: str
    author_email: str


class ConfigDict(TypedDict):
    model: ModelConfigDict
    repo_path: str
    sessions_dir: str
    project_root: NotRequired[str]
    sandbox: SandboxConfigDict
    loop: LoopConfigDict
    lead: LeadConfigDict
    escalation: EscalationConfigDict
    tester: TesterConfigDict
    github: GitHubConfigDict


class ToolCallDict(TypedDict):
    id: str
    name: str
    input: dict


class CheckResultDict(TypedDict):
    name: str
    command: str
    critical: bool
    passed: bool
    output: str
    error_kind: str | None
