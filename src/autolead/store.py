from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Protocol
from urllib.parse import quote

from autolead.session import (
    Artifacts,
    Message,
    Phase,
    Session,
    Status,
    merge_artifacts,
    now_iso,
)


class StoreError(Exception):
    """Raised when the session store cannot be read or written."""
    pass


class SessionExistsError(StoreError):
    pass


class SessionNotFoundError(StoreError):
    pass


class SessionStore(Protocol):
    """CRUD contract the engine consumes. Operations are atomic per session."""

    def get(self, repo: str, issue_number: int) -> Session | None: ...

    def create(self, repo: str, issue_number: int, artifacts: Artifacts | None = None) -> Session: ...

    def update_phase(self, repo: str, issue_number: int, phase: Phase) -> Session: ...

    def update_status(self, repo: str, issue_number: int, status: Status) -> Session: ...

    def append_message(self, repo: str, issue_number: int, message: Message) -> Session: ...

    def merge_artifacts(self, repo: str, issue_number: int, updates: dict, writer: str) -> Session: ...

    def list_sessions(self) -> list[Session]: ...


class JsonSessionStore:
    """One JSON file per (repo, issue) under a directory."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _path(self, repo: str, issue_number: int) -> Path:
        # Percent-encoding keeps distinct repo names in distinct files
        safe_repo = quote(repo, safe="")
        return self.directory / f"{safe_repo}__{issue_number}.json"

    def _load(self, path: Path) -> Session:
        try:
            return Session.from_dict(json.loads(path.read_text()))
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StoreError(f"Cannot read session file {path}: {e}")

    def _save(self, session: Session) -> Session:
        session.updated_at = now_iso()
        path = self._path(session.repo, session.issue_number)
        tmp = path.with_suffix(".json.tmp")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(session.to_dict(), indent=2) + "\n")
            os.replace(tmp, path)
        except OSError as e:
            raise StoreError(f"Cannot write session file {path}: {e}")
        return session

    def _require(self, repo: str, issue_number: int) -> Session:
        session = self.get(repo, issue_number)
        if session is None:
            raise SessionNotFoundError(f"No session for {repo}#{issue_number}")
        return session

    def get(self, repo: str, issue_number: int) -> Session | None:
        path = self._path(repo, issue_number)
        if not path.exists():
            return None
        return self._load(path)

    def create(self, repo: str, issue_number: int, artifacts: Artifacts | None = None) -> Session:
        if self._path(repo, issue_number).exists():
            raise SessionExistsError(f"Session already exists for {repo}#{issue_number}")
        session = Session(repo=repo, issue_number=issue_number, artifacts=artifacts or Artifacts())
        return self._save(session)

    def update_phase(self, repo: str, issue_number: int, phase: Phase) -> Session:
        session = self._require(repo, issue_number)
        session.phase = phase
        return self._save(session)

    def update_status(self, repo: str, issue_number: int, status: Status) -> Session:
        session = self._require(repo, issue_number)
        session.status = status
        return self._save(session)

    def append_message(self, repo: str, issue_number: int, message: Message) -> Session:
        session = self._require(repo, issue_number)
        session.conversation.append(message)
        return self._save(session)

    def merge_artifacts(self, repo: str, issue_number: int, updates: dict, writer: str) -> Session:
        session = self._require(repo, issue_number)
        session.artifacts = merge_artifacts(session.artifacts, updates, writer)
        return self._save(session)

    def list_sessions(self) -> list[Session]:
        if not self.directory.exists():
            return []
        return [self._load(p) for p in sorted(self.directory.glob("*.json"))]
