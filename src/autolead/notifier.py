from __future__ import annotations

from typing import Protocol

import httpx
from loguru import logger


class NotifierError(Exception):
    """Raised when the hosting platform rejects a request."""
    pass


class Notifier(Protocol):
    """Issue/code-hosting platform sink. Never consulted for control decisions."""

    def post_comment(self, repo: str, issue_number: int, body: str) -> None: ...

    def add_label(self, repo: str, issue_number: int, label: str) -> None: ...

    def remove_label(self, repo: str, issue_number: int, label: str) -> None: ...

    def fetch_issue(self, repo: str, issue_number: int) -> dict: ...

    def fetch_comments(self, repo: str, issue_number: int) -> list[dict]: ...

    def create_pull_request(self, repo: str, title: str, head: str, base: str, body: str) -> dict: ...


class GitHubNotifier:
    """GitHub REST API over httpx."""

    def __init__(self, token: str, api_url: str = "https://api.github.com", timeout: float = 30.0):
        self.api_url = api_url.rstrip("/")
        self.headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        self.timeout = timeout

    def _request(self, method: str, path: str, json: dict | None = None) -> httpx.Response:
        url = f"{self.api_url}{path}"
        resp = httpx.request(method, url, json=json, headers=self.headers, timeout=self.timeout)
        if resp.status_code >= 400:
            try:
                message = resp.json().get("message", resp.text)
            except ValueError:
                message = resp.text
            raise NotifierError(f"GitHub API error ({resp.status_code}) on {method} {path}: {message}")
        return resp

    def post_comment(self, repo: str, issue_number: int, body: str) -> None:
        self._request("POST", f"/repos/{repo}/issues/{issue_number}/comments", {"body": body})

    def add_label(self, repo: str, issue_number: int, label: str) -> None:
        self._request("POST", f"/repos/{repo}/issues/{issue_number}/labels", {"labels": [label]})

    def remove_label(self, repo: str, issue_number: int, label: str) -> None:
        try:
            self._request("DELETE", f"/repos/{repo}/issues/{issue_number}/labels/{label}")
        except NotifierError as e:
            # Removing a label that is not set is a no-op
            if "(404)" not in str(e):
                raise

    def fetch_issue(self, repo: str, issue_number: int) -> dict:
        return self._request("GET", f"/repos/{repo}/issues/{issue_number}").json()

    def fetch_comments(self, repo: str, issue_number: int) -> list[dict]:
        return self._request("GET", f"/repos/{repo}/issues/{issue_number}/comments").json()

    def create_pull_request(self, repo: str, title: str, head: str, base: str, body: str) -> dict:
        data = self._request("POST", f"/repos/{repo}/pulls", {
            "title": title,
            "head": head,
            "base": base,
            "body": body,
        }).json()
        return {"number": data["number"], "url": data["html_url"]}


class LogNotifier:
    """Dry-run sink: logs and keeps everything it was asked to post."""

    def __init__(self):
        self.comments: list[tuple[str, int, str]] = []
        self.labels: dict[tuple[str, int], set[str]] = {}
        self.pull_requests: list[dict] = []

    def post_comment(self, repo: str, issue_number: int, body: str) -> None:
        logger.info(f"[NOTIFY] {repo}#{issue_number}: {body[:200]}")
        self.comments.append((repo, issue_number, body))

    def add_label(self, repo: str, issue_number: int, label: str) -> None:
        self.labels.setdefault((repo, issue_number), set()).add(label)

    def remove_label(self, repo: str, issue_number: int, label: str) -> None:
        self.labels.get((repo, issue_number), set()).discard(label)

    def fetch_issue(self, repo: str, issue_number: int) -> dict:
        return {"number": issue_number, "title": "", "body": ""}

    def fetch_comments(self, repo: str, issue_number: int) -> list[dict]:
        return [
            {"body": body}
            for r, n, body in self.comments
            if r == repo and n == issue_number
        ]

    def create_pull_request(self, repo: str, title: str, head: str, base: str, body: str) -> dict:
        number = len(self.pull_requests) + 1
        pr = {"number": number, "url": f"https://example.invalid/{repo}/pull/{number}",
              "title": title, "head": head, "base": base, "body": body}
        self.pull_requests.append(pr)
        logger.info(f"[NOTIFY] Pull request #{number} {head} -> {base}: {title}")
        return {"number": number, "url": pr["url"]}
