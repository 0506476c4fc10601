import subprocess
from pathlib import Path


class GitError(Exception):
    """Raised when a git operation fails."""
    pass


def _git(repo_path: Path, *args: str) -> subprocess.CompletedProcess:
    """Run a git command in the repository. Raises GitError on failure."""
    try:
        return subprocess.run(
            ["git", *args],
            cwd=repo_path,
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as e:
        raise GitError(e.stderr.strip() or str(e))
    except FileNotFoundError:
        raise GitError("git is not installed")


def branch_name(prefix: str, issue_number: int) -> str:
    """Branch for an issue: agent/issue-42"""
    return f"{prefix}{issue_number}"


def porcelain_paths(output: str) -> list[str]:
    """Paths from `git status --porcelain` output (rename targets for renames)."""
    files = []
    for line in output.splitlines():
        if len(line) <= 3:
            continue
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        files.append(path.strip().strip('"'))
    return files


def changed_files(repo_path: Path) -> list[str] | None:
    """Uncommitted paths, or None when repo_path is not a git work tree."""
    try:
        result = _git(repo_path, "status", "--porcelain")
    except GitError:
        return None
    return porcelain_paths(result.stdout)


def branch_exists(repo_path: Path, branch: str) -> bool:
    result = subprocess.run(
        ["git", "rev-parse", "--verify", "--quiet", branch],
        cwd=repo_path,
        capture_output=True,
        text=True,
    )
    return result.returncode == 0


def checkout_branch(repo_path: Path, branch: str) -> None:
    """Switch to branch, creating it from HEAD if it does not exist."""
    if branch_exists(repo_path, branch):
        _git(repo_path, "checkout", branch)
    else:
        _git(repo_path, "checkout", "-b", branch)


def commit_all(repo_path: Path, message: str, author_name: str, author_email: str) -> str:
    """Stage everything and commit. Returns the new commit hash."""
    _git(repo_path, "add", "-A")
    _git(
        repo_path,
        "-c", f"user.name={author_name}",
        "-c", f"user.email={author_email}",
        "commit", "-m", message,
    )
    return _git(repo_path, "rev-parse", "HEAD").stdout.strip()


def push_branch(repo_path: Path, branch: str, remote: str = "origin") -> None:
    _git(repo_path, "push", "-u", remote, branch, "--force")
