"""Git subprocess wrappers used to inspect the agent's working tree."""

import subprocess
from pathlib import Path


class GitError(Exception):
    """Raised when a git command fails."""


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {e.stderr.strip()}") from e
    except OSError as e:
        raise GitError(f"git {' '.join(args)} failed: {e}") from e


def is_git_repo(cwd: str | Path) -> bool:
    """Check if a directory is inside a git working tree."""
    try:
        return run_git(["rev-parse", "--is-inside-work-tree"], cwd=cwd) == "true"
    except GitError:
        return False


def has_uncommitted_changes(cwd: str | Path) -> bool:
    """Check for staged, unstaged or untracked changes."""
    try:
        return bool(run_git(["status", "--porcelain"], cwd=cwd))
    except GitError:
        return False


def changed_files(cwd: str | Path) -> list[str]:
    """Files touched by the last commit, or by the working tree if there is no parent commit."""
    try:
        output = run_git(["diff", "--name-only", "HEAD~1", "HEAD"], cwd=cwd)
    except GitError:
        output = run_git(["diff", "--name-only", "HEAD"], cwd=cwd)
    return [line.strip() for line in output.split("\n") if line.strip()]
