"""Git remote operations."""

from pathlib import Path

from storyforge.git.runner import run_git, GitResult

PUSH_TIMEOUT = 120


def push_set_upstream(worktree: Path, remote: str, branch: str) -> GitResult:
    """Push and set upstream tracking."""
    return run_git(["push", "--porcelain", "-u", remote, branch], worktree, timeout=PUSH_TIMEOUT)
