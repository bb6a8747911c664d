"""Git commit operations."""

from pathlib import Path

from storyforge.git.runner import run_git, GitResult

# `git diff --cached --quiet` exit codes
NOTHING_STAGED = 0
CHANGES_STAGED = 1


def stage_all(worktree: Path) -> GitResult:
    """Stage all changes (new, modified, deleted)."""
    return run_git(["add", "-A"], worktree)


def check_staged_changes(worktree: Path) -> GitResult:
    """Exit code NOTHING_STAGED or CHANGES_STAGED; anything else is a failure."""
    return run_git(["diff", "--cached", "--quiet"], worktree)


def commit(worktree: Path, message: str) -> GitResult:
    """Create a commit with the given message."""
    return run_git(["commit", "-m", message], worktree)
