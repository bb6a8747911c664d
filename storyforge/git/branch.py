"""Git branch operations."""

from pathlib import Path

from storyforge.git.runner import run_git, GitResult

DEFAULT_BRANCHES = ("main", "master")


def get_current_branch(worktree: Path) -> str | None:
    """Get the current branch name, or None if detached HEAD."""
    result = run_git(["branch", "--show-current"], worktree)
    if result.success:
        return result.stdout.strip() or None
    return None


def branch_exists(repo: Path, branch: str) -> bool:
    """Check if a local branch exists."""
    result = run_git(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], repo)
    return result.success


def get_commit_sha(worktree: Path, ref: str = "HEAD") -> str | None:
    """Get the SHA of a ref."""
    result = run_git(["rev-parse", ref], worktree)
    if result.success:
        return result.stdout.strip()
    return None


def checkout_branch(repo: Path, branch: str, create: bool = False) -> GitResult:
    """Check out a branch, optionally creating it from HEAD."""
    args = ["checkout", "-b", branch] if create else ["checkout", branch]
    return run_git(args, repo)


def is_default_branch(branch: str | None) -> bool:
    return branch in DEFAULT_BRANCHES
