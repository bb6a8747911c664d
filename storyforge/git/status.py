"""Working tree status queries."""

from pathlib import Path

from storyforge.git.runner import GitResult, run_git


def status_porcelain(worktree: Path) -> GitResult:
    """`git status --porcelain`: empty stdout on success means a clean tree (ignored files excluded)."""
    return run_git(["status", "--porcelain"], worktree)


def get_untracked_files(worktree: Path) -> list[str]:
    """Untracked, non-ignored paths relative to the worktree; empty on failure."""
    result = run_git(["ls-files", "--others", "--exclude-standard", "-z"], worktree)
    if not result.success:
        return []
    return [path for path in result.stdout.split("\0") if path]
