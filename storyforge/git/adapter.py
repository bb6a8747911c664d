"""
GitAdapter: the narrow git interface the workflow engine depends on.

The module-level helpers in storyforge.git return GitResult and leave error
handling to the caller. The adapter turns failures into GitCommandError so
the engine sees a single typed error carrying the subcommand and stderr.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from storyforge.git.branch import (
    branch_exists,
    checkout_branch,
    get_commit_sha,
    get_current_branch,
)
from storyforge.git.commit import CHANGES_STAGED, NOTHING_STAGED, check_staged_changes, commit, stage_all
from storyforge.git.diff import DiffPaths, count_lines, get_diff_entries
from storyforge.git.remote import push_set_upstream
from storyforge.git.runner import GitResult
from storyforge.git.status import status_porcelain
from storyforge.lib.errors import ErrorKind, RunError

logger = logging.getLogger(__name__)


class GitCommandError(RunError):
    """A git subcommand exited non-zero."""

    def __init__(self, result: GitResult, message: str = ""):
        self.subcommand = result.subcommand
        detail = message or f"git {result.subcommand} failed"
        stderr = result.stderr.strip()
        if stderr:
            detail = f"{detail}: {stderr.splitlines()[0]}"
        super().__init__(
            ErrorKind.GIT_ERROR,
            detail,
            exit_code=result.returncode,
            stderr=result.stderr,
        )


class CommitOutcome(Enum):
    COMMITTED = "committed"
    NOTHING_TO_COMMIT = "nothing_to_commit"


@dataclass
class CommitResult:
    outcome: CommitOutcome
    commit_hash: Optional[str] = None


class PushOutcome(Enum):
    PUSHED = "pushed"
    ALREADY_UP_TO_DATE = "already_up_to_date"


class GitAdapter:
    """Git operations against one working copy."""

    def __init__(self, worktree: Path):
        self.worktree = worktree

    def current_branch(self) -> Optional[str]:
        return get_current_branch(self.worktree)

    def is_clean(self) -> bool:
        result = status_porcelain(self.worktree)
        if not result.success:
            raise GitCommandError(result, f"could not read status of {self.worktree}")
        return not result.stdout.strip()

    def head_commit(self) -> str:
        sha = get_commit_sha(self.worktree)
        if sha is None:
            raise RunError(ErrorKind.GIT_ERROR, f"could not resolve HEAD in {self.worktree}")
        return sha

    def ensure_branch(self, branch: str) -> None:
        """Switch to branch, creating it from HEAD when it does not exist."""
        if self.current_branch() == branch:
            return
        create = not branch_exists(self.worktree, branch)
        result = checkout_branch(self.worktree, branch, create=create)
        if not result.success:
            raise GitCommandError(result, f"could not switch to branch {branch}")
        logger.info(f"{'Created' if create else 'Switched to'} branch {branch}")

    def switch_to(self, branch: str) -> None:
        """Check out an existing branch, local or tracked from a remote."""
        if self.current_branch() == branch:
            return
        result = checkout_branch(self.worktree, branch)
        if not result.success:
            raise GitCommandError(result, f"could not switch to branch {branch}")
        logger.info(f"Switched to branch {branch}")

    def diff_paths(self, baseline: str, head: Optional[str] = None) -> DiffPaths:
        """Paths changed since baseline, up to head or the working tree."""
        entries, failed = get_diff_entries(
            self.worktree, baseline, head, include_untracked=head is None
        )
        if failed is not None:
            raise GitCommandError(failed, f"could not diff against {baseline[:12]}")
        return DiffPaths(entries)

    def line_count(self, path: str) -> int:
        return count_lines(self.worktree / path)

    def stage_and_commit(self, message: str) -> CommitResult:
        """Stage everything and commit. A clean tree is not an error."""
        staged = stage_all(self.worktree)
        if not staged.success:
            raise GitCommandError(staged)
        check = check_staged_changes(self.worktree)
        if check.timed_out or check.returncode not in (NOTHING_STAGED, CHANGES_STAGED):
            raise GitCommandError(check, "could not inspect staged changes")
        if check.returncode == NOTHING_STAGED:
            return CommitResult(CommitOutcome.NOTHING_TO_COMMIT)

        result = commit(self.worktree, message)
        if not result.success:
            raise GitCommandError(result)
        return CommitResult(CommitOutcome.COMMITTED, self.head_commit())

    def push(self, branch: str, remote: str = "origin") -> PushOutcome:
        result = push_set_upstream(self.worktree, remote, branch)
        if not result.success:
            raise GitCommandError(result, f"could not push {branch} to {remote}")
        output = result.stdout + result.stderr
        up_to_date = "up to date" in output or "up-to-date" in output
        return PushOutcome.ALREADY_UP_TO_DATE if up_to_date else PushOutcome.PUSHED
