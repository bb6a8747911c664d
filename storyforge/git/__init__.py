"""Git operations for storyforge.

Return type conventions:
- Functions returning GitResult: Caller must check .success before using output.
  Examples: stage_all(), check_staged_changes(), status_porcelain(), commit(),
  push_set_upstream()
- Functions returning bool: True on success/condition met, False otherwise.
  Examples: branch_exists()
- Functions returning parsed values (str, list): Return None/empty on failure.
  Examples: get_current_branch() -> None, get_untracked_files() -> []

GitAdapter wraps these for the workflow engine and raises GitCommandError
instead of returning failed results.
"""

from storyforge.git.runner import GitResult, run_git
from storyforge.git.status import (
    status_porcelain,
    get_untracked_files,
)
from storyforge.git.diff import (
    DiffEntry,
    DiffPaths,
    DiffStatus,
    get_diff_entries,
    count_lines,
)
from storyforge.git.branch import (
    get_current_branch,
    branch_exists,
    get_commit_sha,
    checkout_branch,
    is_default_branch,
)
from storyforge.git.commit import (
    stage_all,
    check_staged_changes,
    commit,
)
from storyforge.git.remote import (
    push_set_upstream,
)
from storyforge.git.adapter import (
    CommitOutcome,
    CommitResult,
    GitAdapter,
    GitCommandError,
    PushOutcome,
)

__all__ = [
    # runner
    "GitResult",
    "run_git",
    # status
    "status_porcelain",
    "get_untracked_files",
    # diff
    "DiffEntry",
    "DiffPaths",
    "DiffStatus",
    "get_diff_entries",
    "count_lines",
    # branch
    "get_current_branch",
    "branch_exists",
    "get_commit_sha",
    "checkout_branch",
    "is_default_branch",
    # commit
    "stage_all",
    "check_staged_changes",
    "commit",
    # remote
    "push_set_upstream",
    # adapter
    "CommitOutcome",
    "CommitResult",
    "GitAdapter",
    "GitCommandError",
    "PushOutcome",
]
