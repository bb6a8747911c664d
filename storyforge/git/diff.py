"""Git diff operations."""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from storyforge.git.runner import run_git, GitResult
from storyforge.git.status import get_untracked_files


class DiffStatus(Enum):
    ADDED = "A"
    MODIFIED = "M"
    DELETED = "D"


@dataclass
class DiffEntry:
    """One changed path with its line counts."""
    path: str
    status: DiffStatus
    additions: int = 0
    deletions: int = 0


@dataclass
class DiffPaths:
    """Changed paths between two points, grouped by status."""
    entries: list[DiffEntry]

    @property
    def created(self) -> list[str]:
        return [e.path for e in self.entries if e.status == DiffStatus.ADDED]

    @property
    def modified(self) -> list[str]:
        return [e.path for e in self.entries if e.status == DiffStatus.MODIFIED]

    @property
    def deleted(self) -> list[str]:
        return [e.path for e in self.entries if e.status == DiffStatus.DELETED]

    def line_counts(self) -> dict[str, tuple[int, int]]:
        """path -> (added_lines, deleted_lines)"""
        return {e.path: (e.additions, e.deletions) for e in self.entries}


def _parse_name_status(output: str) -> list[tuple[DiffStatus, str]]:
    """Parse `--name-status -z` output (renames disabled)."""
    parts = output.split("\0")
    entries = []
    i = 0
    while i + 1 < len(parts):
        code = parts[i].strip()
        path = parts[i + 1]
        i += 2
        if not code or not path:
            continue
        # T (type change) and others are reported as modifications
        status = {"A": DiffStatus.ADDED, "D": DiffStatus.DELETED}.get(code[0], DiffStatus.MODIFIED)
        entries.append((status, path))
    return entries


def _parse_numstat(output: str) -> dict[str, tuple[int, int]]:
    """Parse `--numstat -z` output. Binary files report '-' and count as 0."""
    counts = {}
    for record in output.split("\0"):
        fields = record.split("\t", 2)
        if len(fields) != 3 or not fields[2]:
            continue
        added = int(fields[0]) if fields[0].isdigit() else 0
        deleted = int(fields[1]) if fields[1].isdigit() else 0
        counts[fields[2].strip("\n")] = (added, deleted)
    return counts


def get_diff_entries(
    worktree: Path,
    base: str,
    head: str | None = None,
    include_untracked: bool = False,
) -> tuple[list[DiffEntry], GitResult | None]:
    """
    List changed paths between base and head (or the working tree).

    Args:
        worktree: Repository path
        base: Base commit
        head: Target commit; None compares against the working tree
        include_untracked: Report untracked files as created (working tree only)

    Returns:
        (entries, failed_result) - failed_result is the GitResult of the first
        failing git call, or None on success
    """
    refs = [base] + ([head] if head else [])
    names = run_git(["diff", "--no-renames", "--name-status", "-z"] + refs, worktree)
    if not names.success:
        return [], names
    stats = run_git(["diff", "--no-renames", "--numstat", "-z"] + refs, worktree)
    if not stats.success:
        return [], stats

    counts = _parse_numstat(stats.stdout)
    entries = []
    for status, path in _parse_name_status(names.stdout):
        added, deleted = counts.get(path, (0, 0))
        entries.append(DiffEntry(path=path, status=status, additions=added, deletions=deleted))

    if include_untracked and head is None:
        known = {e.path for e in entries}
        for path in get_untracked_files(worktree):
            if path not in known:
                entries.append(DiffEntry(
                    path=path,
                    status=DiffStatus.ADDED,
                    additions=count_lines(worktree / path),
                ))

    return entries, None


def count_lines(path: Path) -> int:
    """Line count of a working-tree file (0 if missing or unreadable)."""
    try:
        with open(path, "rb") as handle:
            return sum(1 for _ in handle)
    except OSError:
        return 0
