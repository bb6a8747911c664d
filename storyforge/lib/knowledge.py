"""
Project knowledge accumulated across stories.

Two sources feed the store:
- git diffs after each commit (which files changed, by how much)
- the agent's structured work summary (purpose, key symbols, decisions, patterns)

The rendered digest is injected into later implement prompts so the agent
knows what earlier stories built.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from storyforge.git.diff import DiffEntry, DiffStatus
from storyforge.lib.summary import AgentHints, extract_hints, truncate

logger = logging.getLogger(__name__)

DEFAULT_DECISIONS_LIMIT = 10
DEFAULT_STORIES_LIMIT = 5
DEFAULT_FILES_LIMIT = 15


@dataclass
class FileInfo:
    purpose: str = ""
    key_symbols: list[str] = field(default_factory=list)
    touched_by: list[str] = field(default_factory=list)
    line_count: int = 0

    def to_dict(self) -> dict:
        return {
            "purpose": self.purpose,
            "keySymbols": list(self.key_symbols),
            "touchedBy": list(self.touched_by),
            "lineCount": self.line_count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FileInfo":
        return cls(
            purpose=data.get("purpose", ""),
            key_symbols=list(data.get("keySymbols", [])),
            touched_by=list(data.get("touchedBy", [])),
            line_count=data.get("lineCount", 0),
        )


@dataclass
class Decision:
    story_id: str
    topic: str
    choice: str
    rationale: str = ""

    def to_dict(self) -> dict:
        return {
            "storyId": self.story_id,
            "topic": self.topic,
            "choice": self.choice,
            "rationale": self.rationale,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Decision":
        return cls(
            story_id=data.get("storyId", ""),
            topic=data.get("topic", ""),
            choice=data.get("choice", ""),
            rationale=data.get("rationale", ""),
        )


@dataclass
class Pattern:
    story_id: str
    description: str
    example_file: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "storyId": self.story_id,
            "description": self.description,
            "exampleFile": self.example_file,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Pattern":
        return cls(
            story_id=data.get("storyId", ""),
            description=data.get("description", ""),
            example_file=data.get("exampleFile"),
        )


@dataclass
class FileChange:
    path: str
    additions: int = 0
    deletions: int = 0
    purpose: Optional[str] = None
    key_symbols: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "additions": self.additions,
            "deletions": self.deletions,
            "purpose": self.purpose,
            "keySymbols": list(self.key_symbols),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FileChange":
        return cls(
            path=data.get("path", ""),
            additions=data.get("additions", 0),
            deletions=data.get("deletions", 0),
            purpose=data.get("purpose"),
            key_symbols=list(data.get("keySymbols", [])),
        )


@dataclass
class StoryChanges:
    story_id: str
    files_created: list[FileChange] = field(default_factory=list)
    files_modified: list[FileChange] = field(default_factory=list)
    files_deleted: list[str] = field(default_factory=list)
    commit_hash: Optional[str] = None
    summary: Optional[str] = None

    def paths(self) -> list[str]:
        return (
            [c.path for c in self.files_created]
            + [c.path for c in self.files_modified]
            + list(self.files_deleted)
        )

    def to_dict(self) -> dict:
        return {
            "storyId": self.story_id,
            "filesCreated": [c.to_dict() for c in self.files_created],
            "filesModified": [c.to_dict() for c in self.files_modified],
            "filesDeleted": list(self.files_deleted),
            "commitHash": self.commit_hash,
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StoryChanges":
        return cls(
            story_id=data.get("storyId", ""),
            files_created=[FileChange.from_dict(c) for c in data.get("filesCreated", [])],
            files_modified=[FileChange.from_dict(c) for c in data.get("filesModified", [])],
            files_deleted=list(data.get("filesDeleted", [])),
            commit_hash=data.get("commitHash"),
            summary=data.get("summary"),
        )


def _add_unique(items: list[str], values: Iterable[str]) -> None:
    """Append values not already present, keeping first-seen order."""
    for value in values:
        if value and value not in items:
            items.append(value)


@dataclass
class Knowledge:
    """Files, decisions, patterns and per-story changes for one run."""
    files: dict[str, FileInfo] = field(default_factory=dict)
    decisions: list[Decision] = field(default_factory=list)
    patterns: list[Pattern] = field(default_factory=list)
    story_changes: list[StoryChanges] = field(default_factory=list)
    baseline_commit: Optional[str] = None

    def baseline(self, commit: str) -> bool:
        """Record the run's baseline commit. Only the first call has effect."""
        if self.baseline_commit is not None:
            if self.baseline_commit != commit:
                logger.debug(f"Baseline already {self.baseline_commit[:12]}, ignoring {commit[:12]}")
            return False
        self.baseline_commit = commit
        return True

    def our_files(self) -> set[str]:
        """Every path a completed story created, modified or deleted."""
        paths: set[str] = set()
        for changes in self.story_changes:
            paths.update(changes.paths())
        return paths

    def filter_our_changes(
        self,
        entries: list[DiffEntry],
        declared: Iterable[str] = (),
    ) -> list[DiffEntry]:
        """Keep new files and files this run has touched or the agent declared.

        Used when diffing a dirty working tree, which may also contain
        edits made outside the run.
        """
        ours = self.our_files() | set(declared)
        return [e for e in entries if e.status == DiffStatus.ADDED or e.path in ours]

    def changes_for(self, story_id: str) -> Optional[StoryChanges]:
        for changes in self.story_changes:
            if changes.story_id == story_id:
                return changes
        return None

    def record_story_changes(
        self,
        story_id: str,
        diff: list[DiffEntry],
        commit_hash: Optional[str],
        hints: Optional[AgentHints] = None,
        line_counts: Optional[dict[str, int]] = None,
    ) -> StoryChanges:
        """Fold one story's diff into the file map and store its change set.

        Recording the same story twice (e.g. after a resume) replaces the
        earlier change set.
        """
        file_hints = hints.file_hints() if hints else {}
        line_counts = line_counts or {}
        changes = StoryChanges(
            story_id=story_id,
            commit_hash=commit_hash,
            summary=hints.summary if hints else None,
        )

        for entry in diff:
            if entry.status == DiffStatus.DELETED:
                changes.files_deleted.append(entry.path)
                self.files.pop(entry.path, None)
                continue

            hint = file_hints.get(entry.path)
            change = FileChange(
                path=entry.path,
                additions=entry.additions,
                deletions=entry.deletions,
                purpose=(hint.purpose or None) if hint else None,
                key_symbols=list(hint.key_symbols) if hint else [],
            )
            if entry.status == DiffStatus.ADDED:
                changes.files_created.append(change)
            else:
                changes.files_modified.append(change)

            info = self.files.setdefault(entry.path, FileInfo())
            if change.purpose:
                info.purpose = change.purpose
            _add_unique(info.key_symbols, change.key_symbols)
            _add_unique(info.touched_by, [story_id])
            if entry.path in line_counts:
                info.line_count = line_counts[entry.path]

        self.story_changes = [c for c in self.story_changes if c.story_id != story_id]
        self.story_changes.append(changes)
        return changes

    def merge_agent_extract(self, story_id: str, summary: "str | AgentHints") -> AgentHints:
        """Merge decisions, patterns and file descriptions from a work summary.

        File entries are only updated for paths already in the file map;
        touched_by is left to record_story_changes.
        """
        hints = summary if isinstance(summary, AgentHints) else extract_hints(summary)

        for path, hint in hints.file_hints().items():
            info = self.files.get(path)
            if info is None:
                continue
            if hint.purpose:
                info.purpose = hint.purpose
            _add_unique(info.key_symbols, hint.key_symbols)

        for d in hints.decisions:
            decision = Decision(story_id, d.topic, d.choice, d.rationale)
            if decision not in self.decisions:
                self.decisions.append(decision)

        for p in hints.patterns:
            pattern = Pattern(story_id, p.description, p.example_file)
            if pattern not in self.patterns:
                self.patterns.append(pattern)

        return hints

    def snapshot(self) -> "Knowledge":
        """Independent deep copy."""
        return copy.deepcopy(self)

    def is_empty(self) -> bool:
        return not (self.files or self.decisions or self.patterns or self.story_changes)

    def render_context(
        self,
        decisions_limit: int = DEFAULT_DECISIONS_LIMIT,
        stories_limit: int = DEFAULT_STORIES_LIMIT,
        files_limit: int = DEFAULT_FILES_LIMIT,
    ) -> str:
        """Bounded markdown digest for prompt injection ('' when empty)."""
        if self.is_empty():
            return ""

        sections = []

        if self.files:
            ranked = sorted(
                self.files.items(),
                key=lambda item: (-len(item[1].touched_by), item[0]),
            )[:files_limit]
            lines = [
                "## Files Touched So Far",
                "",
                "| Path | Purpose | Key Symbols | Stories |",
                "|------|---------|-------------|---------|",
            ]
            for path, info in ranked:
                symbols = truncate(", ".join(info.key_symbols), 40) if info.key_symbols else "-"
                stories = ", ".join(info.touched_by) or "-"
                purpose = truncate(info.purpose, 60) if info.purpose else "-"
                lines.append(f"| {path} | {purpose} | {symbols} | {stories} |")
            sections.append("\n".join(lines))

        if self.decisions:
            lines = ["## Decisions", ""]
            for d in self.decisions[-decisions_limit:]:
                rationale = f" ({truncate(d.rationale, 80)})" if d.rationale else ""
                lines.append(f"- **{d.topic}**: {d.choice}{rationale}")
            sections.append("\n".join(lines))

        if self.patterns:
            lines = ["## Patterns", ""]
            for p in self.patterns[-decisions_limit:]:
                example = f" (see {p.example_file})" if p.example_file else ""
                lines.append(f"- {p.description}{example}")
            sections.append("\n".join(lines))

        if self.story_changes:
            lines = ["## Recent Work", ""]
            for changes in self.story_changes[-stories_limit:]:
                files = (
                    [f"+{c.path}" for c in changes.files_created]
                    + [f"~{c.path}" for c in changes.files_modified]
                    + [f"-{p}" for p in changes.files_deleted]
                )
                files_str = truncate(", ".join(files), 120) if files else "no file changes"
                lines.append(f"- **{changes.story_id}**: {files_str}")
                if changes.summary:
                    lines.append(f"  {truncate(changes.summary, 200)}")
            sections.append("\n".join(lines))

        return "\n\n".join(sections) + "\n"

    def to_dict(self) -> dict:
        return {
            "files": {path: info.to_dict() for path, info in self.files.items()},
            "decisions": [d.to_dict() for d in self.decisions],
            "patterns": [p.to_dict() for p in self.patterns],
            "storyChanges": [c.to_dict() for c in self.story_changes],
            "baselineCommit": self.baseline_commit,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "Knowledge":
        if not data:
            return cls()
        return cls(
            files={path: FileInfo.from_dict(info) for path, info in data.get("files", {}).items()},
            decisions=[Decision.from_dict(d) for d in data.get("decisions", [])],
            patterns=[Pattern.from_dict(p) for p in data.get("patterns", [])],
            story_changes=[StoryChanges.from_dict(c) for c in data.get("storyChanges", [])],
            baseline_commit=data.get("baselineCommit"),
        )
