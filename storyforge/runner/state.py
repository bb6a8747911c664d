"""
Run state and its persistence.

RunState is the single JSON document (.storyforge/state.json) that lets a run
be resumed. It is rewritten atomically before every state-machine
transition. Readers such as `storyforge status` never need the lock because
a reader always sees either the previous or the next complete snapshot.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from storyforge.lib.atomic import atomic_write_json
from storyforge.lib.errors import ErrorKind, RunError, StatePersistenceFailed
from storyforge.lib.history import HistoryRecord, append_history, load_history
from storyforge.lib.knowledge import Knowledge
from storyforge.lib.usage import Usage
from storyforge.lib.validate import ValidationError, validate, validate_before_write

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "state.json"
RUNS_DIR_NAME = "runs"

TERMINAL_PHASES = ("completed", "failed")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_run_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S-") + uuid.uuid4().hex[:6]


@dataclass
class RunState:
    """Where a run is and what it has accumulated."""
    run_id: str
    phase: str = "idle"
    spec_path: Optional[str] = None
    spec_markdown_path: Optional[str] = None
    branch: Optional[str] = None
    current_story: Optional[str] = None
    iteration: int = 1
    review_count: int = 0
    baseline_commit: Optional[str] = None
    story_start_commit: Optional[str] = None
    last_commit: Optional[str] = None
    last_review: Optional[str] = None
    work_summary: Optional[str] = None
    last_output: Optional[str] = None
    pr_url: Optional[str] = None
    usage: Usage = field(default_factory=Usage)
    story_usage: dict[str, Usage] = field(default_factory=dict)
    knowledge: Knowledge = field(default_factory=Knowledge)
    last_error: Optional[RunError] = None
    started_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @classmethod
    def new(cls, spec_path: Optional[Path] = None, spec_markdown_path: Optional[Path] = None) -> "RunState":
        return cls(
            run_id=new_run_id(),
            spec_path=str(spec_path) if spec_path else None,
            spec_markdown_path=str(spec_markdown_path) if spec_markdown_path else None,
        )

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def add_usage(self, usage: Usage, story_id: Optional[str] = None) -> None:
        """Fold one invocation's usage into the run (and story) totals."""
        self.usage = self.usage.add(usage)
        if story_id:
            self.story_usage[story_id] = self.story_usage.get(story_id, Usage()).add(usage)

    def to_dict(self) -> dict:
        return {
            "runId": self.run_id,
            "phase": self.phase,
            "specPath": self.spec_path,
            "specMarkdownPath": self.spec_markdown_path,
            "branch": self.branch,
            "currentStory": self.current_story,
            "iteration": self.iteration,
            "reviewCount": self.review_count,
            "baselineCommit": self.baseline_commit,
            "storyStartCommit": self.story_start_commit,
            "lastCommit": self.last_commit,
            "lastReview": self.last_review,
            "workSummary": self.work_summary,
            "lastOutput": self.last_output,
            "prUrl": self.pr_url,
            "usage": self.usage.to_dict(),
            "storyUsage": {k: v.to_dict() for k, v in self.story_usage.items()},
            "knowledge": self.knowledge.to_dict(),
            "lastError": self.last_error.to_dict() if self.last_error else None,
            "startedAt": self.started_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RunState":
        last_error = data.get("lastError")
        return cls(
            run_id=data["runId"],
            phase=data.get("phase", "idle"),
            spec_path=data.get("specPath"),
            spec_markdown_path=data.get("specMarkdownPath"),
            branch=data.get("branch"),
            current_story=data.get("currentStory"),
            iteration=data.get("iteration", 1),
            review_count=data.get("reviewCount", 0),
            baseline_commit=data.get("baselineCommit"),
            story_start_commit=data.get("storyStartCommit"),
            last_commit=data.get("lastCommit"),
            last_review=data.get("lastReview"),
            work_summary=data.get("workSummary"),
            last_output=data.get("lastOutput"),
            pr_url=data.get("prUrl"),
            usage=Usage.from_dict(data.get("usage")),
            story_usage={k: Usage.from_dict(v) for k, v in (data.get("storyUsage") or {}).items()},
            knowledge=Knowledge.from_dict(data.get("knowledge")),
            last_error=RunError.from_dict(last_error) if last_error else None,
            started_at=data.get("startedAt") or utc_now(),
            updated_at=data.get("updatedAt") or utc_now(),
        )


class StateStore:
    """Reads and writes run state under one state directory."""

    def __init__(self, state_dir: Path):
        self.state_dir = state_dir
        self.path = state_dir / STATE_FILE_NAME
        self.runs_dir = state_dir / RUNS_DIR_NAME

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Optional[RunState]:
        """Load the current state, or None if there is no state file.

        Raises:
            RunError(Internal): the file exists but is unreadable or invalid
        """
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text())
            validate(data, "state")
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise RunError(ErrorKind.INTERNAL, f"Corrupt state file {self.path}: {e}") from None
        return RunState.from_dict(data)

    def save(self, state: RunState) -> None:
        """Atomically write state.

        Raises:
            StatePersistenceFailed: the write did not complete
        """
        state.updated_at = utc_now()
        data = state.to_dict()
        try:
            validate_before_write(data, "state", self.path)
            atomic_write_json(self.path, data)
        except (OSError, ValidationError) as e:
            raise StatePersistenceFailed(f"Could not write {self.path}: {e}") from e
        logger.debug(f"Saved state: phase={state.phase} story={state.current_story}")

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)

    def archive(self, state: RunState) -> Path:
        """Move a finished run into runs/<run id>.json."""
        target = self.runs_dir / f"{state.run_id}.json"
        try:
            atomic_write_json(target, state.to_dict())
        except OSError as e:
            raise StatePersistenceFailed(f"Could not archive run to {target}: {e}") from e
        self.clear()
        logger.info(f"Archived run {state.run_id} to {target}")
        return target

    def list_archived(self) -> list[RunState]:
        """Archived runs, newest first. Unreadable files are skipped."""
        if not self.runs_dir.exists():
            return []
        runs = []
        for path in self.runs_dir.glob("*.json"):
            try:
                runs.append(RunState.from_dict(json.loads(path.read_text())))
            except (OSError, json.JSONDecodeError, KeyError) as e:
                logger.warning(f"Skipping unreadable archived run {path}: {e}")
        runs.sort(key=lambda s: s.started_at, reverse=True)
        return runs

    def append_history(self, record: HistoryRecord) -> None:
        append_history(self.state_dir, record)

    def history(self) -> list[HistoryRecord]:
        return load_history(self.state_dir)
