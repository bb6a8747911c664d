"""
Run history log.

history.jsonl gets one record each time a run reaches Completed or Failed.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from storyforge.lib.usage import Usage

logger = logging.getLogger(__name__)

HISTORY_FILE_NAME = "history.jsonl"


@dataclass
class HistoryRecord:
    run_id: str
    started_at: str
    ended_at: str
    outcome: str  # "completed" or "failed"
    stories_done: int
    stories_total: int
    usage: Usage
    error_kind: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "runId": self.run_id,
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
            "outcome": self.outcome,
            "storiesDone": self.stories_done,
            "storiesTotal": self.stories_total,
            "usage": self.usage.to_dict(),
        }
        if self.error_kind:
            data["errorKind"] = self.error_kind
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "HistoryRecord":
        return cls(
            run_id=data.get("runId", ""),
            started_at=data["startedAt"],
            ended_at=data["endedAt"],
            outcome=data["outcome"],
            stories_done=data.get("storiesDone", 0),
            stories_total=data.get("storiesTotal", 0),
            usage=Usage.from_dict(data.get("usage")),
            error_kind=data.get("errorKind"),
        )


def append_history(state_dir: Path, record: HistoryRecord) -> None:
    state_dir.mkdir(parents=True, exist_ok=True)
    with open(state_dir / HISTORY_FILE_NAME, "a") as f:
        f.write(json.dumps(record.to_dict()) + "\n")
        f.flush()


def load_history(state_dir: Path) -> list[HistoryRecord]:
    """Load history records. Skips corrupted lines."""
    history_file = state_dir / HISTORY_FILE_NAME
    if not history_file.exists():
        return []

    records = []
    for line_num, line in enumerate(history_file.read_text().splitlines(), 1):
        if not line.strip():
            continue
        try:
            records.append(HistoryRecord.from_dict(json.loads(line)))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping corrupted history line {line_num} in {history_file}: {e}")
    return records
