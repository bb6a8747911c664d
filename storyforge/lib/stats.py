"""
Stats tracking for agent time and token usage.

Records one line per agent invocation to stats.jsonl in the state directory.
"""

import json
import logging
from collections import defaultdict
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

STATS_FILE_NAME = "stats.jsonl"


@dataclass
class AgentStats:
    """Stats for a single agent invocation."""
    timestamp: str
    run_id: str
    phase: str
    elapsed_seconds: float
    outcome: str
    story_id: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    model: Optional[str] = None


def record_agent_stats(state_dir: Path, stats: AgentStats) -> None:
    """Append agent stats to the stats.jsonl file."""
    state_dir.mkdir(parents=True, exist_ok=True)
    stats_file = state_dir / STATS_FILE_NAME
    with open(stats_file, "a") as f:
        f.write(json.dumps(asdict(stats)) + "\n")
        f.flush()


def load_agent_stats(state_dir: Path, run_id: Optional[str] = None) -> list[AgentStats]:
    """Load recorded stats, optionally for one run. Skips corrupted lines."""
    stats_file = state_dir / STATS_FILE_NAME
    if not stats_file.exists():
        return []

    stats = []
    for line_num, line in enumerate(stats_file.read_text().splitlines(), 1):
        if not line.strip():
            continue
        try:
            data = json.loads(line)
            record = AgentStats(**data)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Skipping corrupted stats line {line_num} in {stats_file}: {e}")
            continue
        if run_id is None or record.run_id == run_id:
            stats.append(record)
    return stats


@dataclass
class PhaseStats:
    calls: int = 0
    elapsed_seconds: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0


def summarize_by_phase(stats: list[AgentStats]) -> dict[str, PhaseStats]:
    """Aggregate invocation stats per phase, in first-seen order."""
    summary: dict[str, PhaseStats] = defaultdict(PhaseStats)
    for s in stats:
        entry = summary[s.phase]
        entry.calls += 1
        entry.elapsed_seconds += s.elapsed_seconds
        entry.input_tokens += s.input_tokens
        entry.output_tokens += s.output_tokens
    return dict(summary)


def format_duration(seconds: float) -> str:
    """Format seconds as human-readable duration."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    secs = seconds % 60
    if minutes < 60:
        return f"{minutes}m {secs:.0f}s"
    hours = minutes // 60
    mins = minutes % 60
    return f"{hours}h {mins}m"


def format_phase_summary(summary: dict[str, PhaseStats]) -> list[str]:
    """Format per-phase stats as lines for display."""
    lines = []
    for phase, entry in summary.items():
        lines.append(
            f"  {phase:<14} {format_duration(entry.elapsed_seconds):>8} "
            f"({entry.calls} calls, {entry.input_tokens:,} in / {entry.output_tokens:,} out)"
        )
    return lines
