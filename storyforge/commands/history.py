"""
storyforge history - List finished runs from the history log.
"""

from pathlib import Path

from storyforge.lib.config import Config, state_dir
from storyforge.lib.usage import format_tokens
from storyforge.runner.state import StateStore


def cmd_history(args, workdir: Path, config: Config) -> int:
    records = StateStore(state_dir(workdir)).history()
    if not records:
        print("No finished runs")
        return 0

    limit = getattr(args, "limit", None)
    if limit:
        records = records[-limit:]

    print(f"{'RUN':<24} {'OUTCOME':<10} {'STORIES':<8} {'TOKENS':<8} {'ENDED':<26} ERROR")
    print("-" * 90)
    for r in records:
        stories = f"{r.stories_done}/{r.stories_total}"
        print(
            f"{r.run_id:<24} {r.outcome:<10} {stories:<8} "
            f"{format_tokens(r.usage.total_tokens):<8} {r.ended_at[:25]:<26} {r.error_kind or ''}"
        )
    print("-" * 90)
    print(f"{len(records)} run(s)")
    return 0
