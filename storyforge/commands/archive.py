"""
storyforge archive - List archived runs under .storyforge/runs/.
"""

from pathlib import Path

from storyforge.lib.config import Config, state_dir
from storyforge.lib.usage import format_tokens
from storyforge.runner.state import StateStore


def cmd_archive(args, workdir: Path, config: Config) -> int:
    """List archived runs, newest first."""
    runs = StateStore(state_dir(workdir)).list_archived()
    if not runs:
        print("No archived runs")
        return 0

    print(f"{'RUN':<24} {'OUTCOME':<10} {'STORIES':<8} {'TOKENS':<8} PR")
    print("-" * 80)
    for run in runs:
        stories = str(len(run.knowledge.story_changes))
        print(
            f"{run.run_id:<24} {run.phase:<10} {stories:<8} "
            f"{format_tokens(run.usage.total_tokens):<8} {run.pr_url or ''}"
        )
    print("-" * 80)
    print(f"{len(runs)} archived run(s)")
    return 0
