"""
storyforge status - Show the current run without taking the lock.
"""

from pathlib import Path

from storyforge.lib.config import Config, state_dir
from storyforge.lib.constants import EXIT_FAILED
from storyforge.lib.errors import RunError, stderr_tail_lines
from storyforge.lib.stats import format_phase_summary, load_agent_stats, summarize_by_phase
from storyforge.lib.usage import format_usage
from storyforge.runner.locking import is_locked, read_lock_pid
from storyforge.runner.state import StateStore


def cmd_status(args, workdir: Path, config: Config) -> int:
    """Print phase, story, review progress, usage and last error."""
    sdir = state_dir(workdir)
    store = StateStore(sdir)
    try:
        state = store.load()
    except RunError as e:
        print(f"ERROR: {e.message}")
        return EXIT_FAILED

    if state is None:
        print("No run in progress")
        archived = store.list_archived()
        if archived:
            print(f"Last run: {archived[0].run_id} ({archived[0].phase})")
        return 0

    if is_locked(sdir):
        pid = read_lock_pid(sdir)
        running = f"running (pid {pid})" if pid else "running"
    else:
        running = "not running"

    print(f"Run:       {state.run_id} [{running}]")
    print(f"Phase:     {state.phase}")
    print(f"Spec:      {state.spec_markdown_path or state.spec_path or '-'}")
    if state.branch:
        print(f"Branch:    {state.branch}")
    if state.current_story:
        print(f"Story:     {state.current_story}")
        print(f"Iteration: {state.iteration}/{config.review_max} ({state.review_count} reviews)")
    if state.last_commit:
        print(f"Commit:    {state.last_commit[:12]}")
    if state.pr_url:
        print(f"PR:        {state.pr_url}")
    print(f"Started:   {state.started_at}")
    print(f"Updated:   {state.updated_at}")
    print(f"Usage:     {format_usage(state.usage)}")

    done = [c.story_id for c in state.knowledge.story_changes]
    if done:
        print(f"Committed: {', '.join(done)}")

    stats = load_agent_stats(sdir, run_id=state.run_id)
    if stats:
        print()
        print("Agent time by phase:")
        for line in format_phase_summary(summarize_by_phase(stats)):
            print(line)

    if state.last_error:
        error = state.last_error
        print()
        print(f"Last error: {error.kind.value}: {error.message}")
        if error.phase:
            print(f"  Phase: {error.phase}")
        for line in stderr_tail_lines(error.stderr, count=5):
            print(f"    {line}")
        print("  Resume with: storyforge resume")

    return 0
