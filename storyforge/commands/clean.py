"""
storyforge clean - Discard a stored run that is not running.
"""

import logging
from pathlib import Path

from storyforge.lib.config import Config, state_dir
from storyforge.lib.constants import EXIT_FAILED, EXIT_LOCK_CONFLICT
from storyforge.lib.errors import RunError
from storyforge.runner.locking import is_locked, read_lock_pid
from storyforge.runner.state import StateStore

logger = logging.getLogger(__name__)


def cmd_clean(args, workdir: Path, config: Config) -> int:
    sdir = state_dir(workdir)
    store = StateStore(sdir)

    if is_locked(sdir):
        pid = read_lock_pid(sdir)
        print(f"ERROR: A run is in progress{f' (pid {pid})' if pid else ''}; not removing its state")
        return EXIT_LOCK_CONFLICT

    if not store.exists():
        print("Nothing to clean")
        return 0

    try:
        state = store.load()
        description = f"run {state.run_id} (phase {state.phase})"
    except RunError as e:
        logger.warning(str(e))
        description = f"unreadable state file {store.path}"

    if not getattr(args, "yes", False):
        print(f"Would remove {description}")
        print("  Re-run with --yes to confirm")
        return EXIT_FAILED

    store.clear()
    print(f"Removed {description}")
    return 0
