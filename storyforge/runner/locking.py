"""
Run lock for storyforge.

One orchestrator per working copy. The lock is an flock on
.storyforge/run.lock holding the owner's pid. The file is removed on release;
a file left behind by a killed process is not locked by anyone and is
reclaimed with a warning.
"""

import atexit
import fcntl
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from storyforge.lib.config import ensure_state_dir
from storyforge.lib.errors import LockConflict

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = "run.lock"


def lock_path(state_dir: Path) -> Path:
    return state_dir / LOCK_FILE_NAME


def read_lock_pid(state_dir: Path) -> Optional[int]:
    """Pid recorded in the lock file, or None."""
    try:
        return int(lock_path(state_dir).read_text().strip())
    except (OSError, ValueError):
        return None


def is_locked(state_dir: Path) -> bool:
    """Check whether some process currently holds the run lock."""
    path = lock_path(state_dir)
    if not path.exists():
        return False
    try:
        with open(path, "r") as fd:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                return True
            fcntl.flock(fd, fcntl.LOCK_UN)
    except OSError:
        return False
    return False


def _open_locked(path: Path):
    """Open and flock the lock file, retrying if it was replaced underneath us."""
    for _ in range(5):
        fd = open(path, "a+")
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            fd.close()
            pid = read_lock_pid(path.parent)
            owner = f" (pid {pid})" if pid else ""
            raise LockConflict(
                f"Another storyforge run holds {path}{owner}. "
                f"Wait for it to finish, or run 'storyforge resume' once it has stopped."
            )

        # The previous holder may have unlinked the file between our open and flock
        try:
            same_file = os.path.samestat(os.fstat(fd.fileno()), os.stat(path))
        except FileNotFoundError:
            same_file = False
        if same_file:
            return fd
        fd.close()

    raise LockConflict(f"Could not acquire {path}: lock file keeps changing")


@contextmanager
def run_lock(state_dir: Path):
    """
    Hold the run lock for the duration of the block.

    Raises:
        LockConflict: Another live process holds the lock
    """
    ensure_state_dir(state_dir)
    path = lock_path(state_dir)

    stale_pid = read_lock_pid(state_dir) if path.exists() else None
    fd = _open_locked(path)
    if stale_pid is not None and stale_pid != os.getpid():
        logger.warning(f"Reclaiming stale lock left by pid {stale_pid}")

    fd.seek(0)
    fd.truncate()
    fd.write(f"{os.getpid()}\n")
    fd.flush()

    def cleanup():
        try:
            path.unlink(missing_ok=True)
            fcntl.flock(fd, fcntl.LOCK_UN)
            fd.close()
        except (OSError, ValueError):
            pass

    atexit.register(cleanup)
    try:
        yield
    finally:
        atexit.unregister(cleanup)
        cleanup()
