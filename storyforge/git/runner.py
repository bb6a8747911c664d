"""Non-interactive git subprocess wrapper."""

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30

# Runs are unattended: never wait on a credential prompt or an editor, and
# keep messages in English so push output can be matched.
_GIT_ENV = {
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_EDITOR": "true",
    "LC_ALL": "C",
}


@dataclass
class GitResult:
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False
    args: tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def subcommand(self) -> str:
        return self.args[0] if self.args else ""


def run_git(args: list[str], cwd: Path, timeout: int = DEFAULT_TIMEOUT) -> GitResult:
    """
    Run ``git -C cwd <args>``.

    Never raises for a failed, hung or missing git: the outcome is reported
    through the returned GitResult so callers decide what is fatal.
    """
    logger.debug(f"git {' '.join(args)}")
    argv = tuple(args)
    try:
        proc = subprocess.run(
            ["git", "-C", str(cwd)] + args,
            capture_output=True,
            text=True,
            timeout=timeout,
            env={**os.environ, **_GIT_ENV},
        )
    except subprocess.TimeoutExpired:
        logger.warning(f"git {argv[0] if argv else ''} timed out after {timeout}s")
        return GitResult(-1, "", f"Command timed out after {timeout}s", timed_out=True, args=argv)
    except FileNotFoundError:
        return GitResult(-1, "", "git executable not found", args=argv)

    return GitResult(proc.returncode, proc.stdout, proc.stderr, args=argv)
