"""
Error types for storyforge runs.

Every failure that can end a run is a RunError with one of the ErrorKind
values. The engine records it in RunState.last_error before reporting it.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    SPAWN_FAILED = "SpawnFailed"
    PROCESS_FAILED = "ProcessFailed"
    TIMEOUT = "Timeout"
    MALFORMED_SPEC = "MalformedSpec"
    STATE_PERSISTENCE_FAILED = "StatePersistenceFailed"
    LOCK_CONFLICT = "LockConflict"
    REVIEW_EXHAUSTED = "ReviewExhausted"
    GIT_ERROR = "GitError"
    PR_PROVIDER_ERROR = "PRProviderError"
    INTERNAL = "Internal"


@dataclass
class RunError(Exception):
    """A run-ending failure."""
    kind: ErrorKind
    message: str
    phase: Optional[str] = None
    exit_code: Optional[int] = None
    stderr: Optional[str] = None

    def __str__(self):
        return f"[{self.kind.value}] {self.message}"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "phase": self.phase,
            "exitCode": self.exit_code,
            "stderr": self.stderr,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RunError":
        try:
            kind = ErrorKind(data.get("kind"))
        except ValueError:
            kind = ErrorKind.INTERNAL
        return cls(
            kind=kind,
            message=data.get("message", ""),
            phase=data.get("phase"),
            exit_code=data.get("exitCode"),
            stderr=data.get("stderr"),
        )


class MalformedSpec(RunError):
    """Spec file is missing, unparseable or violates spec invariants."""

    def __init__(self, message: str):
        super().__init__(ErrorKind.MALFORMED_SPEC, message)


class LockConflict(RunError):
    """Another orchestrator holds the run lock."""

    def __init__(self, message: str):
        super().__init__(ErrorKind.LOCK_CONFLICT, message)


class StatePersistenceFailed(RunError):
    """The state file could not be written."""

    def __init__(self, message: str):
        super().__init__(ErrorKind.STATE_PERSISTENCE_FAILED, message)


def stderr_tail_lines(stderr: Optional[str], count: int = 20) -> list[str]:
    """Return the last `count` non-empty lines of stderr."""
    if not stderr:
        return []
    lines = [line for line in stderr.splitlines() if line.strip()]
    return lines[-count:]
