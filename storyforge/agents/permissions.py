"""Phase-specific permission arguments for the agent subprocess."""

from enum import Enum


class Phase(Enum):
    """Agent invocation phases."""
    GENERATE_SPEC = "generate_spec"
    IMPLEMENT = "implement"
    REVIEW = "review"
    CORRECT = "correct"
    COMMIT = "commit"
    OPEN_OR_UPDATE_PR = "open_or_update_pr"
    PR_REVIEW = "pr_review"


SKIP_PERMISSIONS = ["--dangerously-skip-permissions"]

# Pushing is only allowed once the run reaches the PR phase
_EDIT_NO_PUSH = [
    "--permission-mode", "acceptEdits",
    "--allowedTools", "Bash",
    "--disallowedTools", "Bash(git push *)",
]

_EDIT_WITH_PUSH = [
    "--permission-mode", "acceptEdits",
    "--allowedTools", "Bash",
]


def phase_permissions(phase: Phase, unrestricted: bool = False) -> list[str]:
    """Return the permission arguments for a phase.

    Args:
        phase: Phase the agent is being invoked for
        unrestricted: Skip all permission checks (config `unrestricted`)

    Returns:
        A fresh argument list the caller may extend
    """
    if unrestricted:
        return list(SKIP_PERMISSIONS)
    if phase == Phase.OPEN_OR_UPDATE_PR:
        return list(_EDIT_WITH_PUSH)
    return list(_EDIT_NO_PUSH)
