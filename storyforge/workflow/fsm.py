"""Run state machine using transitions library.

States are the run phases persisted in RunState.phase. Every transition is
preceded by a durable write of the new phase: the `before_state_change`
callback calls the persist hook, and if that raises the transition is
aborted and the machine stays where it was.

Usage:
    from storyforge.workflow.fsm import RunFSM

    fsm = RunFSM(persist=save_phase)
    fsm.start()          # idle -> initializing
    fsm.load_spec()      # initializing -> loading_spec
    fsm.spec_ok()        # loading_spec -> picking_story
"""

import logging
from typing import Callable, Optional

from transitions import Machine

logger = logging.getLogger(__name__)


# State values must match RunState.phase and the state schema enum
STATES = [
    "idle",
    "initializing",
    "loading_spec",
    "generating_spec",
    "picking_story",
    "running_claude",
    "reviewing",
    "correcting",
    "committing",
    "creating_pr",
    "completed",
    "failed",
]

TERMINAL_STATES = ("completed", "failed")

# Phases where exactly one story is current
STORY_STATES = ("running_claude", "reviewing", "correcting", "committing")

TRANSITIONS = [
    {"trigger": "start", "source": "idle", "dest": "initializing"},

    # Spec: JSON goes straight to loading, markdown is converted first
    {"trigger": "load_spec", "source": "initializing", "dest": "loading_spec"},
    {"trigger": "generate_spec", "source": "initializing", "dest": "generating_spec"},
    {"trigger": "spec_written", "source": "generating_spec", "dest": "loading_spec"},
    {"trigger": "spec_ok", "source": "loading_spec", "dest": "picking_story"},

    # Story selection
    {"trigger": "next_story", "source": "picking_story", "dest": "running_claude"},
    {"trigger": "no_unfinished", "source": "picking_story", "dest": "creating_pr"},

    # Implementation outcomes
    {"trigger": "iteration_complete", "source": "running_claude", "dest": "reviewing"},
    {"trigger": "all_complete", "source": "running_claude", "dest": "creating_pr"},
    {"trigger": "skip_review", "source": "running_claude", "dest": "committing"},

    # Review / correct loop
    {"trigger": "review_pass", "source": "reviewing", "dest": "committing"},
    {"trigger": "review_fail", "source": "reviewing", "dest": "correcting"},
    {"trigger": "review_exhausted_continue", "source": "reviewing", "dest": "committing"},
    {"trigger": "correct_done", "source": "correcting", "dest": "reviewing"},

    # Commit
    {"trigger": "commit_ok", "source": "committing", "dest": "picking_story"},
    {"trigger": "nothing_to_commit", "source": "committing", "dest": "picking_story"},

    # Pull request
    {"trigger": "create_pr_ok", "source": "creating_pr", "dest": "completed"},

    # Any non-terminal phase can fail
    {"trigger": "fail", "source": [s for s in STATES if s not in TERMINAL_STATES], "dest": "failed"},
]


def _build_trigger_lookup() -> dict[tuple[str, str], str]:
    """Build lookup from (source, dest) -> trigger name."""
    lookup: dict[tuple[str, str], str] = {}
    for t in TRANSITIONS:
        sources = t["source"] if isinstance(t["source"], list) else [t["source"]]
        for source in sources:
            key = (source, t["dest"])
            if key not in lookup:  # First trigger wins for a given source->dest
                lookup[key] = t["trigger"]
    return lookup


TRIGGER_FOR = _build_trigger_lookup()


class RunFSM:
    """State machine for one orchestrator run.

    Args:
        persist: callback(from_state, to_state, trigger) that durably records
            the new phase. Raising from it aborts the transition.
        initial: phase to start in (a resumed run passes the stored phase)
    """

    def __init__(
        self,
        persist: Optional[Callable[[str, str, str], None]] = None,
        initial: str = "idle",
    ):
        self.persist = persist

        if initial not in STATES:
            logger.warning(f"[FSM] Unknown state '{initial}', defaulting to 'idle'")
            initial = "idle"

        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=initial,
            auto_transitions=False,  # Only explicit transitions
            send_event=True,  # Pass EventData to callbacks
            before_state_change="before_change",
            after_state_change="after_change",
        )

    def before_change(self, event) -> None:
        """Persist the destination phase before the machine moves."""
        if self.persist:
            self.persist(event.transition.source, event.transition.dest, event.event.name)

    def after_change(self, event) -> None:
        logger.info(
            f"[FSM] {event.transition.source} -> {event.transition.dest} ({event.event.name})"
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def can(self, trigger: str) -> bool:
        """Check if a trigger can be executed in current state."""
        return trigger in self.machine.get_triggers(self.state)

    def get_available_triggers(self) -> list[str]:
        """Get list of triggers available in current state."""
        return self.machine.get_triggers(self.state)

    def resume_at(self, state: str) -> None:
        """Re-enter a stored phase without firing a transition."""
        if state not in STATES:
            raise ValueError(f"Unknown phase '{state}'")
        self.machine.set_state(state)
        logger.info(f"[FSM] resumed at {state}")
