"""
storyforge run / resume - Execute a run under the run lock.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

from storyforge.agents.claude import ClaudeRunner
from storyforge.git.adapter import GitAdapter
from storyforge.lib.config import Config, state_dir
from storyforge.lib.constants import EXIT_ABORTED, EXIT_FAILED, EXIT_LOCK_CONFLICT, EXIT_OK
from storyforge.lib.errors import LockConflict, RunError, StatePersistenceFailed, stderr_tail_lines
from storyforge.lib.github import PRAdapter
from storyforge.lib.spec import is_markdown_spec
from storyforge.lib.usage import format_usage
from storyforge.runner.locking import run_lock
from storyforge.runner.state import RunState, StateStore
from storyforge.workflow.engine import WorkflowEngine
from storyforge.workflow.flow import run_flow
from storyforge.workflow.signals import StopSignal, handle_interrupts

logger = logging.getLogger(__name__)

RESUME_COMMAND = "storyforge resume"


def _echo_agent_text(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


def build_engine(config: Config, workdir: Path, store: StateStore, state: RunState, stop: StopSignal) -> WorkflowEngine:
    runner = ClaudeRunner(
        config,
        workdir,
        observer=_echo_agent_text,
        stats_dir=store.state_dir,
        run_id=state.run_id,
    )
    stop.on_stop = runner.terminate
    return WorkflowEngine(
        config=config,
        workdir=workdir,
        store=store,
        state=state,
        runner=runner,
        git=GitAdapter(workdir),
        prs=PRAdapter(workdir),
        stop_event=stop.event,
    )


def print_failure(error: Optional[RunError]) -> None:
    """Kind, message, phase, exit code, stderr tail and the resume command."""
    print()
    if error is None:
        print("ERROR: Run failed")
    else:
        print(f"ERROR: {error.kind.value}: {error.message}")
        if error.phase:
            print(f"  Phase: {error.phase}")
        if error.exit_code is not None:
            print(f"  Exit code: {error.exit_code}")
        tail = stderr_tail_lines(error.stderr)
        if tail:
            print("  Last stderr lines:")
            for line in tail:
                print(f"    {line}")
    print(f"  Resume with: {RESUME_COMMAND}")


def print_summary(engine: WorkflowEngine) -> None:
    state = engine.state
    spec = engine.spec
    print()
    print(f"Run {state.run_id} complete")
    if spec:
        print(f"  Stories: {spec.completed_count}/{spec.total_count}")
    if not state.usage.is_empty():
        print(f"  Usage: {format_usage(state.usage)}")
    if state.pr_url:
        print(f"  PR: {state.pr_url}")


def execute(config: Config, workdir: Path, store: StateStore, state: Optional[RunState], resume: bool = False) -> int:
    """Take the lock, run the engine, and report the outcome.

    A None state means resume whatever is stored (loaded after the lock is held).
    """
    stop = StopSignal()
    try:
        with run_lock(store.state_dir), handle_interrupts(stop):
            if state is None:
                state = store.load()
                if state is None:
                    print("ERROR: No run to resume")
                    return EXIT_FAILED
            else:
                store.save(state)

            engine = build_engine(config, workdir, store, state, stop)
            if resume:
                engine.prepare_resume()
            exit_code = run_flow(engine)
    except LockConflict as e:
        print(f"ERROR: {e.message}")
        return EXIT_LOCK_CONFLICT
    except StatePersistenceFailed as e:
        print(f"ERROR: {e.message}")
        return EXIT_FAILED
    except RunError as e:
        print_failure(e)
        return EXIT_FAILED

    if exit_code == EXIT_OK:
        print_summary(engine)
    elif exit_code == EXIT_ABORTED:
        print(f"\nStopped in phase {engine.phase}. Resume with: {RESUME_COMMAND}")
    else:
        print_failure(engine.state.last_error)
    return exit_code


def cmd_run(args, workdir: Path, config: Config) -> int:
    """Start a new run from a JSON or markdown spec."""
    spec_arg = Path(args.spec)
    spec_path = spec_arg if spec_arg.is_absolute() else (workdir / spec_arg)
    if not spec_path.exists():
        print(f"ERROR: Spec file not found: {spec_path}")
        return EXIT_FAILED

    store = StateStore(state_dir(workdir))
    try:
        existing = store.load()
    except RunError as e:
        print(f"ERROR: {e.message}")
        print("  Remove it with: storyforge clean --yes")
        return EXIT_FAILED

    if existing is not None:
        if not existing.is_terminal:
            print(f"ERROR: Run {existing.run_id} is in progress (phase {existing.phase})")
            print(f"  Resume it with: {RESUME_COMMAND}")
            print("  Or discard it with: storyforge clean --yes")
            return EXIT_FAILED
        logger.info(f"Archiving previous {existing.phase} run {existing.run_id}")
        store.archive(existing)

    if is_markdown_spec(spec_path):
        state = RunState.new(spec_path=spec_path.with_suffix(".json"), spec_markdown_path=spec_path)
    else:
        state = RunState.new(spec_path=spec_path)

    print(f"Starting run {state.run_id} from {spec_path}")
    return execute(config, workdir, store, state)


def cmd_resume(args, workdir: Path, config: Config) -> int:
    """Resume the stored run at the phase it stopped in."""
    store = StateStore(state_dir(workdir))
    if not store.exists():
        print("ERROR: No run to resume")
        print("  Start one with: storyforge run <spec>")
        return EXIT_FAILED
    return execute(config, workdir, store, None, resume=True)
