"""
storyforge pr-review - Address unresolved review comments on an open PR.

Uses the PR for the current branch, or one picked from the open PRs, hands
its unresolved review threads to the agent, then commits and pushes what
the agent fixed.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

from storyforge.agents.claude import ClaudeRunner
from storyforge.agents.permissions import Phase
from storyforge.git.adapter import CommitOutcome, GitAdapter, PushOutcome
from storyforge.lib.config import Config, state_dir
from storyforge.lib.constants import EXIT_ABORTED, EXIT_FAILED, EXIT_LOCK_CONFLICT, EXIT_OK
from storyforge.lib.errors import ErrorKind, LockConflict, MalformedSpec, RunError, stderr_tail_lines
from storyforge.lib.github import DetectOutcome, PRAdapter, PRComment, PRInfo
from storyforge.lib.prompts import PromptError, render_prompt
from storyforge.lib.spec import Spec, load_spec
from storyforge.lib.summary import parse_review_tally
from storyforge.runner.locking import run_lock
from storyforge.runner.state import StateStore
from storyforge.workflow.engine import format_criteria
from storyforge.workflow.signals import StopSignal, handle_interrupts

logger = logging.getLogger(__name__)


def _echo_agent_text(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


def prompt_choice(message: str, choices: list[str], default: int = 1) -> int:
    """Ask for one of `choices`; returns its 0-based index."""
    print(f"\n{message}")
    for i, desc in enumerate(choices, 1):
        marker = "*" if i == default else " "
        print(f"  {marker}{i}. {desc}")

    while True:
        try:
            selection = input(f"Select [1-{len(choices)}, default={default}]: ").strip()
            if not selection:
                return default - 1
            idx = int(selection)
            if 1 <= idx <= len(choices):
                return idx - 1
            print(f"Please enter a number between 1 and {len(choices)}")
        except ValueError:
            print("Please enter a valid number")
        except EOFError:
            return default - 1


def format_pr_choice(pr: PRInfo) -> str:
    return f"#{pr.number} [{pr.head}] {pr.title}"


def select_pr(prs: PRAdapter, number: Optional[int] = None) -> Optional[PRInfo]:
    """The PR to work on, or None when nothing is open.

    An explicit number must be an open PR. Otherwise the current branch's PR
    wins, and without one the user picks from the open PRs.
    """
    if number is None:
        detection = prs.detect_pr_for_branch()
        if detection.outcome == DetectOutcome.FOUND:
            return detection.pr
        if detection.outcome == DetectOutcome.ERROR:
            raise RunError(ErrorKind.PR_PROVIDER_ERROR, detection.error or "PR detection failed")

    listed = prs.list_open_prs()
    if listed.error:
        raise RunError(ErrorKind.PR_PROVIDER_ERROR, listed.error)

    if number is not None:
        for pr in listed.prs:
            if pr.number == number:
                return pr
        raise RunError(ErrorKind.PR_PROVIDER_ERROR, f"PR #{number} is not open")

    if not listed.prs:
        return None
    if len(listed.prs) == 1:
        return listed.prs[0]
    return listed.prs[prompt_choice("Select a PR to review:", [format_pr_choice(pr) for pr in listed.prs])]


def find_spec(spec_arg: Optional[str], workdir: Path, store: StateStore) -> Optional[Spec]:
    """The spec named on the command line, else the stored run's spec if it loads."""
    if spec_arg:
        path = Path(spec_arg)
        return load_spec(path if path.is_absolute() else workdir / path)

    try:
        state = store.load()
    except RunError as e:
        logger.warning(f"Ignoring stored run: {e.message}")
        return None
    if state is None or not state.spec_path:
        return None
    try:
        return load_spec(Path(state.spec_path))
    except MalformedSpec as e:
        logger.warning(f"Ignoring spec of stored run: {e.message}")
        return None


def format_spec_context(spec: Optional[Spec], branch: str) -> str:
    if spec is None:
        return f"No spec file found for branch `{branch}`. Work from the PR and the code."

    stories = "\n\n".join(
        f"### {s.id}: {s.title}\n{s.description}\n\n**Acceptance Criteria:**\n{format_criteria(s)}"
        for s in spec.user_stories
    )
    return f"### {spec.project}\n\n{spec.description}\n\n{stories}"


def format_comments(comments: list[PRComment]) -> str:
    blocks = []
    for i, comment in enumerate(comments, 1):
        if comment.file_path and comment.line:
            location = f"{comment.file_path}:{comment.line}"
        else:
            location = comment.file_path or "PR conversation"
        quoted = "\n".join(f"> {line}" for line in comment.body.splitlines())
        blocks.append(f"### Comment {i} from @{comment.author} ({location})\n\n{quoted}\n")
    return "\n".join(blocks)


def fix_commit_message(pr: PRInfo, work_summary: Optional[str]) -> str:
    subject = f"fix: address review comments on PR #{pr.number}"
    return f"{subject}\n\n{work_summary}" if work_summary else subject


def review_pr(args, workdir: Path, config: Config, store: StateStore, stop: StopSignal) -> int:
    git = GitAdapter(workdir)
    prs = PRAdapter(workdir)

    pr = select_pr(prs, getattr(args, "pr", None))
    if pr is None:
        print("No open pull requests")
        return EXIT_OK
    print(f"PR #{pr.number}: {pr.title} ({pr.head})")

    if git.current_branch() != pr.head:
        if not git.is_clean():
            raise RunError(
                ErrorKind.GIT_ERROR,
                f"uncommitted changes in {workdir}, commit or stash them before switching to {pr.head}",
            )
        git.switch_to(pr.head)
        print(f"Switched to branch {pr.head}")

    comments = prs.unresolved_comments(pr.number)
    if comments.error:
        raise RunError(ErrorKind.PR_PROVIDER_ERROR, comments.error)
    if not comments.comments:
        print(f"PR #{pr.number} has no unresolved review comments")
        return EXIT_OK

    description = prs.pr_body(pr.number)
    if description.error:
        raise RunError(ErrorKind.PR_PROVIDER_ERROR, description.error)

    spec = find_spec(getattr(args, "spec", None), workdir, store)
    try:
        prompt = render_prompt(
            "pr_review",
            pr_number=pr.number,
            pr_title=pr.title,
            branch=pr.head,
            spec_context=format_spec_context(spec, pr.head),
            pr_description=description.body.strip() or "(no description)",
            comment_count=len(comments.comments),
            comments=format_comments(comments.comments),
        )
    except PromptError as e:
        raise RunError(ErrorKind.INTERNAL, str(e)) from None

    print(f"Addressing {len(comments.comments)} unresolved review comment(s)\n")
    runner = ClaudeRunner(
        config,
        workdir,
        observer=_echo_agent_text,
        stats_dir=store.state_dir,
        run_id=f"pr-{pr.number}",
    )
    stop.on_stop = runner.terminate
    outcome = runner.run(Phase.PR_REVIEW, prompt)
    print()
    if outcome.interrupted or stop.event.is_set():
        print("Stopped before the review finished")
        return EXIT_ABORTED
    if outcome.error:
        raise outcome.error

    tally = parse_review_tally(outcome.final_reply)
    print(
        f"Comments: {tally.total} analyzed, {tally.fixed} fixed, "
        f"{tally.suggestions} suggestions, {tally.red_herrings} red herrings"
    )

    if not config.commit:
        print("Commit disabled, fixes left in the working tree")
        return EXIT_OK

    result = git.stage_and_commit(fix_commit_message(pr, outcome.work_summary))
    if result.outcome == CommitOutcome.NOTHING_TO_COMMIT:
        print("No changes to commit")
        return EXIT_OK
    print(f"Committed fixes as {result.commit_hash[:7]}")

    if not config.pull_request:
        print("Push disabled")
        return EXIT_OK
    pushed = git.push(pr.head, config.remote)
    if pushed == PushOutcome.ALREADY_UP_TO_DATE:
        print(f"{pr.head} already up to date on {config.remote}")
    else:
        print(f"Pushed {pr.head} to {config.remote}")
    return EXIT_OK


def cmd_pr_review(args, workdir: Path, config: Config) -> int:
    """Fix what the unresolved review comments on a PR ask for."""
    store = StateStore(state_dir(workdir))
    stop = StopSignal()
    try:
        with run_lock(store.state_dir), handle_interrupts(stop):
            return review_pr(args, workdir, config, store, stop)
    except LockConflict as e:
        print(f"ERROR: {e.message}")
        return EXIT_LOCK_CONFLICT
    except RunError as e:
        print(f"ERROR: {e.kind.value}: {e.message}")
        for line in stderr_tail_lines(e.stderr, count=5):
            print(f"    {line}")
        return EXIT_FAILED
