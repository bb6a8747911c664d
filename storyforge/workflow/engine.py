"""Workflow engine for storyforge runs.

Drives one run through the state machine in storyforge.workflow.fsm: load
or generate the spec, then for each unfinished story implement, review and
correct, and commit, and finally push and open or update the pull request.

The engine is single-threaded. Each phase handler does its work and fires
exactly one trigger (or raises RunError). The trigger persists RunState
before the machine moves, so a crash between phases resumes at the phase
that was about to run. Wrapped with Prefect in storyforge.workflow.flow.
"""

import logging
import threading
from pathlib import Path
from typing import Callable, Optional

from storyforge.agents.claude import AgentOutcome, ClaudeRunner, OutcomeKind
from storyforge.agents.permissions import Phase
from storyforge.git.adapter import CommitOutcome, GitAdapter, PushOutcome
from storyforge.lib.config import Config
from storyforge.lib.constants import (
    EXIT_ABORTED,
    EXIT_FAILED,
    EXIT_OK,
    LAST_OUTPUT_MAX_CHARS,
    REVIEW_ERROR_MAX_BYTES,
    REVIEW_PASS,
)
from storyforge.lib.errors import ErrorKind, MalformedSpec, RunError, StatePersistenceFailed
from storyforge.lib.github import CreateOutcome, DetectOutcome, PRAdapter
from storyforge.lib.history import HistoryRecord
from storyforge.lib.pr_format import format_pr_description, format_pr_title
from storyforge.lib.prompts import PromptError, build_section, render_prompt
from storyforge.lib.spec import Spec, Story, load_spec, parse_markdown_spec, save_spec
from storyforge.lib.summary import extract_hints
from storyforge.runner.state import RunState, StateStore, utc_now
from storyforge.workflow.fsm import STATES, TERMINAL_STATES, RunFSM

logger = logging.getLogger(__name__)


def review_passed(text: str) -> bool:
    """A review passes only when its first non-empty line is exactly REVIEW: PASS."""
    for line in text.splitlines():
        if line.strip():
            return line.strip() == REVIEW_PASS
    return False


def trim_bytes(text: str, limit: int) -> str:
    """Trim text to at most `limit` UTF-8 bytes without splitting a character."""
    data = text.encode("utf-8")
    if len(data) <= limit:
        return text
    return data[:limit].decode("utf-8", errors="ignore")


def format_criteria(story: Story) -> str:
    if not story.acceptance_criteria:
        return "- (none listed)"
    return "\n".join(f"- {c}" for c in story.acceptance_criteria)


def commit_message(story: Story, work_summary: Optional[str]) -> str:
    subject = f"feat({story.id}): {story.title}"
    return f"{subject}\n\n{work_summary}" if work_summary else subject


class WorkflowEngine:
    """Runs (or resumes) one run to a terminal state or an interrupt."""

    def __init__(
        self,
        config: Config,
        workdir: Path,
        store: StateStore,
        state: RunState,
        runner: ClaudeRunner,
        git: GitAdapter,
        prs: PRAdapter,
        stop_event: Optional[threading.Event] = None,
        echo: Callable[[str], None] = print,
    ):
        self.config = config
        self.workdir = workdir
        self.store = store
        self.state = state
        self.runner = runner
        self.git = git
        self.prs = prs
        self.stop_event = stop_event or threading.Event()
        self.echo = echo
        self.spec: Optional[Spec] = None

        self.fsm = RunFSM(persist=self._persist, initial=state.phase)
        self._handlers: dict[str, Callable[[], None]] = {
            "idle": self._idle,
            "initializing": self._initializing,
            "generating_spec": self._generating_spec,
            "loading_spec": self._loading_spec,
            "picking_story": self._picking_story,
            "running_claude": self._running_claude,
            "reviewing": self._reviewing,
            "correcting": self._correcting,
            "committing": self._committing,
            "creating_pr": self._creating_pr,
        }

    # --- persistence ---------------------------------------------------------

    def _persist(self, source: str, dest: str, trigger: str) -> None:
        """before_state_change hook: write the new phase or abort the transition."""
        self.state.phase = dest
        try:
            self.store.save(self.state)
        except StatePersistenceFailed:
            self.state.phase = source
            raise

    def _save(self) -> None:
        """Persist accumulated data without changing phase."""
        self.store.save(self.state)

    # --- main loop -----------------------------------------------------------

    @property
    def phase(self) -> str:
        return self.fsm.state

    @property
    def stop_requested(self) -> bool:
        return self.stop_event.is_set()

    def should_continue(self) -> bool:
        return not self.fsm.is_terminal and not self.stop_requested

    def prepare_resume(self) -> None:
        """Bring a failed run back to the phase where it failed."""
        if self.state.phase != "failed":
            logger.info(f"Resuming run {self.state.run_id} at {self.state.phase}")
            return

        error = self.state.last_error
        target = error.phase if error and error.phase in STATES else None
        if target is None or target in TERMINAL_STATES:
            target = "picking_story" if self.state.spec_path else "idle"

        self.fsm.resume_at(target)
        self.state.phase = target
        self.state.last_error = None
        self._save()
        logger.info(f"Resuming failed run {self.state.run_id} at {target}")

    def step(self) -> None:
        """Run the handler for the current phase, converting errors to Failed."""
        handler = self._handlers.get(self.phase)
        if handler is None:
            raise RunError(ErrorKind.INTERNAL, f"No handler for phase '{self.phase}'")
        try:
            handler()
        except StatePersistenceFailed:
            raise
        except RunError as e:
            self._fail(e)
        except (OSError, PromptError) as e:
            self._fail(RunError(ErrorKind.INTERNAL, str(e)))

    def run(self) -> int:
        """Drive the run until it is terminal or interrupted. Returns an exit code."""
        while self.should_continue():
            self.step()
        return self.finish()

    def finish(self) -> int:
        if not self.fsm.is_terminal:
            logger.info(f"Run {self.state.run_id} interrupted in {self.phase}")
            return EXIT_ABORTED

        spec = self.spec
        self.store.append_history(HistoryRecord(
            run_id=self.state.run_id,
            started_at=self.state.started_at,
            ended_at=utc_now(),
            outcome=self.phase,
            stories_done=spec.completed_count if spec else 0,
            stories_total=spec.total_count if spec else 0,
            usage=self.state.usage,
            error_kind=self.state.last_error.kind.value if self.state.last_error else None,
        ))

        if self.phase == "completed":
            self.store.archive(self.state)
            return EXIT_OK
        return EXIT_FAILED

    def _fail(self, error: RunError) -> None:
        error.phase = self.phase
        self.state.last_error = error
        logger.error(f"Run failed in {self.phase}: {error}")
        self.fsm.fail()

    # --- helpers -------------------------------------------------------------

    def _load_spec(self) -> Spec:
        if self.spec is None:
            if not self.state.spec_path:
                raise MalformedSpec("No spec path recorded for this run")
            self.spec = load_spec(Path(self.state.spec_path))
        return self.spec

    def _relative_to_workdir(self, path: Path) -> Optional[str]:
        """path as git reports it, or None when it lives outside the working copy."""
        try:
            return path.resolve().relative_to(self.workdir.resolve()).as_posix()
        except ValueError:
            return None

    def _current_story(self) -> Story:
        spec = self._load_spec()
        story = spec.get_story(self.state.current_story or "")
        if story is None:
            raise RunError(
                ErrorKind.INTERNAL,
                f"Current story '{self.state.current_story}' is not in the spec",
            )
        return story

    def _invoke(self, phase: Phase, prompt: str, story_id: Optional[str] = None) -> Optional[AgentOutcome]:
        """Run the agent and fold its usage into state.

        Returns None when the run was interrupted (state is saved, phase
        unchanged). Raises the agent's error otherwise.
        """
        outcome = self.runner.run(phase, prompt, story_id=story_id)
        self.state.add_usage(outcome.usage, story_id)
        if outcome.interrupted or self.stop_requested:
            self._save()
            return None
        if outcome.error:
            raise outcome.error
        return outcome

    # --- phase handlers ------------------------------------------------------

    def _idle(self) -> None:
        self.fsm.start()

    def _initializing(self) -> None:
        md_path = self.state.spec_markdown_path
        if md_path:
            if not Path(md_path).exists():
                raise MalformedSpec(f"Spec file not found: {md_path}")
            if self.state.spec_path and Path(self.state.spec_path).exists():
                logger.info(f"Using existing JSON spec {self.state.spec_path}")
                self.fsm.load_spec()
            else:
                self.fsm.generate_spec()
            return

        if not self.state.spec_path or not Path(self.state.spec_path).exists():
            raise MalformedSpec(f"Spec file not found: {self.state.spec_path}")
        self.fsm.load_spec()

    def _generating_spec(self) -> None:
        md_path = Path(self.state.spec_markdown_path)
        json_path = Path(self.state.spec_path)
        try:
            markdown = md_path.read_text()
        except (OSError, UnicodeDecodeError) as e:
            raise MalformedSpec(f"Could not read {md_path}: {e}") from None
        attempts = max(1, self.config.spec_generation_attempts)
        previous_error: Optional[str] = None

        for attempt in range(1, attempts + 1):
            prompt = render_prompt(
                "generate_spec",
                markdown=markdown,
                output_path=str(json_path),
                attempt=attempt,
                max_attempts=attempts,
                previous_error_section=build_section(previous_error, "## Previous Attempt Failed"),
            )
            try:
                outcome = self._invoke(Phase.GENERATE_SPEC, prompt)
            except RunError as e:
                previous_error = str(e)
                logger.warning(f"Spec generation attempt {attempt}/{attempts} failed: {e}")
                continue
            if outcome is None:
                return

            try:
                self.spec = load_spec(json_path)
            except MalformedSpec as e:
                previous_error = e.message
                logger.warning(f"Spec generation attempt {attempt}/{attempts} produced an invalid spec: {e.message}")
                continue

            self.echo(f"Generated {json_path} ({self.spec.total_count} stories)")
            self.fsm.spec_written()
            return

        logger.warning(f"Agent could not produce a valid spec, parsing {md_path} directly")
        self.spec = parse_markdown_spec(markdown)
        save_spec(self.spec, json_path)
        self.echo(f"Generated {json_path} from markdown ({self.spec.total_count} stories)")
        self.fsm.spec_written()

    def _loading_spec(self) -> None:
        self.spec = None
        spec = self._load_spec()
        branch = spec.branch_name
        self.git.ensure_branch(branch)
        self.state.branch = branch
        self.echo(
            f"Loaded {spec.project}: {spec.completed_count}/{spec.total_count} stories complete "
            f"(branch {branch})"
        )
        self.fsm.spec_ok()

    def _picking_story(self) -> None:
        spec = self._load_spec()
        head = self.git.head_commit()
        if self.state.baseline_commit is None:
            self.state.baseline_commit = head
        self.state.knowledge.baseline(self.state.baseline_commit)

        self.state.iteration = 1
        self.state.review_count = 0
        self.state.last_review = None

        story = spec.next_story()
        if story is None:
            self.state.current_story = None
            self.echo("All stories complete")
            self.fsm.no_unfinished()
            return

        self.state.current_story = story.id
        self.state.story_start_commit = head
        self.state.work_summary = None
        self.state.last_output = None
        self.echo(f"\n=== {story.id}: {story.title} ===")
        self.fsm.next_story()

    def _running_claude(self) -> None:
        spec = self._load_spec()
        story = self._current_story()
        knowledge = self.state.knowledge.render_context(
            decisions_limit=self.config.knowledge_decisions_limit,
            stories_limit=self.config.knowledge_stories_limit,
        )
        prompt = render_prompt(
            "implement",
            project=spec.project,
            spec_description=spec.description,
            progress=f"{spec.completed_count}/{spec.total_count}",
            story_id=story.id,
            story_title=story.title,
            story_description=story.description,
            acceptance_criteria=format_criteria(story),
            notes_section=build_section(story.notes, "### Notes"),
            knowledge_section=knowledge,
        )

        outcome = self._invoke(Phase.IMPLEMENT, prompt, story.id)
        if outcome is None:
            return

        if outcome.kind == OutcomeKind.ALL_STORIES_COMPLETE:
            self.echo("Agent reports all stories complete")
            self.state.current_story = None
            self.fsm.all_complete()
            return

        self.state.last_output = outcome.text[-LAST_OUTPUT_MAX_CHARS:]
        self.state.work_summary = outcome.work_summary
        if self.config.review:
            self.fsm.iteration_complete()
        else:
            self.fsm.skip_review()

    def _reviewing(self) -> None:
        spec = self._load_spec()
        story = self._current_story()
        prompt = render_prompt(
            "review",
            project=spec.project,
            story_id=story.id,
            story_title=story.title,
            story_description=story.description,
            acceptance_criteria=format_criteria(story),
            iteration=self.state.iteration,
            review_max=self.config.review_max,
        )

        outcome = self._invoke(Phase.REVIEW, prompt, story.id)
        if outcome is None:
            return

        self.state.review_count += 1
        # Correct sees the whole transcript; the verdict comes from the final reply
        self.state.last_review = outcome.text
        if review_passed(outcome.final_reply):
            self.echo(f"Review {self.state.iteration}/{self.config.review_max}: PASS")
            self.fsm.review_pass()
            return

        self.echo(f"Review {self.state.iteration}/{self.config.review_max}: FAIL")
        if self.state.iteration < self.config.review_max:
            self.fsm.review_fail()
            return

        if self.config.continue_on_review_exhaustion:
            logger.warning(
                f"{story.id} still failing review after {self.config.review_max} iterations, committing anyway"
            )
            self.echo(f"WARNING: review limit reached for {story.id}, committing anyway")
            self.fsm.review_exhausted_continue()
            return

        raise RunError(
            ErrorKind.REVIEW_EXHAUSTED,
            trim_bytes(outcome.text, REVIEW_ERROR_MAX_BYTES),
        )

    def _correcting(self) -> None:
        spec = self._load_spec()
        story = self._current_story()
        prompt = render_prompt(
            "correct",
            project=spec.project,
            story_id=story.id,
            story_title=story.title,
            acceptance_criteria=format_criteria(story),
            iteration=self.state.iteration,
            review_max=self.config.review_max,
            review_text=self.state.last_review or "",
        )

        outcome = self._invoke(Phase.CORRECT, prompt, story.id)
        if outcome is None:
            return

        if outcome.work_summary:
            self.state.work_summary = outcome.work_summary
        self.state.iteration += 1
        self.fsm.correct_done()

    def _committing(self) -> None:
        spec = self._load_spec()
        story = self._current_story()
        spec_path = Path(self.state.spec_path)
        start = self.state.story_start_commit or self.state.baseline_commit
        hints = extract_hints(self.state.last_output or "")

        # The passes flag lands in the story's own commit
        already_passed = story.passes
        spec.mark_story_complete(story.id)
        save_spec(spec, spec_path)

        committed = False
        if self.config.commit:
            try:
                result = self.git.stage_and_commit(commit_message(story, self.state.work_summary))
            except RunError:
                story.passes = already_passed
                save_spec(spec, spec_path)
                raise
            commit_hash = result.commit_hash or self.git.head_commit()
            # A resumed commit that already landed shows up as a clean tree past the start
            committed = result.outcome == CommitOutcome.COMMITTED or commit_hash != start
            entries = self.git.diff_paths(start, head=commit_hash).entries if start else []
        else:
            commit_hash = self.git.head_commit()
            entries = self.git.diff_paths(start).entries if start else []
            entries = self.state.knowledge.filter_our_changes(entries, hints.file_hints().keys())

        spec_file = self._relative_to_workdir(spec_path)
        entries = [e for e in entries if e.path != spec_file]
        line_counts = {
            e.path: self.git.line_count(e.path)
            for e in entries
            if (self.workdir / e.path).is_file()
        }
        self.state.knowledge.record_story_changes(story.id, entries, commit_hash, hints, line_counts)
        self.state.knowledge.merge_agent_extract(story.id, hints)

        self.state.last_commit = commit_hash
        self.state.current_story = None

        if committed:
            self.echo(f"Committed {story.id} as {commit_hash[:7]}")
            self.fsm.commit_ok()
        else:
            self.echo(f"Nothing to commit for {story.id}")
            self.fsm.nothing_to_commit()

    def _creating_pr(self) -> None:
        if not self.config.pull_request:
            self.echo("Pull request step disabled")
            self.fsm.create_pr_ok()
            return

        spec = self._load_spec()
        branch = self.state.branch or self.git.current_branch()
        if not branch:
            raise RunError(ErrorKind.GIT_ERROR, "Could not determine the current branch")

        detection = self.prs.detect_pr_for_branch(branch)
        if detection.outcome == DetectOutcome.ON_DEFAULT_BRANCH:
            raise RunError(ErrorKind.PR_PROVIDER_ERROR, "refusing to open a PR from the default branch")
        if detection.outcome == DetectOutcome.ERROR:
            raise RunError(ErrorKind.PR_PROVIDER_ERROR, detection.error or "PR detection failed")

        pushed = self.git.push(branch, self.config.remote)
        if pushed == PushOutcome.ALREADY_UP_TO_DATE:
            logger.info(f"{branch} already up to date on {self.config.remote}")

        title = format_pr_title(spec)
        body = format_pr_description(spec, self.state.knowledge)
        number = None

        if detection.outcome == DetectOutcome.FOUND:
            number = detection.pr.number
            updated = self.prs.update_pr_body(number, body)
            if not updated.success:
                raise RunError(ErrorKind.PR_PROVIDER_ERROR, updated.error or "PR update failed")
            url = updated.url or detection.pr.url
            self.echo(f"Updated PR #{number}: {url}")
        else:
            created = self.prs.create_pr(title, body, draft=self.config.draft_pr, head=branch)
            if created.outcome == CreateOutcome.ERROR:
                raise RunError(ErrorKind.PR_PROVIDER_ERROR, created.error or "PR creation failed")
            url = created.url
            verb = "Created" if created.outcome == CreateOutcome.CREATED else "Found existing"
            self.echo(f"{verb} PR: {url}")

        self.state.pr_url = url

        if number is not None:
            comments = self.prs.unresolved_comments(number)
            if comments.error:
                logger.warning(f"Could not fetch review comments for PR #{number}: {comments.error}")
            elif comments.comments:
                self.echo(f"PR #{number} has {len(comments.comments)} unresolved review comment(s)")

        self.fsm.create_pr_ok()
