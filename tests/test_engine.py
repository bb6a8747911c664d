"""Tests for storyforge.workflow.engine, with fake agent, git and PR adapters."""

import json
import shutil
import subprocess
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from storyforge.agents.claude import AgentOutcome, OutcomeKind
from storyforge.agents.permissions import Phase
from storyforge.git.adapter import CommitOutcome, CommitResult, GitAdapter, PushOutcome
from storyforge.git.diff import DiffEntry, DiffPaths, DiffStatus
from storyforge.lib.config import Config, ensure_state_dir
from storyforge.lib.constants import EXIT_ABORTED, EXIT_FAILED, EXIT_OK, REVIEW_ERROR_MAX_BYTES
from storyforge.lib.errors import ErrorKind, RunError, StatePersistenceFailed
from storyforge.lib.github import (
    CreateOutcome,
    DetectOutcome,
    PRComment,
    PRCommentsResult,
    PRCreateResult,
    PRDetection,
    PRInfo,
    PRUpdateResult,
)
from storyforge.lib.prompts import PromptError
from storyforge.lib.spec import Spec, Story, load_spec, save_spec
from storyforge.lib.usage import Usage
from storyforge.runner.state import RunState, StateStore
from storyforge.workflow.engine import (
    WorkflowEngine,
    commit_message,
    format_criteria,
    review_passed,
    trim_bytes,
)

IMPLEMENTED = """\
Implemented the story.

## Files Created
- src/todo.py | Todo model | Todo

## Summary
Added the todo model.
"""


def _reply(text, tokens=10):
    return AgentOutcome(
        OutcomeKind.ITERATION_COMPLETE,
        text=text,
        usage=Usage(input_tokens=tokens, output_tokens=tokens),
        work_summary="Added the todo model." if "## Summary" in text else None,
    )


PASS = _reply("REVIEW: PASS\nLooks good.")
FAIL = _reply("REVIEW: FAIL\n- missing validation")


class FakeRunner:
    """Plays back scripted outcomes; a callable entry is called with (phase, prompt)."""

    def __init__(self, script, git=None):
        self.script = list(script)
        self.git = git
        self.calls = []

    @property
    def phases(self):
        return [phase for phase, _, _ in self.calls]

    def run(self, phase, prompt, story_id=None):
        self.calls.append((phase, prompt, story_id))
        if not self.script:
            raise AssertionError(f"unexpected agent call for {phase}")
        entry = self.script.pop(0)
        outcome = entry(phase, prompt) if callable(entry) else entry
        if self.git is not None and phase in (Phase.IMPLEMENT, Phase.CORRECT) and outcome.ok:
            self.git.dirty = True
        return outcome


class FakeGit:
    def __init__(self):
        self.commits = ["0" * 40]
        self.branch = "main"
        self.dirty = False
        self.pushed = []
        self.messages = []

    def current_branch(self):
        return self.branch

    def ensure_branch(self, branch):
        self.branch = branch

    def head_commit(self):
        return self.commits[-1]

    def stage_and_commit(self, message):
        if not self.dirty:
            return CommitResult(CommitOutcome.NOTHING_TO_COMMIT)
        self.dirty = False
        self.commits.append(f"{len(self.commits):040x}")
        self.messages.append(message)
        return CommitResult(CommitOutcome.COMMITTED, self.commits[-1])

    def diff_paths(self, baseline, head=None):
        return DiffPaths([DiffEntry("src/todo.py", DiffStatus.ADDED, 12, 0)])

    def line_count(self, path):
        return 12

    def push(self, branch, remote="origin"):
        self.pushed.append((branch, remote))
        return PushOutcome.PUSHED


class FakePRs:
    def __init__(self, detection=None):
        self.detection = detection or PRDetection(DetectOutcome.NO_PR_FOR_BRANCH)
        self.created = []
        self.updated = []

    def detect_pr_for_branch(self, branch=None):
        return self.detection

    def create_pr(self, title, body, draft=False, head=None):
        self.created.append((title, body, head))
        return PRCreateResult(CreateOutcome.CREATED, url="https://github.com/o/r/pull/1")

    def update_pr_body(self, number, body):
        self.updated.append((number, body))
        return PRUpdateResult(url=f"https://github.com/o/r/pull/{number}")

    def unresolved_comments(self, number):
        return PRCommentsResult([PRComment(author="alice", body="nit")])


def _write_spec(tmp_path, count=2):
    stories = [
        Story(f"US-00{i}", f"Story {i}", acceptance_criteria=[f"criterion {i}"], priority=i)
        for i in range(1, count + 1)
    ]
    path = tmp_path / "prd.json"
    save_spec(Spec("Todo", "feat/todo", "A todo app.", stories), path)
    return path


@pytest.fixture
def env(tmp_path):
    """Build engines sharing one workdir, store, git and PR fake."""
    store = StateStore(tmp_path / ".storyforge")
    git = FakeGit()
    prs = FakePRs()
    echoed = []

    def make(script, state=None, **config):
        if state is None:
            state = RunState.new(spec_path=_write_spec(tmp_path))
        runner = FakeRunner(script, git)
        engine = WorkflowEngine(
            Config(**config), tmp_path, store, state, runner, git, prs, echo=echoed.append
        )
        return engine, runner

    return SimpleNamespace(
        make=make,
        store=store,
        git=git,
        prs=prs,
        echoed=echoed,
        spec_path=tmp_path / "prd.json",
    )


class TestHelpers:
    def test_review_passed_first_non_empty_line(self):
        assert review_passed("\n  REVIEW: PASS  \nfine")
        assert not review_passed("Overall good.\nREVIEW: PASS")
        assert not review_passed("review: pass")
        assert not review_passed("REVIEW: FAIL")
        assert not review_passed("")

    def test_trim_bytes_respects_characters(self):
        assert trim_bytes("abc", 10) == "abc"
        assert trim_bytes("é" * 3, 3) == "é"

    def test_format_criteria(self):
        assert format_criteria(Story("US-1", "t", acceptance_criteria=["a", "b"])) == "- a\n- b"
        assert format_criteria(Story("US-1", "t")) == "- (none listed)"

    def test_commit_message(self):
        story = Story("US-001", "Add items")
        assert commit_message(story, None) == "feat(US-001): Add items"
        assert commit_message(story, "Did it.") == "feat(US-001): Add items\n\nDid it."


class TestHappyPath:
    def test_two_stories_first_try(self, env):
        engine, runner = env.make([_reply(IMPLEMENTED), PASS, _reply(IMPLEMENTED), PASS])
        assert engine.run() == EXIT_OK

        assert runner.phases == [Phase.IMPLEMENT, Phase.REVIEW, Phase.IMPLEMENT, Phase.REVIEW]
        assert [story_id for _, _, story_id in runner.calls] == ["US-001", "US-001", "US-002", "US-002"]
        assert load_spec(env.spec_path).all_complete()
        assert len(env.git.messages) == 2
        assert env.git.messages[0] == "feat(US-001): Story 1\n\nAdded the todo model."
        assert env.git.pushed == [("feat/todo", "origin")]
        assert env.prs.created[0][2] == "feat/todo"
        assert engine.state.pr_url == "https://github.com/o/r/pull/1"
        assert engine.state.usage.input_tokens == 40
        assert engine.state.story_usage["US-002"].input_tokens == 20

    def test_completed_run_is_archived_with_history(self, env):
        engine, _ = env.make([_reply(IMPLEMENTED), PASS, _reply(IMPLEMENTED), PASS])
        engine.run()
        assert not env.store.exists()
        assert [s.run_id for s in env.store.list_archived()] == [engine.state.run_id]
        record = env.store.history()[-1]
        assert record.outcome == "completed"
        assert (record.stories_done, record.stories_total) == (2, 2)

    def test_knowledge_recorded_per_story(self, env):
        engine, runner = env.make([_reply(IMPLEMENTED), PASS, _reply(IMPLEMENTED), PASS])
        engine.run()
        changes = engine.state.knowledge.changes_for("US-001")
        assert changes.commit_hash == env.git.commits[1]
        assert [c.path for c in changes.files_created] == ["src/todo.py"]
        assert changes.files_created[0].purpose == "Todo model"
        # The second implement prompt carries what the first story did
        assert "src/todo.py" in runner.calls[2][1]

    def test_state_persisted_before_each_phase(self, env):
        engine, _ = env.make([_reply(IMPLEMENTED), PASS])
        seen = []
        original = env.store.save

        def spy(state):
            seen.append(state.phase)
            original(state)

        env.store.save = spy
        for _ in range(5):
            engine.step()
        assert engine.phase == "reviewing"
        assert seen[:5] == ["initializing", "loading_spec", "picking_story", "running_claude", "reviewing"]


class TestReviewLoop:
    def test_two_corrections_then_pass(self, env, tmp_path):
        _write_spec(tmp_path, count=1)
        state = RunState.new(spec_path=env.spec_path)
        engine, runner = env.make(
            [_reply(IMPLEMENTED), FAIL, _reply("fixed"), FAIL, _reply("fixed again"), PASS],
            state=state,
        )
        assert engine.run() == EXIT_OK
        assert runner.phases == [
            Phase.IMPLEMENT, Phase.REVIEW, Phase.CORRECT, Phase.REVIEW, Phase.CORRECT, Phase.REVIEW,
        ]
        assert "missing validation" in runner.calls[2][1]
        assert [line for line in env.echoed if line.startswith("Review ")] == [
            "Review 1/3: FAIL", "Review 2/3: FAIL", "Review 3/3: PASS",
        ]

    def test_verdict_taken_from_final_reply(self, env, tmp_path):
        _write_spec(tmp_path, count=1)
        verdict = "REVIEW: PASS\nAll criteria met."
        narrated = AgentOutcome(
            OutcomeKind.ITERATION_COMPLETE,
            text="Let me inspect the diff first.\n" + verdict,
            reply=verdict,
        )
        engine, runner = env.make([_reply(IMPLEMENTED), narrated], state=RunState.new(spec_path=env.spec_path))
        assert engine.run() == EXIT_OK
        assert runner.phases == [Phase.IMPLEMENT, Phase.REVIEW]
        assert "Review 1/3: PASS" in env.echoed

    def test_correct_sees_whole_review_transcript(self, env, tmp_path):
        _write_spec(tmp_path, count=1)
        narrated = AgentOutcome(
            OutcomeKind.ITERATION_COMPLETE,
            text="Checked the model.\nREVIEW: FAIL\n- no validation",
            reply="REVIEW: FAIL\n- no validation",
        )
        engine, runner = env.make(
            [_reply(IMPLEMENTED), narrated, _reply("fixed"), PASS],
            state=RunState.new(spec_path=env.spec_path),
        )
        assert engine.run() == EXIT_OK
        correct_prompt = runner.calls[2][1]
        assert "Checked the model." in correct_prompt
        assert "- no validation" in correct_prompt

    def test_exhausted_fails(self, env, tmp_path):
        _write_spec(tmp_path, count=1)
        long_fail = _reply("REVIEW: FAIL\n" + "x" * 5000)
        engine, runner = env.make(
            [_reply(IMPLEMENTED), FAIL, _reply("fixed"), long_fail],
            state=RunState.new(spec_path=env.spec_path),
            review_max=2,
        )
        assert engine.run() == EXIT_FAILED
        error = engine.state.last_error
        assert error.kind == ErrorKind.REVIEW_EXHAUSTED
        assert error.phase == "reviewing"
        assert len(error.message.encode()) <= REVIEW_ERROR_MAX_BYTES
        assert env.store.load().phase == "failed"
        assert env.store.history()[-1].error_kind == "ReviewExhausted"
        assert not env.git.messages

    def test_exhausted_continue_commits(self, env, tmp_path):
        _write_spec(tmp_path, count=1)
        engine, _ = env.make(
            [_reply(IMPLEMENTED), FAIL],
            state=RunState.new(spec_path=env.spec_path),
            review_max=1,
            continue_on_review_exhaustion=True,
        )
        assert engine.run() == EXIT_OK
        assert len(env.git.messages) == 1
        assert load_spec(env.spec_path).all_complete()

    def test_review_disabled_skips_review(self, env, tmp_path):
        _write_spec(tmp_path, count=1)
        engine, runner = env.make(
            [_reply(IMPLEMENTED)],
            state=RunState.new(spec_path=env.spec_path),
            review=False,
        )
        assert engine.run() == EXIT_OK
        assert runner.phases == [Phase.IMPLEMENT]

    def test_counters_reset_per_story(self, env):
        engine, _ = env.make([_reply(IMPLEMENTED), FAIL, _reply("fixed"), PASS, _reply(IMPLEMENTED), PASS])
        while engine.state.current_story != "US-002" or engine.phase != "running_claude":
            engine.step()
        assert engine.state.iteration == 1
        assert engine.state.review_count == 0
        assert engine.state.last_review is None


class TestAgentOutcomes:
    def test_all_stories_complete_goes_to_pr(self, env):
        engine, runner = env.make([AgentOutcome(OutcomeKind.ALL_STORIES_COMPLETE, text="ALL STORIES COMPLETE")])
        assert engine.run() == EXIT_OK
        assert runner.phases == [Phase.IMPLEMENT]
        assert not env.git.messages
        assert len(env.prs.created) == 1

    def test_agent_error_fails_run(self, env):
        failure = AgentOutcome(
            OutcomeKind.ERROR,
            error=RunError(ErrorKind.PROCESS_FAILED, "Claude exited with status 1", exit_code=1),
        )
        engine, _ = env.make([failure])
        assert engine.run() == EXIT_FAILED
        assert engine.state.last_error.kind == ErrorKind.PROCESS_FAILED
        assert engine.state.last_error.phase == "running_claude"


class TestInterruptAndResume:
    def test_interrupt_then_resume_reruns_phase(self, env):
        def interrupted(phase, prompt):
            engine.stop_event.set()
            return AgentOutcome(OutcomeKind.ERROR, interrupted=True, usage=Usage(input_tokens=3))

        engine, runner = env.make([interrupted])
        assert engine.run() == EXIT_ABORTED

        saved = env.store.load()
        assert saved.phase == "running_claude"
        assert saved.current_story == "US-001"
        assert saved.usage.input_tokens == 3

        resumed, runner2 = env.make(
            [_reply(IMPLEMENTED), PASS, _reply(IMPLEMENTED), PASS], state=saved
        )
        resumed.prepare_resume()
        assert resumed.run() == EXIT_OK
        assert runner2.phases[0] == Phase.IMPLEMENT
        assert runner2.calls[0][2] == "US-001"

    def test_resume_failed_run_at_failed_phase(self, env):
        failure = AgentOutcome(
            OutcomeKind.ERROR,
            error=RunError(ErrorKind.TIMEOUT, "review timed out after 10s"),
        )
        engine, _ = env.make([_reply(IMPLEMENTED), failure])
        assert engine.run() == EXIT_FAILED

        saved = env.store.load()
        resumed, runner = env.make([PASS, _reply(IMPLEMENTED), PASS], state=saved)
        resumed.prepare_resume()
        assert resumed.phase == "reviewing"
        assert resumed.state.last_error is None
        assert resumed.run() == EXIT_OK
        assert runner.phases[0] == Phase.REVIEW

    def test_resume_failed_without_phase_restarts_story_pick(self, env):
        state = RunState.new(spec_path=env.spec_path)
        _write_spec(env.spec_path.parent)
        state.phase = "failed"
        state.last_error = RunError(ErrorKind.INTERNAL, "boom", phase="completed")
        engine, _ = env.make([], state=state)
        engine.prepare_resume()
        assert engine.phase == "picking_story"

    def test_resume_committing_after_commit_landed(self, env):
        _write_spec(env.spec_path.parent, count=1)
        state = RunState.new(spec_path=env.spec_path)
        state.phase = "committing"
        state.branch = "feat/todo"
        state.current_story = "US-001"
        state.baseline_commit = state.story_start_commit = env.git.head_commit()
        env.git.commits.append("a" * 40)

        engine, _ = env.make([], state=state)
        engine.step()
        assert engine.phase == "picking_story"
        assert engine.state.last_commit == "a" * 40
        assert "Committed US-001 as aaaaaaa" in env.echoed

    def test_persistence_failure_propagates(self, env):
        engine, _ = env.make([])
        env.store.save = MagicMock(side_effect=StatePersistenceFailed("disk full"))
        with pytest.raises(StatePersistenceFailed):
            engine.step()
        assert engine.phase == "idle"
        assert engine.state.phase == "idle"


class TestCommitting:
    def test_nothing_to_commit(self, env, tmp_path):
        _write_spec(tmp_path, count=1)

        engine, _ = env.make([_reply(IMPLEMENTED), PASS], state=RunState.new(spec_path=env.spec_path))
        engine.runner.git = None
        assert engine.run() == EXIT_OK
        assert "Nothing to commit for US-001" in env.echoed
        assert engine.state.last_commit == env.git.commits[0]

    def test_commit_disabled_still_marks_story(self, env, tmp_path):
        _write_spec(tmp_path, count=1)
        engine, _ = env.make(
            [_reply(IMPLEMENTED), PASS],
            state=RunState.new(spec_path=env.spec_path),
            commit=False,
        )
        assert engine.run() == EXIT_OK
        assert not env.git.messages
        assert load_spec(env.spec_path).all_complete()

    def test_spec_update_lands_in_story_commit(self, env, tmp_path):
        _write_spec(tmp_path, count=1)
        engine, _ = env.make([_reply(IMPLEMENTED), PASS], state=RunState.new(spec_path=env.spec_path))
        seen = []
        original = env.git.stage_and_commit

        def spy(message):
            seen.append(load_spec(env.spec_path).get_story("US-001").passes)
            return original(message)

        env.git.stage_and_commit = spy
        assert engine.run() == EXIT_OK
        assert seen == [True]

    def test_commit_failure_restores_spec(self, env, tmp_path):
        _write_spec(tmp_path, count=1)
        engine, _ = env.make([_reply(IMPLEMENTED), PASS], state=RunState.new(spec_path=env.spec_path))
        env.git.stage_and_commit = MagicMock(
            side_effect=RunError(ErrorKind.GIT_ERROR, "git commit failed: hook rejected", exit_code=1)
        )
        assert engine.run() == EXIT_FAILED
        assert engine.state.last_error.phase == "committing"
        assert not load_spec(env.spec_path).get_story("US-001").passes

    def test_spec_file_not_recorded_as_story_change(self, env, tmp_path):
        _write_spec(tmp_path, count=1)
        env.git.diff_paths = lambda baseline, head=None: DiffPaths([
            DiffEntry("prd.json", DiffStatus.MODIFIED, 1, 1),
            DiffEntry("src/todo.py", DiffStatus.ADDED, 12, 0),
        ])
        engine, _ = env.make([_reply(IMPLEMENTED), PASS], state=RunState.new(spec_path=env.spec_path))
        assert engine.run() == EXIT_OK
        assert engine.state.knowledge.changes_for("US-001").paths() == ["src/todo.py"]


def _git(repo, *args):
    return subprocess.run(
        ["git", "-C", str(repo), *args], check=True, capture_output=True, text=True
    ).stdout


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
class TestCommittingRealRepo:
    """Commits against a throwaway repository with the real git adapter."""

    def _writing(self, path, content):
        def write(phase, prompt):
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
            return _reply(IMPLEMENTED)
        return write

    def test_tree_clean_after_each_story(self, tmp_path):
        _git(tmp_path, "init", "-q", "-b", "main")
        _git(tmp_path, "config", "user.email", "dev@example.com")
        _git(tmp_path, "config", "user.name", "Dev")
        _git(tmp_path, "config", "commit.gpgsign", "false")
        spec_path = _write_spec(tmp_path)
        ensure_state_dir(tmp_path / ".storyforge")
        _git(tmp_path, "add", "-A")
        _git(tmp_path, "commit", "-q", "-m", "init")

        runner = FakeRunner([
            self._writing(tmp_path / "src" / "a.py", "a = 1\n"), PASS,
            self._writing(tmp_path / "src" / "b.py", "b = 2\n"), PASS,
        ])
        engine = WorkflowEngine(
            Config(pull_request=False),
            tmp_path,
            StateStore(tmp_path / ".storyforge"),
            RunState.new(spec_path=spec_path),
            runner,
            GitAdapter(tmp_path),
            FakePRs(),
            echo=lambda line: None,
        )

        while engine.should_continue():
            engine.step()
            if engine.phase == "picking_story" and engine.state.last_commit:
                assert _git(tmp_path, "status", "--porcelain") == ""

        assert engine.finish() == EXIT_OK
        assert _git(tmp_path, "status", "--porcelain") == ""
        assert "prd.json" in _git(tmp_path, "show", "--name-only", "--format=", "HEAD").split()
        committed = json.loads(_git(tmp_path, "show", "HEAD:prd.json"))
        assert all(story["passes"] for story in committed["userStories"])
        knowledge = engine.state.knowledge
        assert knowledge.changes_for("US-001").paths() == ["src/a.py"]
        assert knowledge.changes_for("US-002").paths() == ["src/b.py"]


class TestCreatingPR:
    def _done_state(self, env):
        spec_path = _write_spec(env.spec_path.parent, count=1)
        spec = load_spec(spec_path)
        spec.mark_story_complete("US-001")
        save_spec(spec, spec_path)
        state = RunState.new(spec_path=spec_path)
        state.phase = "creating_pr"
        state.branch = "feat/todo"
        return state

    def test_updates_existing_pr(self, env):
        env.prs.detection = PRDetection(
            DetectOutcome.FOUND, pr=PRInfo(5, "[Todo] A todo app.", "https://github.com/o/r/pull/5", "feat/todo")
        )
        engine, _ = env.make([], state=self._done_state(env))
        assert engine.run() == EXIT_OK
        assert env.prs.updated[0][0] == 5
        assert "## Completed" in env.prs.updated[0][1]
        assert not env.prs.created
        assert "PR #5 has 1 unresolved review comment(s)" in env.echoed

    def test_default_branch_refused(self, env):
        env.prs.detection = PRDetection(DetectOutcome.ON_DEFAULT_BRANCH)
        engine, _ = env.make([], state=self._done_state(env))
        assert engine.run() == EXIT_FAILED
        assert engine.state.last_error.kind == ErrorKind.PR_PROVIDER_ERROR
        assert "default branch" in engine.state.last_error.message
        assert not env.git.pushed

    def test_disabled(self, env):
        engine, _ = env.make([], state=self._done_state(env), pull_request=False)
        assert engine.run() == EXIT_OK
        assert not env.git.pushed
        assert engine.state.pr_url is None


class TestSpecGeneration:
    def _markdown_state(self, tmp_path):
        md = tmp_path / "todo.md"
        md.write_text("# Todo\n\nA todo app.\n\n## US-001: Add items\n- Can add\n")
        return RunState.new(spec_path=md.with_suffix(".json"), spec_markdown_path=md)

    def test_agent_writes_json(self, env, tmp_path):
        state = self._markdown_state(tmp_path)

        def write_spec(phase, prompt):
            data = {
                "project": "Todo",
                "branchName": "feat/generated",
                "description": "A todo app.",
                "userStories": [{"id": "US-001", "title": "Add items", "acceptanceCriteria": ["Can add"]}],
            }
            (tmp_path / "todo.json").write_text(json.dumps(data))
            return _reply("wrote it")

        engine, runner = env.make([write_spec], state=state)
        while engine.phase != "picking_story":
            engine.step()
        assert runner.phases == [Phase.GENERATE_SPEC]
        assert engine.state.branch == "feat/generated"

    def test_falls_back_to_markdown_parser(self, env, tmp_path, caplog):
        state = self._markdown_state(tmp_path)
        engine, runner = env.make(
            [_reply("no file"), _reply("still no file")],
            state=state,
            spec_generation_attempts=2,
        )
        while engine.phase != "picking_story":
            engine.step()
        assert len(runner.calls) == 2
        assert "Previous Attempt Failed" in runner.calls[1][1]
        spec = load_spec(tmp_path / "todo.json")
        assert [s.id for s in spec.user_stories] == ["US-001"]
        assert "parsing" in caplog.text

    def test_existing_json_is_reused(self, env, tmp_path):
        state = self._markdown_state(tmp_path)
        _write_spec(tmp_path)
        (tmp_path / "prd.json").rename(tmp_path / "todo.json")
        engine, runner = env.make([], state=state)
        engine.step()
        engine.step()
        assert engine.phase == "loading_spec"
        assert not runner.calls

    def test_missing_spec_fails(self, env, tmp_path):
        state = RunState.new(spec_path=tmp_path / "missing.json")
        engine, _ = env.make([], state=state)
        assert engine.run() == EXIT_FAILED
        assert engine.state.last_error.kind == ErrorKind.MALFORMED_SPEC
        assert engine.state.last_error.phase == "initializing"

    def test_unreadable_markdown_fails(self, env, tmp_path):
        md = tmp_path / "todo.md"
        md.mkdir()
        state = RunState.new(spec_path=tmp_path / "todo.json", spec_markdown_path=md)
        engine, runner = env.make([], state=state)
        assert engine.run() == EXIT_FAILED
        assert engine.state.last_error.kind == ErrorKind.MALFORMED_SPEC
        assert engine.state.last_error.phase == "generating_spec"
        assert not runner.calls


class TestUnexpectedErrors:
    def test_prompt_error_fails_run(self, env):
        engine, runner = env.make([])
        with patch("storyforge.workflow.engine.render_prompt", side_effect=PromptError("Prompt 'implement' not found")):
            assert engine.run() == EXIT_FAILED
        error = engine.state.last_error
        assert error.kind == ErrorKind.INTERNAL
        assert error.phase == "running_claude"
        assert "not found" in error.message
        assert env.store.load().phase == "failed"
        assert not runner.calls

    def test_os_error_fails_run(self, env, tmp_path):
        _write_spec(tmp_path, count=1)
        engine, _ = env.make([_reply(IMPLEMENTED), PASS], state=RunState.new(spec_path=env.spec_path))
        with patch("storyforge.workflow.engine.save_spec", side_effect=PermissionError("prd.json: read-only")):
            assert engine.run() == EXIT_FAILED
        assert engine.state.last_error.kind == ErrorKind.INTERNAL
        assert engine.state.last_error.phase == "committing"
        assert "read-only" in engine.state.last_error.message
        assert not env.git.messages
