"""Tests for the storyforge pr-review command."""

from unittest.mock import MagicMock, patch

import pytest

from storyforge.agents.claude import AgentOutcome, OutcomeKind
from storyforge.agents.permissions import Phase
from storyforge.cli import main
from storyforge.commands.pr_review import (
    find_spec,
    fix_commit_message,
    format_comments,
    format_spec_context,
    prompt_choice,
    select_pr,
)
from storyforge.git.adapter import CommitOutcome, CommitResult, PushOutcome
from storyforge.lib.config import state_dir
from storyforge.lib.constants import EXIT_FAILED, EXIT_LOCK_CONFLICT, EXIT_OK
from storyforge.lib.errors import ErrorKind, LockConflict, RunError
from storyforge.lib.github import (
    DetectOutcome,
    PRBodyResult,
    PRComment,
    PRCommentsResult,
    PRDetection,
    PRInfo,
    PRListResult,
)
from storyforge.lib.spec import Spec, Story, save_spec
from storyforge.runner.state import RunState, StateStore

PR_7 = PRInfo(7, "[Todo] A todo app.", "https://github.com/o/r/pull/7", "feat/todo")
PR_9 = PRInfo(9, "Fix typo", "https://github.com/o/r/pull/9", "fix/typo")

COMMENTS = [
    PRComment(author="alice", body="This drops empty titles.\nPlease validate.", file_path="src/todo.py", line=12),
    PRComment(author="bob", body="Rename to add_item?", file_path="src/todo.py"),
]

FIXED = """\
Validated titles in add().

## Summary
- **Total comments analyzed:** 2
- **Real issues fixed:** 1
- **Legitimate suggestions:** 1
- **Red herrings identified:** 0
"""


def _prs(detection=None, listed=None, comments=None):
    prs = MagicMock()
    prs.detect_pr_for_branch.return_value = detection or PRDetection(DetectOutcome.FOUND, pr=PR_7)
    prs.list_open_prs.return_value = listed or PRListResult([PR_7, PR_9])
    prs.unresolved_comments.return_value = comments or PRCommentsResult(list(COMMENTS))
    prs.pr_body.return_value = PRBodyResult(body="## Completed\n- US-001")
    return prs


class TestSelectPR:
    def test_current_branch_pr(self):
        prs = _prs()
        assert select_pr(prs) == PR_7
        prs.list_open_prs.assert_not_called()

    def test_explicit_number(self):
        prs = _prs()
        assert select_pr(prs, 9) == PR_9
        prs.detect_pr_for_branch.assert_not_called()

    def test_explicit_number_not_open(self):
        with pytest.raises(RunError, match="#42 is not open"):
            select_pr(_prs(), 42)

    def test_single_open_pr_used_without_asking(self):
        prs = _prs(PRDetection(DetectOutcome.ON_DEFAULT_BRANCH), PRListResult([PR_9]))
        assert select_pr(prs) == PR_9

    @patch("builtins.input", return_value="2")
    def test_choice_among_open_prs(self, mock_input, capsys):
        prs = _prs(PRDetection(DetectOutcome.NO_PR_FOR_BRANCH))
        assert select_pr(prs) == PR_9
        assert "#9 [fix/typo] Fix typo" in capsys.readouterr().out

    def test_nothing_open(self):
        prs = _prs(PRDetection(DetectOutcome.NO_PR_FOR_BRANCH), PRListResult([]))
        assert select_pr(prs) is None

    def test_detection_error(self):
        prs = _prs(PRDetection(DetectOutcome.ERROR, error="gh not authenticated"))
        with pytest.raises(RunError) as exc:
            select_pr(prs)
        assert exc.value.kind == ErrorKind.PR_PROVIDER_ERROR

    def test_list_error(self):
        prs = _prs(PRDetection(DetectOutcome.ON_DEFAULT_BRANCH), PRListResult([], error="HTTP 502"))
        with pytest.raises(RunError, match="HTTP 502"):
            select_pr(prs)


class TestPromptChoice:
    @patch("builtins.input", side_effect=["x", "5", "1"])
    def test_reasks_until_valid(self, mock_input, capsys):
        assert prompt_choice("Pick", ["a", "b"]) == 0
        out = capsys.readouterr().out
        assert "valid number" in out
        assert "between 1 and 2" in out

    @patch("builtins.input", side_effect=EOFError)
    def test_eof_takes_default(self, mock_input):
        assert prompt_choice("Pick", ["a", "b"], default=2) == 1


class TestFormatting:
    def test_comments_quoted_with_location(self):
        text = format_comments(COMMENTS)
        assert "### Comment 1 from @alice (src/todo.py:12)" in text
        assert "> This drops empty titles.\n> Please validate." in text
        assert "### Comment 2 from @bob (src/todo.py)" in text

    def test_conversation_comment(self):
        text = format_comments([PRComment(author="carol", body="LGTM?", is_review_thread=False)])
        assert "(PR conversation)" in text

    def test_spec_context(self):
        spec = Spec("Todo", "feat/todo", "A todo app.", [Story("US-001", "Add items", acceptance_criteria=["Can add"])])
        text = format_spec_context(spec, "feat/todo")
        assert "### US-001: Add items" in text
        assert "- Can add" in text

    def test_no_spec_context(self):
        assert "No spec file found for branch `feat/x`" in format_spec_context(None, "feat/x")

    def test_commit_message(self):
        assert fix_commit_message(PR_7, None) == "fix: address review comments on PR #7"
        assert fix_commit_message(PR_7, "Did it.").endswith("\n\nDid it.")


class TestFindSpec:
    def test_explicit_path(self, tmp_path):
        save_spec(Spec("Todo", "feat/todo", "", [Story("US-001", "Add")]), tmp_path / "prd.json")
        store = StateStore(state_dir(tmp_path))
        assert find_spec("prd.json", tmp_path, store).project == "Todo"

    def test_stored_run_spec(self, tmp_path):
        path = tmp_path / "prd.json"
        save_spec(Spec("Todo", "feat/todo", "", [Story("US-001", "Add")]), path)
        store = StateStore(state_dir(tmp_path))
        store.save(RunState.new(spec_path=path))
        assert find_spec(None, tmp_path, store).project == "Todo"

    def test_stored_spec_missing_is_ignored(self, tmp_path, caplog):
        store = StateStore(state_dir(tmp_path))
        store.save(RunState.new(spec_path=tmp_path / "gone.json"))
        assert find_spec(None, tmp_path, store) is None
        assert "Ignoring spec" in caplog.text

    def test_no_run(self, tmp_path):
        assert find_spec(None, tmp_path, StateStore(state_dir(tmp_path))) is None


@pytest.fixture
def command(tmp_path):
    """Patch the adapters and agent used by the command."""
    prs = _prs()
    git = MagicMock()
    git.current_branch.return_value = "feat/todo"
    git.stage_and_commit.return_value = CommitResult(CommitOutcome.COMMITTED, "c" * 40)
    git.push.return_value = PushOutcome.PUSHED
    runner = MagicMock()
    runner.run.return_value = AgentOutcome(
        OutcomeKind.ITERATION_COMPLETE, text=FIXED, reply=FIXED, work_summary="fixed one"
    )
    with patch("storyforge.commands.pr_review.PRAdapter", return_value=prs), \
            patch("storyforge.commands.pr_review.GitAdapter", return_value=git), \
            patch("storyforge.commands.pr_review.ClaudeRunner", return_value=runner) as runner_cls:
        yield MagicMock(prs=prs, git=git, runner=runner, runner_cls=runner_cls)


def _cli(tmp_path, *args):
    return main(["-C", str(tmp_path), "pr-review", *args])


class TestCommand:
    def test_fixes_committed_and_pushed(self, tmp_path, command, capsys):
        assert _cli(tmp_path) == EXIT_OK

        phase, prompt = command.runner.run.call_args[0]
        assert phase == Phase.PR_REVIEW
        assert "pull request #7" in prompt
        assert "@alice (src/todo.py:12)" in prompt
        assert "## Completed" in prompt
        assert command.runner_cls.call_args.kwargs["run_id"] == "pr-7"

        command.git.stage_and_commit.assert_called_once_with(
            "fix: address review comments on PR #7\n\nfixed one"
        )
        command.git.push.assert_called_once_with("feat/todo", "origin")
        out = capsys.readouterr().out
        assert "2 analyzed, 1 fixed, 1 suggestions, 0 red herrings" in out
        assert "Committed fixes as ccccccc" in out

    def test_no_unresolved_comments(self, tmp_path, command, capsys):
        command.prs.unresolved_comments.return_value = PRCommentsResult([])
        assert _cli(tmp_path) == EXIT_OK
        command.runner.run.assert_not_called()
        assert "no unresolved review comments" in capsys.readouterr().out

    def test_no_open_prs(self, tmp_path, command, capsys):
        command.prs.detect_pr_for_branch.return_value = PRDetection(DetectOutcome.ON_DEFAULT_BRANCH)
        command.prs.list_open_prs.return_value = PRListResult([])
        assert _cli(tmp_path) == EXIT_OK
        assert "No open pull requests" in capsys.readouterr().out

    def test_switches_to_selected_branch(self, tmp_path, command):
        command.git.current_branch.return_value = "main"
        command.git.is_clean.return_value = True
        assert _cli(tmp_path, "--pr", "9") == EXIT_OK
        command.git.switch_to.assert_called_once_with("fix/typo")
        command.git.push.assert_called_once_with("fix/typo", "origin")

    def test_dirty_tree_blocks_switch(self, tmp_path, command, capsys):
        command.git.current_branch.return_value = "main"
        command.git.is_clean.return_value = False
        assert _cli(tmp_path, "--pr", "9") == EXIT_FAILED
        command.git.switch_to.assert_not_called()
        assert "uncommitted changes" in capsys.readouterr().out

    def test_nothing_changed(self, tmp_path, command, capsys):
        command.git.stage_and_commit.return_value = CommitResult(CommitOutcome.NOTHING_TO_COMMIT)
        assert _cli(tmp_path) == EXIT_OK
        command.git.push.assert_not_called()
        assert "No changes to commit" in capsys.readouterr().out

    def test_commit_disabled(self, tmp_path, command):
        state_dir(tmp_path).mkdir()
        (state_dir(tmp_path) / "config.yaml").write_text("commit: false\n")
        assert _cli(tmp_path) == EXIT_OK
        command.git.stage_and_commit.assert_not_called()

    def test_push_disabled(self, tmp_path, command):
        state_dir(tmp_path).mkdir()
        (state_dir(tmp_path) / "config.yaml").write_text("pull_request: false\n")
        assert _cli(tmp_path) == EXIT_OK
        command.git.stage_and_commit.assert_called_once()
        command.git.push.assert_not_called()

    def test_agent_failure(self, tmp_path, command, capsys):
        command.runner.run.return_value = AgentOutcome(
            OutcomeKind.ERROR,
            error=RunError(ErrorKind.PROCESS_FAILED, "Claude exited with status 1", stderr="bad flag"),
        )
        assert _cli(tmp_path) == EXIT_FAILED
        command.git.stage_and_commit.assert_not_called()
        out = capsys.readouterr().out
        assert "ERROR: ProcessFailed: Claude exited with status 1" in out
        assert "bad flag" in out

    def test_lock_held(self, tmp_path, command, capsys):
        with patch("storyforge.commands.pr_review.run_lock") as mock_lock:
            mock_lock.side_effect = LockConflict("run lock held by pid 123")
            assert _cli(tmp_path) == EXIT_LOCK_CONFLICT
        assert "pid 123" in capsys.readouterr().out
