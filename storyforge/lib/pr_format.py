"""PR title and description built from the spec and its story status."""

import re
from typing import Optional

from storyforge.lib.knowledge import Knowledge
from storyforge.lib.spec import Spec, Story

PR_TITLE_MAX_LENGTH = 72

_SENTENCE_END = re.compile(r"[.!?](?=\s|$)")


def first_line_or_sentence(text: str) -> str:
    """First non-empty line if the text spans lines, else the first sentence."""
    text = text.strip()
    first_line = text.split("\n", 1)[0].strip()
    if "\n" in text and first_line:
        return first_line
    match = _SENTENCE_END.search(text)
    if match:
        return text[: match.end()].strip()
    return text


def truncate_with_ellipsis(text: str, max_len: int) -> str:
    """Truncate at a word boundary, appending '...'."""
    if len(text) <= max_len:
        return text
    target = max_len - 3
    cut = text.rfind(" ", 0, target)
    if cut <= 0:
        cut = target
    return text[:cut].rstrip() + "..."


def format_pr_title(spec: Spec) -> str:
    first = first_line_or_sentence(spec.description) or spec.project
    title = f"[{spec.project}] {first}" if spec.project else first
    return truncate_with_ellipsis(title, PR_TITLE_MAX_LENGTH)


def _format_story(story: Story, knowledge: Optional[Knowledge]) -> list[str]:
    lines = [f"### {story.id}: {story.title}", ""]
    if story.description:
        lines += [story.description, ""]

    if story.acceptance_criteria:
        checkbox = "[x]" if story.passes else "[ ]"
        lines += ["**Acceptance Criteria:**", ""]
        lines += [f"- {checkbox} {criterion}" for criterion in story.acceptance_criteria]
        lines.append("")

    if story.notes:
        lines += ["**Notes:**", "", story.notes, ""]

    changes = knowledge.changes_for(story.id) if knowledge else None
    if changes and changes.paths():
        commit = f" ({changes.commit_hash[:7]})" if changes.commit_hash else ""
        lines += [f"**Files{commit}:**", ""]
        lines += [f"- `{c.path}` (+{c.additions}/-{c.deletions})" for c in changes.files_created]
        lines += [f"- `{c.path}` (+{c.additions}/-{c.deletions})" for c in changes.files_modified]
        lines += [f"- `{path}` (deleted)" for path in changes.files_deleted]
        lines.append("")

    return lines


def format_pr_description(spec: Spec, knowledge: Optional[Knowledge] = None) -> str:
    """Markdown PR body.

    With no completed stories every story is listed under Changes; otherwise
    stories are split into Completed and Remaining.
    """
    lines = ["## Summary", "", spec.description, ""]

    completed = [s for s in spec.user_stories if s.passes]
    remaining = [s for s in spec.user_stories if not s.passes]

    if not completed:
        lines += ["## Changes", ""]
        for story in spec.user_stories:
            lines += _format_story(story, knowledge)
    else:
        lines += ["## Completed", ""]
        for story in completed:
            lines += _format_story(story, knowledge)
        if remaining:
            lines += ["## Remaining", ""]
            for story in remaining:
                lines += _format_story(story, knowledge)

    return "\n".join(lines).rstrip()
