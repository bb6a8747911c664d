"""
Spec model: a project with an ordered list of user stories.

Two on-disk shapes are accepted:

- JSON (camelCase, validated against schemas/spec.schema.json)
- Markdown: `# Project`, a description paragraph, then one `## ` section per
  story with bulleted acceptance criteria

Markdown is turned into JSON by the GeneratingSpec phase. parse_markdown_spec
is the programmatic fallback used when the agent does not produce a valid
JSON file.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from storyforge.lib.atomic import atomic_write_json
from storyforge.lib.errors import MalformedSpec
from storyforge.lib.validate import ValidationError, validate, validate_file

logger = logging.getLogger(__name__)

DEFAULT_BRANCH_PREFIX = "storyforge/"

_STORY_HEADING = re.compile(r"^(?P<id>[A-Za-z][A-Za-z0-9]*-\d+)\s*[:.\-]\s*(?P<title>.+)$")
_BULLET = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+(?:\[[ xX]\]\s+)?(?P<text>.+)$")
_BRANCH_LINE = re.compile(r"^\**branch\**\s*:\s*`?(?P<branch>[^`\s]+)`?\s*$", re.IGNORECASE)
_NOTES_LINE = re.compile(r"^\**notes\**\s*:\s*(?P<notes>.*)$", re.IGNORECASE)


@dataclass
class Story:
    """A single user story."""
    id: str
    title: str
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    priority: int = 0
    passes: bool = False
    notes: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "acceptanceCriteria": list(self.acceptance_criteria),
            "priority": self.priority,
            "passes": self.passes,
            "notes": self.notes,
        }


@dataclass
class Spec:
    """Project metadata plus its stories, in file order."""
    project: str
    branch_name: str
    description: str = ""
    user_stories: list[Story] = field(default_factory=list)

    def get_story(self, story_id: str) -> Optional[Story]:
        for story in self.user_stories:
            if story.id == story_id:
                return story
        return None

    def next_story(self) -> Optional[Story]:
        """Lowest-priority-number unfinished story; file order breaks ties."""
        pending = [s for s in self.user_stories if not s.passes]
        if not pending:
            return None
        return min(pending, key=lambda s: s.priority)

    def mark_story_complete(self, story_id: str) -> bool:
        """Set passes on a story. Returns False if the id is unknown."""
        story = self.get_story(story_id)
        if story is None:
            return False
        story.passes = True
        return True

    @property
    def completed_count(self) -> int:
        return sum(1 for s in self.user_stories if s.passes)

    @property
    def total_count(self) -> int:
        return len(self.user_stories)

    def all_complete(self) -> bool:
        return all(s.passes for s in self.user_stories)

    def to_dict(self) -> dict:
        return {
            "project": self.project,
            "branchName": self.branch_name,
            "description": self.description,
            "userStories": [s.to_dict() for s in self.user_stories],
        }


def default_branch_name(project: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", project.lower()).strip("-")
    return DEFAULT_BRANCH_PREFIX + (slug or "feature")


def spec_from_dict(data: dict) -> Spec:
    """Build a Spec from its camelCase JSON form and check invariants.

    Raises:
        MalformedSpec: schema violation, empty story list or duplicate ids
    """
    try:
        validate(data, "spec")
    except ValidationError as e:
        raise MalformedSpec(str(e)) from None

    stories = []
    for index, raw in enumerate(data["userStories"], 1):
        stories.append(Story(
            id=raw["id"].strip(),
            title=raw.get("title", ""),
            description=raw.get("description", ""),
            acceptance_criteria=list(raw.get("acceptanceCriteria", [])),
            priority=raw.get("priority", index),
            passes=raw.get("passes", False),
            notes=raw.get("notes", ""),
        ))

    spec = Spec(
        project=data["project"].strip(),
        branch_name=(data.get("branchName") or "").strip() or default_branch_name(data["project"]),
        description=data.get("description", ""),
        user_stories=stories,
    )
    check_spec(spec)
    return spec


def check_spec(spec: Spec) -> None:
    """Raise MalformedSpec if the spec breaks a structural invariant."""
    if not spec.project:
        raise MalformedSpec("project name is required")
    if not spec.branch_name:
        raise MalformedSpec("branch name is required")
    if not spec.user_stories:
        raise MalformedSpec("at least one user story is required")

    seen: set[str] = set()
    for story in spec.user_stories:
        if not story.id:
            raise MalformedSpec("story id is required")
        if story.id in seen:
            raise MalformedSpec(f"duplicate story id: {story.id}")
        seen.add(story.id)


def load_spec(path: Path) -> Spec:
    """Load and validate a JSON spec file.

    Raises:
        MalformedSpec: missing file, invalid JSON or invalid contents
    """
    try:
        data = validate_file(path, "spec")
    except ValidationError as e:
        raise MalformedSpec(str(e)) from None
    return spec_from_dict(data)


def save_spec(spec: Spec, path: Path) -> None:
    """Atomically write the spec in its JSON form."""
    atomic_write_json(path, spec.to_dict())


def is_markdown_spec(path: Path) -> bool:
    return path.suffix.lower() in (".md", ".markdown")


def parse_markdown_spec(text: str) -> Spec:
    """Parse a markdown spec.

    Layout:
        # Project name
        Description paragraph (first paragraph after the title).
        Branch: optional/branch-name

        ## US-001: Story title
        Story description text.
        - acceptance criterion
        Notes: free text

    Stories without an `ID: title` heading are numbered US-001, US-002, ...

    Raises:
        MalformedSpec: no title or no stories
    """
    project = ""
    description_lines: list[str] = []
    description_done = False
    branch = ""
    stories: list[Story] = []
    current: Optional[Story] = None
    story_desc: list[str] = []
    in_code_block = False

    def finish_story():
        if current is not None:
            current.description = " ".join(story_desc).strip()
            stories.append(current)

    for raw_line in text.splitlines():
        line = raw_line.rstrip()
        stripped = line.strip()

        if stripped.startswith("```"):
            in_code_block = not in_code_block
            continue
        if in_code_block:
            continue

        if stripped.startswith("# ") and not project:
            project = stripped[2:].strip()
            continue

        if stripped.startswith("## "):
            finish_story()
            story_desc = []
            heading = stripped[3:].strip()
            match = _STORY_HEADING.match(heading)
            if match:
                story_id, title = match.group("id"), match.group("title").strip()
            else:
                story_id, title = f"US-{len(stories) + 1:03d}", heading
            current = Story(id=story_id, title=title, priority=len(stories) + 1)
            continue

        if current is None:
            branch_match = _BRANCH_LINE.match(stripped)
            if branch_match:
                branch = branch_match.group("branch")
                continue
            if not stripped:
                if description_lines:
                    description_done = True
                continue
            if not description_done and project:
                description_lines.append(stripped)
            continue

        # Inside a story section
        if not stripped or stripped.startswith("#"):
            continue
        notes_match = _NOTES_LINE.match(stripped)
        if notes_match:
            current.notes = notes_match.group("notes").strip()
            continue
        bullet = _BULLET.match(line)
        if bullet:
            current.acceptance_criteria.append(bullet.group("text").strip())
        elif stripped.lower().rstrip(":") not in ("acceptance criteria", "**acceptance criteria**"):
            story_desc.append(stripped)

    finish_story()

    if not project:
        raise MalformedSpec("markdown spec has no '# Project' title")

    spec = Spec(
        project=project,
        branch_name=branch or default_branch_name(project),
        description=" ".join(description_lines),
        user_stories=stories,
    )
    check_spec(spec)
    logger.debug(f"Parsed markdown spec '{project}' with {len(stories)} stories")
    return spec
