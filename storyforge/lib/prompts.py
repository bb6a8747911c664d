"""
Agent prompt templates.

One markdown file per agent phase lives in storyforge/prompts/. Placeholders
use str.format() syntax ({story_id}); {{ and }} produce literal braces for
the JSON examples. A leading <!-- ... --> block documents the variables and
is removed before the prompt reaches the agent.
"""

import logging
import re
import string
from functools import lru_cache
from pathlib import Path

logger = logging.getLogger(__name__)

__all__ = [
    "PromptError",
    "PROMPT_NAMES",
    "PROMPTS_DIR",
    "load_prompt",
    "template_variables",
    "render_prompt",
    "build_section",
    "clear_cache",
]

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"
PROMPT_NAMES = ("generate_spec", "implement", "review", "correct", "pr_review")

_COMMENT_RE = re.compile(r"<!--.*?-->\s*", re.DOTALL)


class PromptError(Exception):
    """A template is missing or cannot be rendered with the given values."""


@lru_cache(maxsize=None)
def load_prompt(name: str) -> str:
    """Template text for ``name`` with comment blocks removed."""
    path = PROMPTS_DIR / f"{name}.md"
    try:
        raw = path.read_text()
    except FileNotFoundError:
        raise PromptError(
            f"Prompt template '{name}' not found. Expected file: {path}"
        ) from None
    logger.debug(f"Loaded prompt template {name} ({len(raw)} chars)")
    return _COMMENT_RE.sub("", raw).lstrip()


@lru_cache(maxsize=None)
def template_variables(name: str) -> frozenset[str]:
    """Names of the placeholders used by a template."""
    try:
        fields = string.Formatter().parse(load_prompt(name))
        return frozenset(field for _, field, _, _ in fields if field)
    except ValueError as e:
        raise PromptError(f"Prompt '{name}' is not a valid template: {e}") from e


def render_prompt(name: str, **values) -> str:
    """
    Fill a template.

    Every placeholder must be supplied. Extra values are ignored so callers
    can share one set of story fields across phases.

    Raises:
        PromptError: Unknown template, or one or more variables missing
    """
    missing = template_variables(name) - values.keys()
    if missing:
        label = "variable" if len(missing) == 1 else "variables"
        raise PromptError(
            f"Missing required {label} {', '.join(sorted(missing))} in prompt '{name}'. "
            f"Provided: {sorted(values)}"
        )
    return load_prompt(name).format(**values)


def build_section(content: str | None, header: str, empty_msg: str | None = None) -> str:
    """Markdown block under ``header``, falling back to ``empty_msg`` or nothing."""
    body = content or empty_msg
    if body is None:
        return ""
    return f"{header}\n\n{body}\n"


def clear_cache():
    load_prompt.cache_clear()
    template_variables.cache_clear()
