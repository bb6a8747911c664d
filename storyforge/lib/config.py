"""
Run configuration.

Loads .storyforge/config.yaml from the working copy. A missing file gives the
defaults; an unreadable one logs a warning and also gives the defaults, so a
typo in the config never blocks a run.

Example config.yaml:

    agent_command: claude
    timeout_seconds: 1800
    review_max: 3
    continue_on_review_exhaustion: false
    pull_request: true
    remote: origin
"""

import logging
import shlex
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".storyforge"
CONFIG_FILE_NAME = "config.yaml"

REVIEW_MAX_MIN = 1
REVIEW_MAX_MAX = 10


@dataclass
class Config:
    """Settings for one run."""
    agent_command: str = "claude"
    timeout_seconds: int = 1800
    max_prompt_bytes: int = 1_000_000
    unrestricted: bool = False
    review_max: int = 3
    continue_on_review_exhaustion: bool = False
    review: bool = True
    commit: bool = True
    pull_request: bool = True
    remote: str = "origin"
    draft_pr: bool = False
    knowledge_decisions_limit: int = 10
    knowledge_stories_limit: int = 5
    spec_generation_attempts: int = 3

    def __post_init__(self):
        self.review_max = clamp_review_max(self.review_max)

    @property
    def agent_argv(self) -> list[str]:
        return shlex.split(self.agent_command)

    def with_overrides(self, **overrides) -> "Config":
        """Copy with the non-None overrides applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def clamp_review_max(value: int) -> int:
    clamped = max(REVIEW_MAX_MIN, min(REVIEW_MAX_MAX, int(value)))
    if clamped != value:
        logger.warning(f"review_max={value} out of range, using {clamped}")
    return clamped


def state_dir(workdir: Path) -> Path:
    return workdir / STATE_DIR_NAME


def ensure_state_dir(path: Path) -> Path:
    """Create the state directory, ignored by git so commits never pick it up."""
    path.mkdir(parents=True, exist_ok=True)
    gitignore = path / ".gitignore"
    if not gitignore.exists():
        gitignore.write_text("*\n")
    return path


def load_config(workdir: Optional[Path]) -> Config:
    """Load config.yaml from the state directory.

    If workdir is None or the file doesn't exist, returns defaults.
    """
    if workdir is None:
        return Config()

    config_path = state_dir(workdir) / CONFIG_FILE_NAME
    if not config_path.exists():
        return Config()

    try:
        data = yaml.safe_load(config_path.read_text())
    except (yaml.YAMLError, OSError) as e:
        logger.warning(f"Failed to parse {config_path}: {e}")
        return Config()

    if data is None:
        return Config()
    if not isinstance(data, dict):
        logger.warning(f"Ignoring {config_path}: expected a mapping, got {type(data).__name__}")
        return Config()

    known = {f.name for f in fields(Config)}
    defaults = Config()
    values = {}
    for key, value in data.items():
        if key not in known:
            logger.warning(f"Ignoring unknown config key '{key}' in {config_path}")
            continue
        expected = type(getattr(defaults, key))
        if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
            logger.warning(
                f"Ignoring config key '{key}' in {config_path}: "
                f"expected {expected.__name__}, got {type(value).__name__}"
            )
            continue
        values[key] = value

    return Config(**values)
