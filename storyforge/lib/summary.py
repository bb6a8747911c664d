"""
Extraction of the structured work summary the agent appends to its output.

The implement prompt asks the agent to end with these sections:

    ## Files Created
    - path/to/file.py | purpose | SymbolA, SymbolB
    ## Files Modified
    - path/to/other.py | purpose | symbol
    ## Decisions
    - topic | choice | rationale
    ## Patterns
    - description | example/file.py
    ## Summary
    Free text.

Extraction is best-effort: malformed lines are skipped, missing sections are
empty. When a header appears more than once the last occurrence wins, since
the agent may quote the format earlier in its output.
"""

import re
from dataclasses import dataclass, field
from typing import Optional

MAX_WORK_SUMMARY_LENGTH = 500

_HEADER = re.compile(r"^#{2,3}\s+(?P<name>[A-Za-z ]+?)\s*:?\s*$")
_BULLET = re.compile(r"^\s*[-*+]\s+(?P<text>.+)$")

SECTION_FILES_CREATED = "files created"
SECTION_FILES_MODIFIED = "files modified"
SECTION_DECISIONS = "decisions"
SECTION_PATTERNS = "patterns"
SECTION_SUMMARY = "summary"

_KNOWN_SECTIONS = {
    SECTION_FILES_CREATED,
    SECTION_FILES_MODIFIED,
    SECTION_DECISIONS,
    SECTION_PATTERNS,
    SECTION_SUMMARY,
}


@dataclass
class FileHint:
    """What the agent says about one file it touched."""
    path: str
    purpose: str = ""
    key_symbols: list[str] = field(default_factory=list)


@dataclass
class DecisionHint:
    topic: str
    choice: str
    rationale: str = ""


@dataclass
class PatternHint:
    description: str
    example_file: Optional[str] = None


@dataclass
class AgentHints:
    """Everything extracted from one work summary."""
    files_created: list[FileHint] = field(default_factory=list)
    files_modified: list[FileHint] = field(default_factory=list)
    decisions: list[DecisionHint] = field(default_factory=list)
    patterns: list[PatternHint] = field(default_factory=list)
    summary: Optional[str] = None

    def file_hints(self) -> dict[str, FileHint]:
        """All file hints keyed by path (modified entries win over created)."""
        hints = {h.path: h for h in self.files_created}
        hints.update({h.path: h for h in self.files_modified})
        return hints

    def is_empty(self) -> bool:
        return not (
            self.files_created or self.files_modified or self.decisions
            or self.patterns or self.summary
        )


def split_sections(text: str) -> dict[str, list[str]]:
    """Group lines under the recognized `## ` headers."""
    sections: dict[str, list[str]] = {}
    current: Optional[str] = None
    for line in text.splitlines():
        match = _HEADER.match(line.strip())
        if match:
            name = match.group("name").strip().lower()
            if name in _KNOWN_SECTIONS:
                current = name
                sections[current] = []
            else:
                current = None
            continue
        if current is not None:
            sections[current].append(line)
    return sections


def _clean_path(value: str) -> str:
    return value.strip().strip("`").strip()


def parse_symbol_list(value: str) -> list[str]:
    """Parse `A, B` or `[A, B]` into a list of names."""
    value = value.strip().strip("[]")
    return [s.strip().strip("`") for s in value.split(",") if s.strip().strip("`")]


def _parse_file_lines(lines: list[str]) -> list[FileHint]:
    hints = []
    for line in lines:
        bullet = _BULLET.match(line)
        if not bullet:
            continue
        parts = [p.strip() for p in bullet.group("text").split("|", 2)]
        path = _clean_path(parts[0])
        if not path:
            continue
        purpose = parts[1] if len(parts) > 1 else ""
        symbols = parse_symbol_list(parts[2]) if len(parts) > 2 else []
        hints.append(FileHint(path=path, purpose=purpose, key_symbols=symbols))
    return hints


def _parse_decisions(lines: list[str]) -> list[DecisionHint]:
    decisions = []
    for line in lines:
        bullet = _BULLET.match(line)
        if not bullet:
            continue
        parts = [p.strip() for p in bullet.group("text").split("|", 2)]
        if len(parts) < 2 or not parts[0] or not parts[1]:
            continue
        decisions.append(DecisionHint(
            topic=parts[0],
            choice=parts[1],
            rationale=parts[2] if len(parts) > 2 else "",
        ))
    return decisions


def _parse_patterns(lines: list[str]) -> list[PatternHint]:
    patterns = []
    for line in lines:
        bullet = _BULLET.match(line)
        if not bullet:
            continue
        parts = [p.strip() for p in bullet.group("text").split("|", 1)]
        if not parts[0]:
            continue
        example = _clean_path(parts[1]) if len(parts) > 1 and parts[1] else None
        patterns.append(PatternHint(description=parts[0], example_file=example or None))
    return patterns


def truncate(text: str, limit: int) -> str:
    """Truncate to `limit` characters, marking the cut with '...'."""
    if len(text) <= limit:
        return text
    return text[: max(limit - 3, 0)].rstrip() + "..."


def extract_work_summary(text: str) -> Optional[str]:
    """Return the `## Summary` section, truncated, or None."""
    lines = split_sections(text).get(SECTION_SUMMARY)
    if not lines:
        return None
    summary = "\n".join(lines).strip()
    if not summary:
        return None
    return truncate(summary, MAX_WORK_SUMMARY_LENGTH)


def extract_hints(text: str) -> AgentHints:
    """Parse every recognized section out of the agent's output."""
    sections = split_sections(text)
    return AgentHints(
        files_created=_parse_file_lines(sections.get(SECTION_FILES_CREATED, [])),
        files_modified=_parse_file_lines(sections.get(SECTION_FILES_MODIFIED, [])),
        decisions=_parse_decisions(sections.get(SECTION_DECISIONS, [])),
        patterns=_parse_patterns(sections.get(SECTION_PATTERNS, [])),
        summary=extract_work_summary(text),
    )


@dataclass
class ReviewTally:
    """Counts from the `## Summary` of a PR review reply."""
    total: int = 0
    fixed: int = 0
    suggestions: int = 0
    red_herrings: int = 0


_TALLY_LABELS = {
    "total comments analyzed": "total",
    "real issues fixed": "fixed",
    "legitimate suggestions": "suggestions",
    "red herrings identified": "red_herrings",
}
_NUMBER = re.compile(r"\d+")


def parse_review_tally(text: str) -> ReviewTally:
    """Read `**Real issues fixed:** 2` style lines; absent labels count as 0."""
    tally = ReviewTally()
    for line in split_sections(text).get(SECTION_SUMMARY, []):
        lowered = line.lower()
        for label, attr in _TALLY_LABELS.items():
            if label in lowered:
                number = _NUMBER.search(lowered[lowered.index(label) + len(label):])
                if number:
                    setattr(tally, attr, int(number.group(0)))
    return tally
