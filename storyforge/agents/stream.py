"""
Parser for the agent's stream-json output.

The agent writes one JSON object per line. Each line is classified as:

- TextFragment: assistant text to show and accumulate
- UsageRecord: token usage from a terminal `result` event
- Ignored: everything else, including lines that are not JSON at all

Parsing never raises. The agent prints non-JSON diagnostics freely and a bad
line must not abort a run.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from storyforge.lib.usage import Usage

logger = logging.getLogger(__name__)

# Lines above this size are dropped without decoding
MAX_LINE_BYTES = 1024 * 1024


# Where a TextFragment came from
DELTA = "delta"
MESSAGE = "message"
RESULT = "result"


@dataclass(frozen=True)
class TextFragment:
    text: str
    source: str = field(default=DELTA, compare=False)


@dataclass(frozen=True)
class UsageRecord:
    usage: Usage


@dataclass(frozen=True)
class Ignored:
    pass


IGNORED = Ignored()

StreamItem = Union[TextFragment, UsageRecord, Ignored]


class _Model(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, protected_namespaces=())


class _Delta(_Model):
    text: Optional[str] = None


class _StreamEvent(_Model):
    type: str = ""
    delta: Optional[_Delta] = None


class _ContentBlock(_Model):
    type: str = ""
    text: Optional[str] = None


class _AssistantMessage(_Model):
    content: list[_ContentBlock] = Field(default_factory=list)


class _ModelUsage(_Model):
    input_tokens: int = Field(0, alias="inputTokens")
    output_tokens: int = Field(0, alias="outputTokens")
    cache_read_tokens: int = Field(0, alias="cacheReadInputTokens")
    cache_creation_tokens: int = Field(0, alias="cacheCreationInputTokens")
    thinking_tokens: int = Field(0, alias="thinkingTokens")


class _TopLevelUsage(_Model):
    # The top-level block has appeared with both spellings
    input_tokens: int = Field(0, validation_alias=AliasChoices("inputTokens", "input_tokens"))
    output_tokens: int = Field(0, validation_alias=AliasChoices("outputTokens", "output_tokens"))
    cache_read_tokens: int = Field(
        0, validation_alias=AliasChoices("cacheReadInputTokens", "cache_read_input_tokens")
    )
    cache_creation_tokens: int = Field(
        0, validation_alias=AliasChoices("cacheCreationInputTokens", "cache_creation_input_tokens")
    )


class _StreamLine(_Model):
    type: str
    event: Optional[_StreamEvent] = None
    message: Optional[_AssistantMessage] = None
    result: Optional[str] = None
    model_usage: Optional[dict[str, _ModelUsage]] = Field(None, alias="modelUsage")
    usage: Optional[_TopLevelUsage] = None


def _decode(line: Union[str, bytes]) -> Optional[_StreamLine]:
    if len(line) > MAX_LINE_BYTES:
        logger.warning(f"Dropping oversized stream line ({len(line)} bytes)")
        return None
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")

    line = line.strip()
    if not line:
        return None

    try:
        raw = json.loads(line)
    except (json.JSONDecodeError, RecursionError):
        return None
    if not isinstance(raw, dict):
        return None

    try:
        return _StreamLine.model_validate(raw)
    except ValidationError:
        return None


def stream_items(line: Union[str, bytes]) -> list[StreamItem]:
    """Return every item carried by one line, in order.

    A terminal `result` event usually carries both the final text and the
    usage totals, so it yields a TextFragment followed by a UsageRecord.
    Every other line yields at most one item. An empty list means Ignored.
    """
    parsed = _decode(line)
    if parsed is None:
        return []

    if parsed.type == "stream_event":
        event = parsed.event
        if event and event.type == "content_block_delta":
            delta = event.delta or _Delta()
            return [TextFragment(delta.text or "", DELTA)]
        return []

    if parsed.type == "assistant":
        if parsed.message is None:
            return []
        text = "".join(
            block.text for block in parsed.message.content
            if block.type == "text" and block.text
        )
        return [TextFragment(text, MESSAGE)] if text else []

    if parsed.type == "result":
        items: list[StreamItem] = []
        if parsed.result is not None:
            items.append(TextFragment(parsed.result, RESULT))
        usage = _usage_from_result(parsed)
        if usage is not None:
            items.append(UsageRecord(usage))
        return items

    return []


def parse_stream_line(line: Union[str, bytes]) -> StreamItem:
    """Classify one line of agent output.

    Returns the first item the line carries, or IGNORED.
    """
    items = stream_items(line)
    return items[0] if items else IGNORED


def _usage_from_result(parsed: _StreamLine) -> Optional[Usage]:
    if parsed.model_usage:
        total = Usage()
        for model_name, entry in parsed.model_usage.items():
            total = total.add(Usage(
                input_tokens=entry.input_tokens,
                output_tokens=entry.output_tokens,
                cache_read_tokens=entry.cache_read_tokens,
                cache_creation_tokens=entry.cache_creation_tokens,
                thinking_tokens=entry.thinking_tokens,
                model=model_name or None,
            ))
        return total

    if parsed.usage is not None:
        return Usage(
            input_tokens=parsed.usage.input_tokens,
            output_tokens=parsed.usage.output_tokens,
            cache_read_tokens=parsed.usage.cache_read_tokens,
            cache_creation_tokens=parsed.usage.cache_creation_tokens,
        )

    return None
