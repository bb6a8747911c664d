"""
Token usage tracking for agent invocations.

Usage records are summed across invocations within a story and across the
whole run. Counters only ever grow; the model name is the first non-empty
one seen.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Usage:
    """Token counters reported by the agent."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    thinking_tokens: int = 0
    model: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def is_empty(self) -> bool:
        return (
            self.input_tokens == 0
            and self.output_tokens == 0
            and self.cache_read_tokens == 0
            and self.cache_creation_tokens == 0
            and self.thinking_tokens == 0
            and not self.model
        )

    def add(self, other: "Usage") -> "Usage":
        """Return the sum of two usage records.

        Counters are added; the model is kept from self when it is set,
        otherwise taken from other.
        """
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
            cache_creation_tokens=self.cache_creation_tokens + other.cache_creation_tokens,
            thinking_tokens=self.thinking_tokens + other.thinking_tokens,
            model=self.model or other.model or None,
        )

    def __add__(self, other: "Usage") -> "Usage":
        return self.add(other)

    def to_dict(self) -> dict:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "cacheReadTokens": self.cache_read_tokens,
            "cacheCreationTokens": self.cache_creation_tokens,
            "thinkingTokens": self.thinking_tokens,
            "model": self.model,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "Usage":
        if not data:
            return cls()
        return cls(
            input_tokens=int(data.get("inputTokens", 0) or 0),
            output_tokens=int(data.get("outputTokens", 0) or 0),
            cache_read_tokens=int(data.get("cacheReadTokens", 0) or 0),
            cache_creation_tokens=int(data.get("cacheCreationTokens", 0) or 0),
            thinking_tokens=int(data.get("thinkingTokens", 0) or 0),
            model=data.get("model") or None,
        )


def sum_usage(records) -> Usage:
    """Fold an iterable of Usage records into one."""
    total = Usage()
    for record in records:
        total = total.add(record)
    return total


def format_tokens(count: int) -> str:
    """Format a token count compactly (e.g. 1.2k, 3.4M)."""
    if count < 1000:
        return str(count)
    if count < 1_000_000:
        return f"{count / 1000:.1f}k"
    return f"{count / 1_000_000:.1f}M"


def format_usage(usage: Usage) -> str:
    """One-line human summary of a usage record."""
    line = (
        f"{usage.input_tokens:,} in / {usage.output_tokens:,} out "
        f"({format_tokens(usage.total_tokens)} total)"
    )
    if usage.thinking_tokens:
        line += f", {usage.thinking_tokens:,} thinking"
    if usage.cache_read_tokens or usage.cache_creation_tokens:
        line += f", cache {usage.cache_read_tokens:,} read / {usage.cache_creation_tokens:,} created"
    if usage.model:
        line += f" [{usage.model}]"
    return line
