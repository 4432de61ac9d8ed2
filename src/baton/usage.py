"""Token usage accounting."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Usage:
    """Token counters for one or more provider requests."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    requests: int = 0

    def __add__(self, other: Usage) -> Usage:
        if not isinstance(other, Usage):
            return NotImplemented
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            requests=self.requests + other.requests,
        )

    @classmethod
    def from_payload(cls, payload: Any) -> Usage:
        """Build usage from a responses-style or chat-style usage record."""
        if payload is None:
            return cls(requests=1)
        if isinstance(payload, Usage):
            return payload
        input_tokens = _count(payload, "input_tokens", "prompt_tokens")
        output_tokens = _count(payload, "output_tokens", "completion_tokens")
        total_tokens = _count(payload, "total_tokens") or input_tokens + output_tokens
        return cls(input_tokens=input_tokens, output_tokens=output_tokens, total_tokens=total_tokens, requests=1)

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "requests": self.requests,
        }


def _count(payload: Any, *keys: str) -> int:
    for key in keys:
        value = payload.get(key) if isinstance(payload, Mapping) else getattr(payload, key, None)
        if isinstance(value, int):
            return value
    return 0
