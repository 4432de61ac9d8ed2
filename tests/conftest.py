from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from typing import Any

import pytest
from loguru import logger

from baton.providers.base import CanonicalResponse
from baton.usage import Usage


class ScriptedProvider:
    """Provider returning prepared responses in order and recording every call."""

    def __init__(self, *responses: CanonicalResponse | Exception, repeat_last: bool = False) -> None:
        self.responses = list(responses)
        self.repeat_last = repeat_last
        self.calls: list[dict[str, Any]] = []

    def complete(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        model: str | None = None,
        tools: Sequence[Any] | None = None,
        response_format: Any = None,
        stream: bool = False,
        **model_params: Any,
    ) -> CanonicalResponse:
        self.calls.append({
            "messages": [dict(message) for message in messages],
            "model": model,
            "tools": [tool.name for tool in tools or ()],
            "response_format": response_format,
            **model_params,
        })
        if not self.responses:
            raise AssertionError("provider called more often than scripted")
        item = self.responses[0] if self.repeat_last and len(self.responses) == 1 else self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class ResponseFactory:
    """Builders for canonical responses used across the suite."""

    @staticmethod
    def text(
        content: str,
        *,
        finish_reason: str = "stop",
        tokens: int = 10,
        response_id: str | None = None,
    ) -> CanonicalResponse:
        return CanonicalResponse(
            output=[{"type": "message", "role": "assistant", "content": [{"type": "output_text", "text": content}]}],
            usage=Usage(input_tokens=tokens, output_tokens=tokens, total_tokens=tokens * 2, requests=1),
            finish_reason=finish_reason,
            response_id=response_id,
        )

    @staticmethod
    def calls(*calls: tuple[str, Any, str], text: str | None = None, tokens: int = 10) -> CanonicalResponse:
        output: list[dict[str, Any]] = []
        if text:
            output.append({"type": "message", "role": "assistant", "content": text})
        for name, arguments, call_id in calls:
            output.append({"type": "function_call", "call_id": call_id, "name": name, "arguments": arguments})
        return CanonicalResponse(
            output=output,
            usage=Usage(input_tokens=tokens, output_tokens=tokens, total_tokens=tokens * 2, requests=1),
            finish_reason="tool_calls",
        )

    def call(self, name: str, arguments: Any = "{}", *, call_id: str = "call_1", text: str | None = None) -> CanonicalResponse:
        return self.calls((name, arguments, call_id), text=text)


@pytest.fixture
def responses() -> ResponseFactory:
    return ResponseFactory()


@pytest.fixture
def scripted_provider() -> type[ScriptedProvider]:
    return ScriptedProvider


@pytest.fixture
def log_records() -> Iterator[list[tuple[str, str]]]:
    """Capture (level, message) pairs emitted through loguru."""
    captured: list[tuple[str, str]] = []

    def _sink(message: Any) -> None:
        record = message.record
        captured.append((record["level"].name, record["message"]))

    handler_id = logger.add(_sink, level="DEBUG", format="{message}")
    try:
        yield captured
    finally:
        logger.remove(handler_id)
