"""Provider strategy contract and the canonical response shape."""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..items import normalize_call_id
from ..usage import Usage

if TYPE_CHECKING:
    from ..tools.registry import FunctionTool

FINISH_STOP = "stop"
FINISH_TOOL_CALLS = "tool_calls"
FINISH_LENGTH = "length"
FINISH_CONTENT_FILTER = "content_filter"
FINISH_INCOMPLETE = "incomplete"
FINISH_ERROR = "error"
TRUNCATION_FINISH_REASONS = frozenset({FINISH_LENGTH, "max_tokens", "max_output_tokens"})


@dataclass(frozen=True)
class CanonicalResponse:
    """Provider-agnostic model response.

    ``output`` is an ordered list of records each carrying a ``type``
    discriminator (``message``, ``output_text``, ``function_call``, ...).
    """

    output: Sequence[Mapping[str, Any]] = ()
    usage: Usage = field(default_factory=Usage)
    finish_reason: str | None = None
    response_id: str | None = None
    truncated: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        """Concatenated assistant text across message and output_text items."""
        parts: list[str] = []
        for item in self.output:
            item_type = item.get("type")
            if item_type == "output_text":
                parts.append(str(item.get("text") or ""))
            elif item_type == "message":
                content = item.get("content")
                if isinstance(content, str):
                    parts.append(content)
                elif isinstance(content, list):
                    parts.extend(str(part.get("text") or "") for part in content if isinstance(part, Mapping))
        return "".join(parts)


@dataclass(frozen=True)
class ModelRequest:
    """One provider request as seen by the runner and continuation controller."""

    messages: Sequence[Mapping[str, Any]]
    model: str | None = None
    tools: Sequence[FunctionTool] = ()
    response_format: Any = None
    tool_choice: Any = None
    model_params: Mapping[str, Any] = field(default_factory=dict)

    def with_messages(self, messages: Sequence[Mapping[str, Any]]) -> ModelRequest:
        return replace(self, messages=list(messages))

    def call_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = dict(self.model_params)
        if self.tool_choice is not None:
            kwargs["tool_choice"] = self.tool_choice
        return kwargs


@dataclass(frozen=True)
class ProviderChunk:
    """Token-level chunk reported by a streaming provider."""

    kind: str
    delta: str = ""
    call_id: str | None = None
    name: str | None = None
    finish_reason: str | None = None


ChunkCallback = Callable[[ProviderChunk], None]


@runtime_checkable
class ProviderStrategy(Protocol):
    """Stateless chat-style provider."""

    def complete(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        model: str | None = None,
        tools: Sequence[FunctionTool] | None = None,
        response_format: Any = None,
        stream: bool = False,
        **model_params: Any,
    ) -> CanonicalResponse: ...


@runtime_checkable
class StatefulProviderStrategy(Protocol):
    """Responses-style provider keeping conversation state server side."""

    def complete_stateful(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        model: str | None = None,
        tools: Sequence[FunctionTool] | None = None,
        previous_response_id: str | None = None,
        **model_params: Any,
    ) -> CanonicalResponse: ...


@runtime_checkable
class StreamingProviderStrategy(Protocol):
    """Provider able to report token-level chunks while completing."""

    def stream_complete(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        on_chunk: ChunkCallback,
        model: str | None = None,
        tools: Sequence[FunctionTool] | None = None,
        response_format: Any = None,
        **model_params: Any,
    ) -> CanonicalResponse: ...


def is_truncated(finish_reason: str | None) -> bool:
    return finish_reason in TRUNCATION_FINISH_REASONS


def read_field(source: Any, key: str, default: Any = None) -> Any:
    if source is None:
        return default
    if isinstance(source, Mapping):
        return source.get(key, default)
    return getattr(source, key, default)


def _as_record(item: Any) -> dict[str, Any]:
    if isinstance(item, Mapping):
        return dict(item)
    model_dump = getattr(item, "model_dump", None)
    if callable(model_dump):
        return dict(model_dump())
    return {key: value for key, value in vars(item).items() if not key.startswith("_")}


def normalize_chat_completion(payload: Any) -> CanonicalResponse:
    """Convert a chat-completions or responses payload into canonical form.

    Dicts and SDK objects are both accepted.
    """
    if isinstance(payload, CanonicalResponse):
        return payload
    usage = Usage.from_payload(read_field(payload, "usage"))
    response_id = read_field(payload, "id")
    output = read_field(payload, "output")
    if output is not None:
        records = [_as_record(item) for item in output]
        return CanonicalResponse(
            output=records,
            usage=usage,
            finish_reason=_responses_finish_reason(payload, records),
            response_id=response_id,
        )

    choices = read_field(payload, "choices") or []
    if not choices:
        return CanonicalResponse(usage=usage, response_id=response_id)
    choice = choices[0]
    message = read_field(choice, "message")
    records: list[dict[str, Any]] = []
    content = read_field(message, "content")
    if content:
        records.append({
            "type": "message",
            "role": "assistant",
            "content": [{"type": "output_text", "text": content}],
        })
    for call in read_field(message, "tool_calls") or []:
        function = read_field(call, "function")
        arguments = read_field(function, "arguments", "")
        records.append({
            "type": "function_call",
            "call_id": normalize_call_id(read_field(call, "id")),
            "name": read_field(function, "name", ""),
            "arguments": arguments if isinstance(arguments, str) else json.dumps(arguments),
        })
    return CanonicalResponse(
        output=records,
        usage=usage,
        finish_reason=read_field(choice, "finish_reason"),
        response_id=response_id,
    )


def _responses_finish_reason(payload: Any, records: Sequence[Mapping[str, Any]]) -> str | None:
    status = read_field(payload, "status")
    if status == "incomplete":
        reason = read_field(read_field(payload, "incomplete_details"), "reason")
        if reason == FINISH_CONTENT_FILTER:
            return FINISH_CONTENT_FILTER
        return reason or FINISH_INCOMPLETE
    if status is None:
        return None
    if any(record.get("type") == "function_call" for record in records):
        return FINISH_TOOL_CALLS
    return FINISH_STOP

