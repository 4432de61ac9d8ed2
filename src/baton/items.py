"""Canonical conversation items.

Every provider payload is reduced to these frozen records before the runner
looks at it. A conversation is an append-only list of items; helpers here
convert between items, plain record dicts and chat-style provider messages.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, ClassVar, Union

CALL_ID_PREFIX = "call_"
_RESPONSES_CALL_ID_PREFIX = "fc_"
COMPUTER_TOOL_NAME = "computer"
SHELL_TOOL_NAME = "shell"


def normalize_call_id(call_id: object) -> str:
    """Return a chat-style call id, minting one when the provider sent none."""
    if not isinstance(call_id, str) or not call_id:
        return f"{CALL_ID_PREFIX}{uuid.uuid4().hex[:24]}"
    if call_id.startswith(_RESPONSES_CALL_ID_PREFIX):
        return CALL_ID_PREFIX + call_id[len(_RESPONSES_CALL_ID_PREFIX) :]
    return call_id


def dump_arguments(arguments: object) -> str:
    if isinstance(arguments, str):
        return arguments
    if arguments is None:
        return "{}"
    return json.dumps(arguments, ensure_ascii=False)


@dataclass(frozen=True)
class Message:
    type: ClassVar[str] = "message"

    role: str
    content: str


@dataclass(frozen=True)
class FunctionCall:
    type: ClassVar[str] = "function_call"

    call_id: str
    name: str
    arguments: str = "{}"


@dataclass(frozen=True)
class FunctionCallOutput:
    type: ClassVar[str] = "function_call_output"

    call_id: str
    output: str


@dataclass(frozen=True)
class HandoffCall:
    """A function call whose name matched a handoff tool."""

    type: ClassVar[str] = "handoff_call"

    call_id: str
    tool_name: str
    target_agent: str
    data: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ComputerAction:
    type: ClassVar[str] = "computer_call"

    call_id: str
    action: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ShellCall:
    type: ClassVar[str] = "local_shell_call"

    call_id: str
    command: tuple[str, ...] | str
    timeout_ms: int | None = None
    working_directory: str | None = None


ConversationItem = Union[Message, FunctionCall, FunctionCallOutput, HandoffCall, ComputerAction, ShellCall]
CallItem = Union[FunctionCall, HandoffCall, ComputerAction, ShellCall]
ConversationInput = Union[str, Mapping[str, Any], Sequence[Any]]

_ITEM_TYPES: dict[str, type] = {
    cls.type: cls for cls in (Message, FunctionCall, FunctionCallOutput, HandoffCall, ComputerAction, ShellCall)
}


def to_dict(item: ConversationItem) -> dict[str, Any]:
    """Render an item into its canonical record form."""
    if isinstance(item, Message):
        return {"type": item.type, "role": item.role, "content": item.content}
    if isinstance(item, FunctionCall):
        return {"type": item.type, "call_id": item.call_id, "name": item.name, "arguments": item.arguments}
    if isinstance(item, FunctionCallOutput):
        return {"type": item.type, "call_id": item.call_id, "output": item.output}
    if isinstance(item, HandoffCall):
        return {
            "type": item.type,
            "call_id": item.call_id,
            "tool_name": item.tool_name,
            "target_agent": item.target_agent,
            "data": dict(item.data),
        }
    if isinstance(item, ComputerAction):
        return {"type": item.type, "call_id": item.call_id, "action": dict(item.action)}
    if isinstance(item, ShellCall):
        command = list(item.command) if isinstance(item.command, tuple) else item.command
        return {
            "type": item.type,
            "call_id": item.call_id,
            "command": command,
            "timeout_ms": item.timeout_ms,
            "working_directory": item.working_directory,
        }
    raise TypeError(f"Unsupported conversation item: {type(item).__name__}")


def from_dict(data: Mapping[str, Any]) -> ConversationItem:
    """Rebuild an item from its canonical record form."""
    item_type = data.get("type")
    if item_type == Message.type:
        return Message(role=str(data.get("role", "user")), content=_text(data.get("content")))
    if item_type == FunctionCall.type:
        return FunctionCall(
            call_id=normalize_call_id(data.get("call_id") or data.get("id")),
            name=str(data.get("name", "")),
            arguments=dump_arguments(data.get("arguments")),
        )
    if item_type == FunctionCallOutput.type:
        return FunctionCallOutput(call_id=normalize_call_id(data.get("call_id")), output=_text(data.get("output")))
    if item_type == HandoffCall.type:
        return HandoffCall(
            call_id=normalize_call_id(data.get("call_id")),
            tool_name=str(data.get("tool_name", "")),
            target_agent=str(data.get("target_agent", "")),
            data=dict(data.get("data") or {}),
        )
    if item_type == ComputerAction.type:
        return ComputerAction(call_id=normalize_call_id(data.get("call_id")), action=dict(data.get("action") or {}))
    if item_type == ShellCall.type:
        command = data.get("command", "")
        return ShellCall(
            call_id=normalize_call_id(data.get("call_id")),
            command=tuple(command) if isinstance(command, list | tuple) else str(command),
            timeout_ms=data.get("timeout_ms"),
            working_directory=data.get("working_directory"),
        )
    raise ValueError(f"Unknown conversation item type: {item_type!r}")


def _text(content: object) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, Mapping) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts)
    return str(content)


def _from_chat_message(message: Mapping[str, Any]) -> list[ConversationItem]:
    role = str(message.get("role", "user"))
    if role == "tool":
        return [
            FunctionCallOutput(
                call_id=normalize_call_id(message.get("tool_call_id")),
                output=_text(message.get("content")),
            )
        ]
    items: list[ConversationItem] = []
    content = _text(message.get("content"))
    tool_calls = message.get("tool_calls") or []
    if content or not tool_calls:
        items.append(Message(role=role, content=content))
    for call in tool_calls:
        function = call.get("function") or {}
        items.append(
            FunctionCall(
                call_id=normalize_call_id(call.get("id")),
                name=str(function.get("name", "")),
                arguments=dump_arguments(function.get("arguments")),
            )
        )
    return items


def normalize_input(value: ConversationInput) -> list[ConversationItem]:
    """Return a private list of items for caller-supplied input.

    Accepts a user prompt string, a single record or chat message, or a
    sequence mixing items, records and chat messages. The caller's sequence is
    never mutated.
    """
    if isinstance(value, str):
        return [Message(role="user", content=value)]
    if isinstance(value, Mapping):
        return _normalize_one(value)
    items: list[ConversationItem] = []
    for element in value:
        items.extend(_normalize_one(element))
    return items


def _normalize_one(element: object) -> list[ConversationItem]:
    if isinstance(element, tuple(_ITEM_TYPES.values())):
        return [element]  # type: ignore[list-item]
    if isinstance(element, str):
        return [Message(role="user", content=element)]
    if isinstance(element, Mapping):
        if element.get("type") in _ITEM_TYPES:
            return [from_dict(element)]
        if "role" in element:
            return _from_chat_message(element)
    raise TypeError(f"Cannot convert {type(element).__name__} into a conversation item")


def _call_entry(call_id: str, name: str, arguments: str) -> dict[str, Any]:
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": arguments}}


def _as_call_entry(item: CallItem) -> dict[str, Any]:
    if isinstance(item, FunctionCall):
        return _call_entry(item.call_id, item.name, item.arguments)
    if isinstance(item, HandoffCall):
        return _call_entry(item.call_id, item.tool_name, json.dumps(dict(item.data), ensure_ascii=False))
    if isinstance(item, ComputerAction):
        return _call_entry(item.call_id, COMPUTER_TOOL_NAME, json.dumps(dict(item.action), ensure_ascii=False))
    command = list(item.command) if isinstance(item.command, tuple) else item.command
    return _call_entry(item.call_id, SHELL_TOOL_NAME, json.dumps({"command": command}, ensure_ascii=False))


def to_provider_messages(items: Iterable[ConversationItem]) -> list[dict[str, Any]]:
    """Render items as chat-completions messages.

    Call items directly following an assistant message are attached to it as
    ``tool_calls``; otherwise a content-less assistant message is opened.
    """
    messages: list[dict[str, Any]] = []
    for item in items:
        if isinstance(item, Message):
            messages.append({"role": item.role, "content": item.content})
        elif isinstance(item, FunctionCallOutput):
            messages.append({"role": "tool", "tool_call_id": item.call_id, "content": item.output})
        else:
            previous = messages[-1] if messages else None
            if previous is None or previous["role"] != "assistant":
                previous = {"role": "assistant", "content": None}
                messages.append(previous)
            previous.setdefault("tool_calls", []).append(_as_call_entry(item))
    return messages


def last_message_text(items: Sequence[ConversationItem], role: str = "assistant") -> str | None:
    for item in reversed(items):
        if isinstance(item, Message) and item.role == role and item.content:
            return item.content
    return None
