"""Canonicalisation of provider responses into conversation items."""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from loguru import logger

from .items import (
    ComputerAction,
    ConversationItem,
    FunctionCall,
    HandoffCall,
    Message,
    ShellCall,
    dump_arguments,
    normalize_call_id,
)
from .providers.base import CanonicalResponse, normalize_chat_completion

if TYPE_CHECKING:
    from .agent import Agent
    from .handoffs import Handoff
    from .tools.registry import FunctionTool

TEXT_ITEM_TYPES = frozenset({"message", "output_text", "text"})
COMPUTER_TOOL_USE = "computer_use"
SHELL_TOOL_USE = "local_shell"


def _field(source: Any, key: str, default: Any = None) -> Any:
    if isinstance(source, Mapping):
        return source.get(key, default)
    return getattr(source, key, default)


@dataclass(frozen=True)
class ProcessedResponse:
    """Typed items of one model response plus what the step must run."""

    new_items: tuple[ConversationItem, ...]
    functions: tuple[FunctionCall, ...]
    handoffs: tuple[HandoffCall, ...]
    computer_actions: tuple[ComputerAction, ...]
    shell_calls: tuple[ShellCall, ...]
    tools_used: tuple[str, ...]

    @property
    def handoffs_detected(self) -> bool:
        return bool(self.handoffs)

    @property
    def tools_or_actions_to_run(self) -> bool:
        return bool(self.functions or self.computer_actions or self.shell_calls)

    @property
    def primary_handoff(self) -> HandoffCall | None:
        return self.handoffs[0] if self.handoffs else None

    @property
    def rejected_handoffs(self) -> tuple[HandoffCall, ...]:
        return self.handoffs[1:]

    @property
    def text(self) -> str | None:
        for item in reversed(self.new_items):
            if isinstance(item, Message) and item.role == "assistant":
                return item.content
        return None


def response_output(response: Any) -> Sequence[Any]:
    """Return the ordered output list of any supported response shape."""
    if isinstance(response, CanonicalResponse):
        return response.output
    output = _field(response, "output")
    if output is not None:
        return output
    if _field(response, "choices") is not None:
        return normalize_chat_completion(response).output
    return ()


def _content_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, Sequence):
        parts: list[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
                continue
            text = _field(part, "text")
            if isinstance(text, str):
                parts.append(text)
        return "".join(parts)
    return str(content)


def _parse_handoff_data(raw: Any) -> dict[str, Any]:
    if isinstance(raw, Mapping):
        return dict(raw)
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("response.handoff.arguments.invalid raw={}", raw[:80])
        return {}
    return parsed if isinstance(parsed, dict) else {}


class ResponseProcessor:
    """Turn a provider response into typed conversation items."""

    def process(
        self,
        response: Any,
        agent: Agent,
        all_tools: Sequence[FunctionTool],
        handoffs: Sequence[Handoff],
    ) -> ProcessedResponse:
        handoff_map = {handoff.name: handoff for handoff in handoffs}
        tool_names = {tool.name for tool in all_tools}

        items: list[ConversationItem] = []
        functions: list[FunctionCall] = []
        handoff_calls: list[HandoffCall] = []
        computer_actions: list[ComputerAction] = []
        shell_calls: list[ShellCall] = []
        tools_used: list[str] = []

        text_run: list[str] = []
        text_role = "assistant"

        def _flush_text() -> None:
            if text_run:
                items.append(Message(role=text_role, content="".join(text_run)))
                text_run.clear()

        for raw in response_output(response):
            item_type = _field(raw, "type")
            if item_type in TEXT_ITEM_TYPES:
                role = _field(raw, "role") or "assistant"
                if text_run and role != text_role:
                    _flush_text()
                text_role = role
                content = _field(raw, "content") if item_type == "message" else _field(raw, "text")
                text = _content_text(content)
                if text:
                    text_run.append(text)
                continue

            _flush_text()
            if item_type == "function_call":
                name = str(_field(raw, "name") or "")
                call_id = normalize_call_id(_field(raw, "call_id") or _field(raw, "id"))
                arguments = _field(raw, "arguments")
                tools_used.append(name)
                handoff = handoff_map.get(name)
                if handoff is not None:
                    call: ConversationItem = HandoffCall(
                        call_id=call_id,
                        tool_name=name,
                        target_agent=handoff.target_name,
                        data=_parse_handoff_data(arguments),
                    )
                    handoff_calls.append(call)
                else:
                    if name not in tool_names:
                        logger.debug("response.tool.unknown agent={} name={}", agent.name, name)
                    call = FunctionCall(call_id=call_id, name=name, arguments=dump_arguments(arguments))
                    functions.append(call)
                items.append(call)
            elif item_type == "computer_call":
                action = ComputerAction(
                    call_id=normalize_call_id(_field(raw, "call_id") or _field(raw, "id")),
                    action=dict(_field(raw, "action") or {}),
                )
                tools_used.append(COMPUTER_TOOL_USE)
                computer_actions.append(action)
                items.append(action)
            elif item_type == "local_shell_call":
                shell_action = _field(raw, "action") or {}
                command = _field(shell_action, "command") or ""
                shell = ShellCall(
                    call_id=normalize_call_id(_field(raw, "call_id") or _field(raw, "id")),
                    command=tuple(command) if isinstance(command, list | tuple) else str(command),
                    timeout_ms=_field(shell_action, "timeout_ms"),
                    working_directory=_field(shell_action, "working_directory"),
                )
                tools_used.append(SHELL_TOOL_USE)
                shell_calls.append(shell)
                items.append(shell)
            else:
                logger.debug("response.item.skipped agent={} type={}", agent.name, item_type)
        _flush_text()

        return ProcessedResponse(
            new_items=tuple(items),
            functions=tuple(functions),
            handoffs=tuple(handoff_calls),
            computer_actions=tuple(computer_actions),
            shell_calls=tuple(shell_calls),
            tools_used=tuple(tools_used),
        )
