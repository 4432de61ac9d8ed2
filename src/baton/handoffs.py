"""Agent handoffs and the handoff controller."""

from __future__ import annotations

import copy
import json
import re
import time
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Union

from loguru import logger

from .errors import CircularHandoffError, ConfigurationError, HandoffError, HandoffTargetMissingError
from .items import ConversationItem
from .tools.registry import FunctionTool

if TYPE_CHECKING:
    from .agent import Agent

HANDOFF_CHAIN_LIMIT = 10
NO_TARGET_ERROR = "No target agent set"
WORKFLOW_COMPLETION_TOOL = "complete_workflow"


def snake_case(name: str) -> str:
    value = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1_\2", name)
    value = re.sub(r"([a-z\d])([A-Z])", r"\1_\2", value).lower()
    value = re.sub(r"[^a-z0-9]+", "_", value)
    return value.strip("_")


def default_tool_name(agent_name: str) -> str:
    return f"transfer_to_{snake_case(agent_name)}"


@dataclass(frozen=True)
class ContextOnly:
    """Handoff callback receiving only the run context."""

    fn: Callable[[Any], Any]

    def __call__(self, context: Any, input_data: Mapping[str, Any]) -> Any:
        return self.fn(context)


@dataclass(frozen=True)
class ContextAndInput:
    """Handoff callback receiving the run context and the parsed handoff arguments."""

    fn: Callable[[Any, Mapping[str, Any]], Any]

    def __call__(self, context: Any, input_data: Mapping[str, Any]) -> Any:
        return self.fn(context, input_data)


OnHandoff = Union[ContextOnly, ContextAndInput]


@dataclass(frozen=True)
class HandoffInputData:
    """Conversation handed to the next agent, split by origin."""

    input_history: tuple[ConversationItem, ...]
    pre_handoff_items: tuple[ConversationItem, ...]
    new_items: tuple[ConversationItem, ...]

    def all_items(self) -> list[ConversationItem]:
        return [*self.input_history, *self.pre_handoff_items, *self.new_items]


HandoffInputFilter = Callable[[HandoffInputData], HandoffInputData]


def _contract_schema(data_contract: Mapping[str, Any] | None) -> dict[str, Any]:
    if not data_contract:
        return {"type": "object", "properties": {}}
    if "properties" in data_contract:
        return {"type": "object", **copy.deepcopy(dict(data_contract))}
    return {"type": "object", "properties": copy.deepcopy(dict(data_contract))}


@dataclass(frozen=True, eq=False)
class Handoff:
    """A handoff target as exposed to the model."""

    agent: Agent
    tool_name: str | None = None
    description: str | None = None
    data_contract: Mapping[str, Any] | None = None
    on_handoff: OnHandoff | None = None
    condition: Callable[[Any], bool] | None = None
    input_filter: HandoffInputFilter | None = None

    def __post_init__(self) -> None:
        if self.on_handoff is not None and not isinstance(self.on_handoff, ContextOnly | ContextAndInput):
            raise ConfigurationError("on_handoff must be wrapped in ContextOnly or ContextAndInput")

    @property
    def target_name(self) -> str:
        return self.agent.name

    @property
    def name(self) -> str:
        return self.tool_name or default_tool_name(self.agent.name)

    def tool_description(self) -> str:
        if self.description:
            return self.description
        text = f"Handoff to the {self.agent.name} agent to handle the request."
        if self.agent.handoff_description:
            text = f"{text} {self.agent.handoff_description}"
        return text

    def is_enabled(self, context: Any = None) -> bool:
        return self.condition is None or bool(self.condition(context))

    def invoke(self, context: Any, input_data: Mapping[str, Any]) -> None:
        if not self.is_enabled(context):
            raise HandoffError(f"Handoff to {self.agent.name} is not allowed in the current context")
        if self.on_handoff is not None:
            self.on_handoff(context, input_data)

    def as_tool(self) -> FunctionTool:
        """Schema-only tool; the step processor intercepts calls by name."""

        def _not_invocable(**_: Any) -> str:
            raise HandoffError(f"{self.name} is a handoff and cannot be invoked as a tool")

        return FunctionTool(
            name=self.name,
            description=self.tool_description(),
            handler=_not_invocable,
            parameters=_contract_schema(self.data_contract),
        )


@dataclass(frozen=True)
class HandoffResult:
    """Outcome of ``HandoffContext.execute_handoff``."""

    success: bool
    previous_agent: str | None = None
    current_agent: str | None = None
    handoff_data: Mapping[str, Any] = field(default_factory=dict)
    timestamp: float | None = None
    error: str | None = None
    circular_agent: str | None = None

    def raise_for_error(self) -> HandoffResult:
        if self.success:
            return self
        if self.circular_agent is not None:
            raise CircularHandoffError(self.error or "Circular handoff detected", self.circular_agent)
        if self.error == NO_TARGET_ERROR:
            raise HandoffTargetMissingError(self.error)
        raise HandoffError(self.error or "Handoff failed")


def _agent_name(agent: Agent | str | None) -> str | None:
    if agent is None or isinstance(agent, str):
        return agent
    return agent.name


class HandoffContext:
    """Tracks pending and executed handoffs for one workflow."""

    def __init__(self, current_agent: Agent | str | None = None) -> None:
        self.current_agent: str | None = _agent_name(current_agent)
        self.target_agent: str | None = None
        self.handoff_data: dict[str, Any] = {}
        self.handoff_reason: str | None = None
        self.shared_context: dict[str, Any] = {}
        self.handoff_chain: deque[tuple[str | None, str]] = deque(maxlen=HANDOFF_CHAIN_LIMIT)
        self.handoff_timestamp: float | None = None

    @property
    def handoff_pending(self) -> bool:
        return self.target_agent is not None

    def set_handoff(
        self,
        target_agent: Agent | str,
        data: Mapping[str, Any] | None = None,
        reason: str | None = None,
    ) -> bool:
        target = _agent_name(target_agent)
        if not target or not target.strip():
            raise HandoffError("Handoff target must be a non-empty agent name")
        self.target_agent = target
        self.handoff_data = copy.deepcopy(dict(data or {}))
        self.handoff_reason = reason
        self.handoff_timestamp = time.time()
        logger.debug("handoff.prepared from={} to={}", self.current_agent, target)
        return True

    def in_chain(self, agent_name: str) -> bool:
        return any(agent_name in pair for pair in self.handoff_chain)

    def execute_handoff(self) -> HandoffResult:
        target = self.target_agent
        if target is None:
            return HandoffResult(success=False, error=NO_TARGET_ERROR)
        if self.in_chain(target):
            chain = " -> ".join(f"{source}->{dest}" for source, dest in self.handoff_chain)
            logger.warning("handoff.circular target={} chain={}", target, chain)
            return HandoffResult(
                success=False,
                error=f"Circular handoff detected: {target} already appears in handoff chain",
                circular_agent=target,
            )

        previous = self.current_agent
        self.handoff_chain.append((previous, target))
        self.current_agent = target
        self.target_agent = None
        self.shared_context.update(self.handoff_data)
        timestamp = self.handoff_timestamp or time.time()
        logger.info("handoff.executed from={} to={}", previous, target)
        return HandoffResult(
            success=True,
            previous_agent=previous,
            current_agent=target,
            handoff_data=copy.deepcopy(self.handoff_data),
            timestamp=timestamp,
        )

    def clear_handoff(self) -> None:
        """Drop any pending handoff and start a fresh chain."""
        self.target_agent = None
        self.handoff_data = {}
        self.handoff_reason = None
        self.handoff_timestamp = None
        self.handoff_chain.clear()

    def build_handoff_message(self) -> str:
        lines = [f"Handoff from {self.current_agent or 'previous agent'}."]
        if self.handoff_reason:
            lines.append(f"Reason: {self.handoff_reason}")
        if self.handoff_data:
            lines.append(f"Data: {json.dumps(self.handoff_data, ensure_ascii=False, default=str)}")
        if self.shared_context:
            lines.append(f"Shared context: {json.dumps(self.shared_context, ensure_ascii=False, default=str)}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_agent": self.current_agent,
            "target_agent": self.target_agent,
            "handoff_data": copy.deepcopy(self.handoff_data),
            "handoff_reason": self.handoff_reason,
            "shared_context": copy.deepcopy(self.shared_context),
            "handoff_chain": [list(pair) for pair in self.handoff_chain],
            "handoff_timestamp": self.handoff_timestamp,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> HandoffContext:
        context = cls(data.get("current_agent"))
        context.target_agent = data.get("target_agent")
        context.handoff_data = copy.deepcopy(dict(data.get("handoff_data") or {}))
        context.handoff_reason = data.get("handoff_reason")
        context.shared_context = copy.deepcopy(dict(data.get("shared_context") or {}))
        context.handoff_chain.extend((pair[0], pair[1]) for pair in data.get("handoff_chain") or [])
        context.handoff_timestamp = data.get("handoff_timestamp")
        return context


def _handoff_tool(handoff_context: HandoffContext, target: str, data_contract: Mapping[str, Any]) -> FunctionTool:
    def _handler(**arguments: Any) -> str:
        reason = arguments.pop("reason", None)
        try:
            handoff_context.set_handoff(target, arguments, reason=reason)
        except HandoffError as exc:
            return json.dumps({"success": False, "error": str(exc)})
        return json.dumps({"success": True, "handoff_prepared": True, "target_agent": target})

    schema = _contract_schema(data_contract)
    schema["properties"].setdefault("reason", {"type": "string", "description": "Why the handoff is needed"})
    return FunctionTool(
        name=f"handoff_to_{snake_case(target)}",
        description=f"Transfer the workflow to {target} with the collected data.",
        handler=_handler,
        parameters=schema,
    )


def add_handoff_tools(
    agent: Agent,
    handoff_context: HandoffContext,
    configs: Sequence[Mapping[str, Any]],
) -> Agent:
    """Return a copy of ``agent`` with one handoff tool per config entry.

    Each entry is ``{"target_agent": name, "data_contract": {...}}``. The tools
    record the request on ``handoff_context``; the runner executes it.
    """
    tools = list(agent.tools)
    for index, config in enumerate(configs):
        target = config.get("target_agent")
        if isinstance(target, str):
            target = target.strip()
        elif target is not None:
            target = _agent_name(target)
        if not target:
            raise ConfigurationError(f"Handoff config #{index} for agent {agent.name} has no target_agent")
        tools.append(_handoff_tool(handoff_context, target, config.get("data_contract") or {}))
    return agent.clone(tools=tuple(tools), handoff_context=handoff_context)


def add_completion_tool(
    agent: Agent,
    handoff_context: HandoffContext,
    data_contract: Mapping[str, Any] | None = None,
) -> Agent:
    """Return a copy of ``agent`` able to mark the workflow as completed."""

    def _handler(**arguments: Any) -> str:
        handoff_context.shared_context["workflow_completed"] = True
        handoff_context.shared_context["final_results"] = copy.deepcopy(arguments)
        return json.dumps({"success": True, "workflow_completed": True})

    tool = FunctionTool(
        name=WORKFLOW_COMPLETION_TOOL,
        description="Mark the workflow as completed with the final results.",
        handler=_handler,
        parameters=_contract_schema(data_contract),
        final_output=True,
    )
    return agent.clone(tools=(*agent.tools, tool), handoff_context=handoff_context)
