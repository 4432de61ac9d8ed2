"""Agent definition and tool-use behaviours."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Union

from .errors import ConfigurationError
from .handoffs import Handoff, HandoffContext
from .tools.registry import FunctionTool, ToolRegistry

if TYPE_CHECKING:
    from .guardrails import InputGuardrail, OutputGuardrail
    from .tools.executor import ToolSuccess

RUN_LLM_AGAIN = "run_llm_again"
STOP_ON_FIRST_TOOL = "stop_on_first_tool"
DEFAULT_MAX_TURNS = 10


@dataclass(frozen=True)
class StopAtTools:
    """Stop with the tool result once any of the named tools has run."""

    names: frozenset[str]

    def __init__(self, names: Iterable[str]) -> None:
        object.__setattr__(self, "names", frozenset(names))


@dataclass(frozen=True)
class ToolsToFinalOutputResult:
    is_final_output: bool
    final_output: Any = None


ToolUseBehavior = Union[str, StopAtTools, Callable[[Any, Sequence["ToolSuccess"]], ToolsToFinalOutputResult]]
Instructions = Union[str, Callable[[Any, "Agent"], str], None]


@dataclass(frozen=True, eq=False)
class Agent:
    """A named bundle of instructions, tools, handoff targets and guardrails.

    Agents are read-only during a run; a handoff replaces the active agent
    reference and changes are made with ``clone``.
    """

    name: str
    instructions: Instructions = None
    tools: Sequence[FunctionTool] = ()
    handoffs: Sequence[Agent | Handoff] = ()
    input_guardrails: Sequence[InputGuardrail] = ()
    output_guardrails: Sequence[OutputGuardrail] = ()
    max_turns: int = DEFAULT_MAX_TURNS
    model: str | None = None
    model_params: Mapping[str, Any] = field(default_factory=dict)
    response_format: Any = None
    tool_choice: str | Mapping[str, Any] | None = None
    reset_tool_choice: bool = True
    tool_use_behavior: ToolUseBehavior = RUN_LLM_AGAIN
    handoff_description: str | None = None
    handoff_context: HandoffContext | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ConfigurationError("Agent name must be a non-empty string")
        if self.max_turns < 1:
            raise ConfigurationError(f"Agent {self.name}: max_turns must be positive")
        behavior = self.tool_use_behavior
        if isinstance(behavior, str) and behavior not in (RUN_LLM_AGAIN, STOP_ON_FIRST_TOOL):
            raise ConfigurationError(f"Agent {self.name}: unknown tool_use_behavior {behavior!r}")
        for name in ("tools", "handoffs", "input_guardrails", "output_guardrails"):
            object.__setattr__(self, name, tuple(getattr(self, name)))

    def clone(self, **changes: Any) -> Agent:
        return replace(self, **changes)

    def system_prompt(self, context: Any = None) -> str:
        if callable(self.instructions):
            return str(self.instructions(context, self) or "")
        return self.instructions or ""

    def handoff_list(self) -> list[Handoff]:
        return [item if isinstance(item, Handoff) else Handoff(agent=item) for item in self.handoffs]

    def find_handoff(self, agent_name: str) -> Handoff | None:
        for handoff in self.handoff_list():
            if handoff.target_name == agent_name:
                return handoff
        return None

    def can_handoff_to(self, agent_name: str) -> bool:
        return self.find_handoff(agent_name) is not None

    def tool_registry(self) -> ToolRegistry:
        return ToolRegistry(self.tools)

    def all_tools(self, context: Any = None) -> list[FunctionTool]:
        """Enabled function tools plus one tool per enabled handoff."""
        tools = [tool for tool in self.tools if tool.enabled(context)]
        tools.extend(handoff.as_tool() for handoff in self.handoff_list() if handoff.is_enabled(context))
        return tools
