"""Per-turn step processing.

One call to ``StepProcessor.execute_step`` turns a model response into a
``StepResult`` whose ``next_step`` is one of ``NextStepRunAgain``,
``NextStepHandoff`` or ``NextStepFinalOutput``.
"""

from __future__ import annotations

import inspect
import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Union

from loguru import logger
from pydantic import BaseModel, ValidationError

from .agent import RUN_LLM_AGAIN, STOP_ON_FIRST_TOOL, Agent, StopAtTools, ToolsToFinalOutputResult
from .errors import HandoffError, ModelBehaviorError
from .handoffs import Handoff, HandoffContext, HandoffInputData
from .hooks import HookRuntime, RunHooks
from .items import ConversationItem, FunctionCallOutput, HandoffCall
from .providers.base import CanonicalResponse
from .response_processor import ProcessedResponse, ResponseProcessor
from .tools.executor import ComputerExecutor, ShellExecutor, ToolExecutor, ToolOutcome, ToolSuccess, ToolWrapper
from .tools.registry import resolve_awaitable

MULTIPLE_HANDOFFS_MESSAGE = "Multiple handoffs detected, ignoring this one."


@dataclass(frozen=True)
class NextStepRunAgain:
    pass


@dataclass(frozen=True)
class NextStepHandoff:
    target_agent: Agent


@dataclass(frozen=True)
class NextStepFinalOutput:
    output: Any


NextStep = Union[NextStepRunAgain, NextStepHandoff, NextStepFinalOutput]


@dataclass(frozen=True)
class StepResult:
    original_input: tuple[ConversationItem, ...]
    pre_step_items: tuple[ConversationItem, ...]
    new_step_items: tuple[ConversationItem, ...]
    model_response: CanonicalResponse
    next_step: NextStep
    active_agent: Agent

    @property
    def generated_items(self) -> list[ConversationItem]:
        return [*self.pre_step_items, *self.new_step_items]

    @property
    def conversation(self) -> list[ConversationItem]:
        return [*self.original_input, *self.pre_step_items, *self.new_step_items]


class ToolUseTracker:
    """Remembers which agents have used tools during a run."""

    def __init__(self) -> None:
        self._used: dict[str, list[str]] = {}

    def add_tool_use(self, agent: Agent, tool_names: Sequence[str]) -> None:
        if tool_names:
            self._used.setdefault(agent.name, []).extend(tool_names)

    def has_used_tools(self, agent: Agent) -> bool:
        return bool(self._used.get(agent.name))

    def tools_used(self, agent: Agent) -> list[str]:
        return list(self._used.get(agent.name, ()))


def maybe_reset_tool_choice(agent: Agent, tracker: ToolUseTracker) -> Agent:
    """Return an agent without forced tool choice once it has used a tool."""
    if agent.reset_tool_choice and agent.tool_choice is not None and tracker.has_used_tools(agent):
        logger.debug("step.tool_choice.reset agent={}", agent.name)
        return agent.clone(tool_choice=None)
    return agent


def _strip_code_fence(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
        stripped = stripped.rstrip()
        if stripped.endswith("```"):
            stripped = stripped[:-3]
    return stripped.strip()


def parse_final_output(agent: Agent, text: str) -> Any:
    """Apply the agent's structured output format to final message text."""
    response_format = agent.response_format
    if response_format is None:
        return text
    payload = _strip_code_fence(text)
    if isinstance(response_format, type) and issubclass(response_format, BaseModel):
        try:
            return response_format.model_validate_json(payload)
        except ValidationError as exc:
            raise ModelBehaviorError(
                f"Agent {agent.name}: final output does not match {response_format.__name__}: {exc}"
            ) from exc
    try:
        return json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ModelBehaviorError(f"Agent {agent.name}: final output is not valid JSON: {exc.msg}") from exc


class StepProcessor:
    """Decide what happens after one model response."""

    def __init__(
        self,
        *,
        hooks: HookRuntime | RunHooks | None = None,
        handoff_context: HandoffContext | None = None,
        agents: Mapping[str, Agent] | None = None,
        computer: ComputerExecutor | None = None,
        shell: ShellExecutor | None = None,
        response_processor: ResponseProcessor | None = None,
    ) -> None:
        self._hooks = HookRuntime.coerce(hooks)
        self._handoff_context = handoff_context
        self._agents = dict(agents or {})
        self._computer = computer
        self._shell = shell
        self._response_processor = response_processor or ResponseProcessor()

    @property
    def handoff_context(self) -> HandoffContext | None:
        return self._handoff_context

    def execute_step(
        self,
        *,
        agent: Agent,
        original_input: Sequence[ConversationItem],
        pre_step_items: Sequence[ConversationItem],
        model_response: CanonicalResponse,
        tool_use_tracker: ToolUseTracker,
        context: Any = None,
        wrapper: ToolWrapper | None = None,
    ) -> StepResult:
        handoffs = agent.handoff_list()
        processed = self._response_processor.process(model_response, agent, agent.all_tools(context), handoffs)
        tool_use_tracker.add_tool_use(agent, processed.tools_used)
        active_agent = maybe_reset_tool_choice(agent, tool_use_tracker)

        new_items: list[ConversationItem] = list(processed.new_items)
        executor = ToolExecutor(
            agent.tool_registry(),
            hooks=self._hooks,
            agent=agent,
            computer=self._computer,
            shell=self._shell,
        )
        outcomes: list[ToolOutcome] = []
        if processed.functions:
            outcomes = executor.run_calls(processed.functions, context, wrapper)
            new_items.extend(outcome.to_item() for outcome in outcomes)
        if processed.computer_actions or processed.shell_calls:
            executor.execute_actions([*processed.computer_actions, *processed.shell_calls], new_items, context)

        def _result(next_step: NextStep, items: Sequence[ConversationItem] = new_items) -> StepResult:
            return StepResult(
                original_input=tuple(original_input),
                pre_step_items=tuple(pre_step_items),
                new_step_items=tuple(items),
                model_response=model_response,
                next_step=next_step,
                active_agent=active_agent,
            )

        if processed.handoffs_detected:
            return self._execute_handoffs(
                agent=agent,
                active_agent=active_agent,
                processed=processed,
                handoffs=handoffs,
                original_input=original_input,
                pre_step_items=pre_step_items,
                new_items=new_items,
                model_response=model_response,
                context=context,
            )

        if self._handoff_context is not None and self._handoff_context.handoff_pending:
            target = self._resolve_agent(agent, self._handoff_context.target_agent or "")
            self._run_handoff_controller(agent, target, context)
            return _result(NextStepHandoff(target_agent=target))

        final = self._final_output_from_tools(agent, outcomes, context)
        if final.is_final_output:
            logger.info("step.final_output.tool agent={}", agent.name)
            return _result(NextStepFinalOutput(output=final.final_output))

        if processed.tools_or_actions_to_run:
            return _result(NextStepRunAgain())

        text = processed.text or ""
        return _result(NextStepFinalOutput(output=parse_final_output(agent, text)))

    def _final_output_from_tools(
        self, agent: Agent, outcomes: Sequence[ToolOutcome], context: Any
    ) -> ToolsToFinalOutputResult:
        if not outcomes:
            return ToolsToFinalOutputResult(is_final_output=False)
        successes = [outcome for outcome in outcomes if isinstance(outcome, ToolSuccess)]
        registry = agent.tool_registry()
        for success in successes:
            tool = registry.get(getattr(success.call, "name", ""))
            if tool is not None and tool.final_output:
                return ToolsToFinalOutputResult(is_final_output=True, final_output=success.result)

        behavior = agent.tool_use_behavior
        if behavior == RUN_LLM_AGAIN:
            return ToolsToFinalOutputResult(is_final_output=False)
        if behavior == STOP_ON_FIRST_TOOL:
            first = outcomes[0]
            output = first.result if isinstance(first, ToolSuccess) else first.output
            return ToolsToFinalOutputResult(is_final_output=True, final_output=output)
        if isinstance(behavior, StopAtTools):
            for success in successes:
                if getattr(success.call, "name", None) in behavior.names:
                    return ToolsToFinalOutputResult(is_final_output=True, final_output=success.result)
            return ToolsToFinalOutputResult(is_final_output=False)
        if callable(behavior):
            verdict = behavior(context, successes)
            if inspect.isawaitable(verdict):
                verdict = resolve_awaitable(verdict)
            if not isinstance(verdict, ToolsToFinalOutputResult):
                raise ModelBehaviorError(
                    f"Agent {agent.name}: tool_use_behavior must return ToolsToFinalOutputResult"
                )
            return verdict
        return ToolsToFinalOutputResult(is_final_output=False)

    def _resolve_agent(self, agent: Agent, name: str) -> Agent:
        handoff = agent.find_handoff(name)
        if handoff is not None:
            return handoff.agent
        target = self._agents.get(name)
        if target is None:
            raise HandoffError(f"Handoff target {name} is not a known agent")
        return target

    def _run_handoff_controller(
        self,
        agent: Agent,
        target: Agent,
        context: Any,
        data: Mapping[str, Any] | None = None,
    ) -> None:
        handoff_context = self._handoff_context
        if handoff_context is None:
            handoff_context = self._handoff_context = HandoffContext(agent)
        if not handoff_context.handoff_pending or data is not None:
            handoff_context.set_handoff(target, data)
        handoff_context.execute_handoff().raise_for_error()
        self._hooks.on_handoff(context, agent, target)

    def _execute_handoffs(
        self,
        *,
        agent: Agent,
        active_agent: Agent,
        processed: ProcessedResponse,
        handoffs: Sequence[Handoff],
        original_input: Sequence[ConversationItem],
        pre_step_items: Sequence[ConversationItem],
        new_items: list[ConversationItem],
        model_response: CanonicalResponse,
        context: Any,
    ) -> StepResult:
        primary = processed.primary_handoff
        assert primary is not None
        for rejected in processed.rejected_handoffs:
            logger.warning("step.handoff.ignored agent={} target={}", agent.name, rejected.target_agent)
            new_items.append(FunctionCallOutput(call_id=rejected.call_id, output=MULTIPLE_HANDOFFS_MESSAGE))

        handoff = next(item for item in handoffs if item.name == primary.tool_name)
        handoff.invoke(context, primary.data)
        self._run_handoff_controller(agent, handoff.agent, context, primary.data)
        new_items.append(_handoff_output(primary, handoff.agent))

        history = tuple(original_input)
        pre_items = tuple(pre_step_items)
        step_items = tuple(new_items)
        if handoff.input_filter is not None:
            filtered = handoff.input_filter(
                HandoffInputData(input_history=history, pre_handoff_items=pre_items, new_items=step_items)
            )
            history = tuple(filtered.input_history)
            pre_items = tuple(filtered.pre_handoff_items)
            step_items = tuple(filtered.new_items)

        return StepResult(
            original_input=history,
            pre_step_items=pre_items,
            new_step_items=step_items,
            model_response=model_response,
            next_step=NextStepHandoff(target_agent=handoff.agent),
            active_agent=active_agent,
        )


def _handoff_output(call: HandoffCall, target: Agent) -> FunctionCallOutput:
    return FunctionCallOutput(call_id=call.call_id, output=json.dumps({"assistant": target.name}))
