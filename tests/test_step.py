import json

import pytest
from pydantic import BaseModel

from baton.agent import STOP_ON_FIRST_TOOL, Agent, StopAtTools, ToolsToFinalOutputResult
from baton.errors import HandoffError, ModelBehaviorError
from baton.handoffs import Handoff, HandoffContext, HandoffInputData, add_handoff_tools
from baton.hooks import RunHooks
from baton.items import FunctionCallOutput, HandoffCall, Message
from baton.step import (
    MULTIPLE_HANDOFFS_MESSAGE,
    NextStepFinalOutput,
    NextStepHandoff,
    NextStepRunAgain,
    StepProcessor,
    ToolUseTracker,
    maybe_reset_tool_choice,
    parse_final_output,
)
from baton.tools.registry import FunctionTool

INPUT = (Message(role="user", content="hi"),)


def _tool(name: str, result: object = "ok", **options) -> FunctionTool:
    return FunctionTool(name=name, description=name, handler=lambda **_: result, **options)


def _step(agent: Agent, response, processor: StepProcessor | None = None, tracker: ToolUseTracker | None = None):
    return (processor or StepProcessor()).execute_step(
        agent=agent,
        original_input=INPUT,
        pre_step_items=(),
        model_response=response,
        tool_use_tracker=tracker or ToolUseTracker(),
    )


def test_plain_text_is_final_output(responses) -> None:
    step = _step(Agent(name="a"), responses.text("all done"))
    assert step.next_step == NextStepFinalOutput(output="all done")
    assert step.new_step_items == (Message(role="assistant", content="all done"),)
    assert step.conversation == [*INPUT, Message(role="assistant", content="all done")]


def test_tool_calls_run_again_with_outputs(responses) -> None:
    agent = Agent(name="a", tools=[_tool("lookup", {"temp": 20})])
    step = _step(agent, responses.call("lookup"))

    assert step.next_step == NextStepRunAgain()
    assert step.new_step_items[-1] == FunctionCallOutput(call_id="call_1", output='{"temp": 20}')


def test_final_output_tool_stops_with_its_result(responses) -> None:
    agent = Agent(name="a", tools=[_tool("finish", {"answer": 42}, final_output=True)])
    step = _step(agent, responses.call("finish"))
    assert step.next_step == NextStepFinalOutput(output={"answer": 42})


def test_stop_on_first_tool_uses_first_outcome(responses) -> None:
    agent = Agent(name="a", tools=[_tool("one", 1), _tool("two", 2)], tool_use_behavior=STOP_ON_FIRST_TOOL)
    step = _step(agent, responses.calls(("one", "{}", "call_1"), ("two", "{}", "call_2")))
    assert step.next_step == NextStepFinalOutput(output=1)


def test_stop_at_tools_only_for_named_tools(responses) -> None:
    agent = Agent(name="a", tools=[_tool("search"), _tool("submit", "sent")], tool_use_behavior=StopAtTools(["submit"]))
    assert _step(agent, responses.call("search")).next_step == NextStepRunAgain()
    assert _step(agent, responses.call("submit")).next_step == NextStepFinalOutput(output="sent")


def test_custom_tool_use_behavior(responses) -> None:
    def behavior(context, results) -> ToolsToFinalOutputResult:
        return ToolsToFinalOutputResult(is_final_output=True, final_output=[r.result for r in results])

    agent = Agent(name="a", tools=[_tool("x", "X")], tool_use_behavior=behavior)
    assert _step(agent, responses.call("x")).next_step == NextStepFinalOutput(output=["X"])


def test_tool_choice_is_reset_after_tool_use(responses) -> None:
    agent = Agent(name="a", tools=[_tool("x")], tool_choice="required")
    step = _step(agent, responses.call("x"))
    assert step.active_agent.tool_choice is None
    assert agent.tool_choice == "required"


def test_handoff_counts_as_tool_use_for_tool_choice_reset(responses) -> None:
    billing = Agent(name="Billing")
    triage = Agent(name="triage", handoffs=[billing], tool_choice="required")
    tracker = ToolUseTracker()

    step = _step(
        triage,
        responses.call("transfer_to_billing"),
        StepProcessor(handoff_context=HandoffContext(triage)),
        tracker,
    )

    assert step.next_step == NextStepHandoff(target_agent=billing)
    assert tracker.tools_used(triage) == ["transfer_to_billing"]
    assert maybe_reset_tool_choice(triage, tracker).tool_choice is None


def test_tool_choice_kept_when_reset_disabled() -> None:
    agent = Agent(name="a", tool_choice="required", reset_tool_choice=False)
    tracker = ToolUseTracker()
    tracker.add_tool_use(agent, ["x"])
    assert maybe_reset_tool_choice(agent, tracker) is agent


def test_model_handoff_switches_agent_and_rejects_extras(responses) -> None:
    billing = Agent(name="Billing")
    support = Agent(name="Support")
    agent = Agent(name="triage", handoffs=[billing, support])
    handoff_context = HandoffContext(agent)
    switched: list[tuple[str, str]] = []

    class Hooks(RunHooks):
        def on_handoff(self, context, from_agent, to_agent) -> None:
            switched.append((from_agent.name, to_agent.name))

    step = _step(
        agent,
        responses.calls(
            ("transfer_to_billing", '{"invoice": 1}', "call_1"),
            ("transfer_to_support", "{}", "call_2"),
        ),
        StepProcessor(hooks=Hooks(), handoff_context=handoff_context),
    )

    assert step.next_step == NextStepHandoff(target_agent=billing)
    assert switched == [("triage", "Billing")]
    outputs = {item.call_id: item.output for item in step.new_step_items if isinstance(item, FunctionCallOutput)}
    assert outputs == {"call_1": json.dumps({"assistant": "Billing"}), "call_2": MULTIPLE_HANDOFFS_MESSAGE}
    assert isinstance(step.new_step_items[0], HandoffCall)
    assert handoff_context.current_agent == "Billing"
    assert handoff_context.shared_context == {"invoice": 1}


def test_handoff_input_filter_rewrites_history(responses) -> None:
    def only_new(data: HandoffInputData) -> HandoffInputData:
        return HandoffInputData(input_history=(), pre_handoff_items=(), new_items=data.new_items)

    target = Agent(name="Billing")
    agent = Agent(name="triage", handoffs=[Handoff(agent=target, input_filter=only_new)])
    step = _step(agent, responses.call("transfer_to_billing"))

    assert step.original_input == ()
    assert len(step.new_step_items) == 2


def test_function_calls_run_before_handoff(responses) -> None:
    calls: list[str] = []
    agent = Agent(
        name="triage",
        tools=[FunctionTool(name="note", description="", handler=lambda: calls.append("note"))],
        handoffs=[Agent(name="Billing")],
    )
    step = _step(agent, responses.calls(("note", "{}", "call_1"), ("transfer_to_billing", "{}", "call_2")))

    assert calls == ["note"]
    assert isinstance(step.next_step, NextStepHandoff)
    assert {item.call_id for item in step.new_step_items if isinstance(item, FunctionCallOutput)} == {
        "call_1",
        "call_2",
    }


def test_pending_handoff_from_tool_is_executed(responses) -> None:
    billing = Agent(name="Billing")
    handoff_context = HandoffContext("triage")
    agent = add_handoff_tools(Agent(name="triage"), handoff_context, [{"target_agent": "Billing"}])
    processor = StepProcessor(handoff_context=handoff_context, agents={"Billing": billing})

    step = _step(agent, responses.call("handoff_to_billing", '{"reason": "refund", "order": 5}'), processor)

    assert step.next_step == NextStepHandoff(target_agent=billing)
    assert handoff_context.current_agent == "Billing"
    assert handoff_context.shared_context == {"order": 5}


def test_pending_handoff_to_unknown_agent_fails(responses) -> None:
    handoff_context = HandoffContext("triage")
    agent = add_handoff_tools(Agent(name="triage"), handoff_context, [{"target_agent": "Ghost"}])
    with pytest.raises(HandoffError, match="Ghost"):
        _step(agent, responses.call("handoff_to_ghost"), StepProcessor(handoff_context=handoff_context))


def test_structured_output_is_parsed(responses) -> None:
    class Answer(BaseModel):
        value: int

    agent = Agent(name="a", response_format=Answer)
    step = _step(agent, responses.text('```json\n{"value": 3}\n```'))
    assert step.next_step == NextStepFinalOutput(output=Answer(value=3))

    with pytest.raises(ModelBehaviorError, match="does not match Answer"):
        parse_final_output(agent, '{"value": "x"}')
    with pytest.raises(ModelBehaviorError, match="not valid JSON"):
        parse_final_output(Agent(name="b", response_format={"type": "json_object"}), "nope")
