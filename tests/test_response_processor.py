from baton.agent import Agent
from baton.handoffs import Handoff
from baton.items import ComputerAction, FunctionCall, HandoffCall, Message, ShellCall
from baton.providers.base import CanonicalResponse
from baton.response_processor import ResponseProcessor, response_output
from baton.tools.registry import FunctionTool


def _process(output, agent: Agent | None = None):
    agent = agent or Agent(name="worker", tools=[FunctionTool(name="lookup", description="", handler=lambda: "x")])
    return ResponseProcessor().process(
        CanonicalResponse(output=output),
        agent,
        agent.all_tools(),
        agent.handoff_list(),
    )


def test_consecutive_text_parts_merge_into_one_message() -> None:
    processed = _process([
        {"type": "output_text", "text": "Hello, "},
        {"type": "message", "role": "assistant", "content": [{"type": "output_text", "text": "world"}]},
    ])
    assert processed.new_items == (Message(role="assistant", content="Hello, world"),)
    assert processed.text == "Hello, world"
    assert not processed.tools_or_actions_to_run


def test_function_calls_keep_order_and_mark_tools_used() -> None:
    processed = _process([
        {"type": "message", "role": "assistant", "content": "checking"},
        {"type": "function_call", "call_id": "fc_1", "name": "lookup", "arguments": {"q": "x"}},
        {"type": "function_call", "call_id": "call_2", "name": "unknown", "arguments": "{}"},
    ])
    assert processed.new_items == (
        Message(role="assistant", content="checking"),
        FunctionCall(call_id="call_1", name="lookup", arguments='{"q": "x"}'),
        FunctionCall(call_id="call_2", name="unknown", arguments="{}"),
    )
    assert [call.name for call in processed.functions] == ["lookup", "unknown"]
    assert processed.tools_used == ("lookup", "unknown")


def test_handoff_calls_are_classified_by_tool_name() -> None:
    billing = Agent(name="Billing")
    support = Agent(name="Support")
    agent = Agent(name="triage", handoffs=[billing, Handoff(agent=support, tool_name="escalate")])

    processed = _process(
        [
            {"type": "function_call", "call_id": "call_1", "name": "transfer_to_billing", "arguments": '{"id": 3}'},
            {"type": "function_call", "call_id": "call_2", "name": "escalate", "arguments": "not json"},
        ],
        agent,
    )

    assert processed.functions == ()
    assert processed.handoffs_detected
    assert processed.primary_handoff == HandoffCall(
        call_id="call_1", tool_name="transfer_to_billing", target_agent="Billing", data={"id": 3}
    )
    assert [call.target_agent for call in processed.rejected_handoffs] == ["Support"]
    assert processed.rejected_handoffs[0].data == {}
    assert processed.tools_used == ("transfer_to_billing", "escalate")


def test_computer_and_shell_calls_become_actions() -> None:
    processed = _process([
        {"type": "computer_call", "call_id": "call_1", "action": {"type": "click", "x": 4}},
        {"type": "local_shell_call", "id": "fc_2", "action": {"command": ["ls", "-a"], "timeout_ms": 100}},
    ])
    assert processed.computer_actions == (ComputerAction(call_id="call_1", action={"type": "click", "x": 4}),)
    assert processed.shell_calls == (ShellCall(call_id="call_2", command=("ls", "-a"), timeout_ms=100),)
    assert processed.tools_used == ("computer_use", "local_shell")
    assert processed.tools_or_actions_to_run


def test_unknown_item_types_are_skipped() -> None:
    processed = _process([
        {"type": "reasoning", "summary": []},
        {"type": "output_text", "text": "ok"},
    ])
    assert processed.new_items == (Message(role="assistant", content="ok"),)


def test_response_output_accepts_chat_completion_payload() -> None:
    payload = {
        "id": "chatcmpl-1",
        "choices": [{"message": {"role": "assistant", "content": "hi"}, "finish_reason": "stop"}],
    }
    [record] = response_output(payload)
    assert record["type"] == "message"
    assert response_output({}) == ()
