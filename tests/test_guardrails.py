import pytest

from baton.agent import Agent
from baton.errors import InputGuardrailTripwireTriggered, OutputGuardrailTripwireTriggered
from baton.guardrails import (
    GuardrailResult,
    InputGuardrail,
    OutputGuardrail,
    blocked_terms_guardrail,
    guardrail_text,
    input_guardrail,
    max_length_guardrail,
    output_guardrail,
)
from baton.items import FunctionCall, FunctionCallOutput, Message

AGENT = Agent(name="checker")


def test_decorators_build_named_guardrails() -> None:
    @input_guardrail
    def no_secrets(context, agent, value) -> bool:
        return "secret" in guardrail_text(value)

    @output_guardrail(name="polite")
    def polite(context, agent, value):
        return {"tripwire_triggered": "rude" in value, "message": "be nice"}

    assert isinstance(no_secrets, InputGuardrail)
    assert no_secrets.get_name() == "no_secrets"
    assert no_secrets.run(None, AGENT, "the secret plan").tripwire_triggered
    assert isinstance(polite, OutputGuardrail)
    assert polite.get_name() == "polite"
    verdict = polite.run(None, AGENT, "rude words")
    assert verdict == GuardrailResult(tripwire_triggered=True, message="be nice")


def test_async_guardrail_is_awaited() -> None:
    async def check(context, agent, value) -> GuardrailResult:
        return GuardrailResult.passed({"seen": value})

    verdict = InputGuardrail(guardrail_function=check).run(None, AGENT, "x")
    assert verdict.output_info == {"seen": "x"}


def test_unsupported_result_type_is_rejected() -> None:
    guardrail = InputGuardrail(guardrail_function=lambda context, agent, value: 42)
    with pytest.raises(TypeError):
        guardrail.run(None, AGENT, "x")


def test_max_length_guardrail_reports_length() -> None:
    guardrail = max_length_guardrail(10)
    assert not guardrail.run(None, AGENT, [Message(role="user", content="short")]).tripwire_triggered

    verdict = guardrail.run(None, AGENT, [Message(role="user", content="x" * 11)])
    assert verdict.tripwire_triggered
    assert verdict.message == "Content length 11 exceeds maximum of 10"
    assert verdict.output_info == {"length": 11, "limit": 10}
    assert isinstance(max_length_guardrail(5, output=True), OutputGuardrail)


def test_blocked_terms_match_whole_words_only() -> None:
    guardrail = blocked_terms_guardrail(["hack", "Exploit"])
    assert not guardrail.run(None, AGENT, "a shackle").tripwire_triggered

    verdict = guardrail.run(None, AGENT, "How to HACK and exploit it")
    assert verdict.tripwire_triggered
    assert verdict.message == "Blocked terms found: exploit, hack"


def test_guardrail_text_flattens_items() -> None:
    value = [
        Message(role="user", content="one"),
        FunctionCall(call_id="call_1", name="x"),
        FunctionCallOutput(call_id="call_1", output="two"),
        {"role": "user", "content": "three"},
    ]
    assert guardrail_text(value) == "one\ntwo\nthree"
    assert guardrail_text(None) == ""


def test_tripwire_errors_carry_guardrail_details() -> None:
    error = InputGuardrailTripwireTriggered("max_length", "too long", {"length": 3})
    assert str(error) == "Input guardrail 'max_length' triggered: too long"
    assert error.guardrail_name == "max_length"
    assert error.guardrail_message == "too long"
    assert error.output_info == {"length": 3}
    assert str(OutputGuardrailTripwireTriggered("policy")) == "Output guardrail 'policy' triggered"
