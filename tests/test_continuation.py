from collections.abc import Mapping, Sequence
from typing import Any

import pytest

from baton.continuation import (
    CONTINUE_PROMPT,
    ContinuationController,
    merge_csv,
    merge_json,
    merge_markdown,
    resolve_merge_strategy,
)
from baton.errors import ConfigurationError, ProviderFinishError
from baton.providers.base import CanonicalResponse, ModelRequest


def _request() -> ModelRequest:
    return ModelRequest(messages=[{"role": "user", "content": "write a long essay"}], model="openai:test")


def test_always_truncated_provider_stops_at_attempt_limit(responses, scripted_provider) -> None:
    provider = scripted_provider(responses.text("chunk ", finish_reason="length"), repeat_last=True)

    response = ContinuationController(provider, max_attempts=3).complete_with_continuation(_request())

    assert len(provider.calls) == 3
    assert response.truncated is True
    assert response.text == "chunk chunk chunk "
    assert response.usage.requests == 3
    assert response.usage.total_tokens == 60
    assert response.metadata["continuation_attempts"] == 3


def test_follow_up_replays_partial_text_and_continue_prompt(responses, scripted_provider) -> None:
    provider = scripted_provider(
        responses.text("Once upon ", finish_reason="length"),
        responses.text("a time.", finish_reason="stop"),
    )

    response = ContinuationController(provider).complete_with_continuation(_request())

    assert response.text == "Once upon a time."
    assert response.truncated is False
    follow_up = provider.calls[1]["messages"]
    assert follow_up[-2] == {"role": "assistant", "content": "Once upon "}
    assert follow_up[-1] == {"role": "user", "content": CONTINUE_PROMPT}


def test_untruncated_response_is_returned_untouched(responses, scripted_provider) -> None:
    original = responses.text("short answer")
    provider = scripted_provider(original)
    assert ContinuationController(provider).complete_with_continuation(_request()) is original
    assert len(provider.calls) == 1


def test_error_finish_raises_and_logs_error(responses, scripted_provider, log_records) -> None:
    provider = scripted_provider(responses.text("", finish_reason="error", response_id="resp_9"))

    with pytest.raises(ProviderFinishError, match="resp_9"):
        ContinuationController(provider).complete_with_continuation(_request())
    assert any(level == "ERROR" and message.startswith("continuation.finish.error") for level, message in log_records)


@pytest.mark.parametrize(
    ("reason", "expected_log"),
    [("content_filter", "continuation.finish.content_filter"), ("incomplete", "continuation.finish.incomplete")],
)
def test_filtered_and_incomplete_are_returned_with_warning(
    responses, scripted_provider, log_records, reason: str, expected_log: str
) -> None:
    provider = scripted_provider(responses.text("partial", finish_reason=reason))

    response = ContinuationController(provider).complete_with_continuation(_request())

    assert response.text == "partial"
    assert len(provider.calls) == 1
    assert any(level == "WARNING" and message.startswith(expected_log) for level, message in log_records)


def test_stateful_provider_continues_from_previous_response(responses) -> None:
    class StatefulProvider:
        def __init__(self) -> None:
            self.stateful_calls: list[dict[str, Any]] = []

        def complete(self, messages: Sequence[Mapping[str, Any]], **kwargs: Any) -> CanonicalResponse:
            return responses.text("part one ", finish_reason="max_output_tokens", response_id="resp_1")

        def complete_stateful(
            self, messages: Sequence[Mapping[str, Any]], *, previous_response_id: str | None = None, **kwargs: Any
        ) -> CanonicalResponse:
            self.stateful_calls.append({"messages": list(messages), "previous_response_id": previous_response_id})
            return responses.text("part two", response_id="resp_2")

    provider = StatefulProvider()
    response = ContinuationController(provider).complete_with_continuation(_request())

    assert provider.stateful_calls == [
        {"messages": [{"role": "user", "content": CONTINUE_PROMPT}], "previous_response_id": "resp_1"}
    ]
    assert response.text == "part one part two"
    assert response.response_id == "resp_2"


def test_tool_calls_survive_merging(responses, scripted_provider) -> None:
    truncated = CanonicalResponse(
        output=[
            {"type": "function_call", "call_id": "call_1", "name": "lookup", "arguments": "{}"},
            {"type": "output_text", "text": "and "},
        ],
        finish_reason="length",
    )
    provider = scripted_provider(truncated, responses.text("done"))

    response = ContinuationController(provider).complete_with_continuation(_request())

    assert [item["type"] for item in response.output] == ["message", "function_call"]
    assert response.text == "and done"


def test_custom_sender_is_used_for_initial_request(responses, scripted_provider) -> None:
    provider = scripted_provider()
    sent: list[ModelRequest] = []

    def send(request: ModelRequest) -> CanonicalResponse:
        sent.append(request)
        return responses.text("streamed")

    response = ContinuationController(provider).complete_with_continuation(_request(), send=send)
    assert response.text == "streamed"
    assert len(sent) == 1
    assert provider.calls == []


def test_invalid_limits_and_strategies() -> None:
    controller = ContinuationController(object())  # type: ignore[arg-type]
    with pytest.raises(ConfigurationError):
        controller.complete_with_continuation(_request(), max_attempts=0)
    with pytest.raises(ConfigurationError, match="Unknown merge strategy: yaml"):
        resolve_merge_strategy("yaml")


def test_merge_csv_drops_repeated_header() -> None:
    merged = merge_csv(["id,name\n1,a\n", "id,name\n2,b\n", "3,c\n"])
    assert merged == "id,name\n1,a\n2,b\n3,c\n"


def test_merge_json_strips_fence_when_needed() -> None:
    assert merge_json(['{"a": ', "1}"]) == '{"a": 1}'
    assert merge_json(["```json\n[1, ", "2]\n```"]) == "[1, 2]"


def test_merge_json_warns_on_invalid_document(log_records) -> None:
    assert merge_json(['{"a": ', "oops"]) == '{"a": oops'
    assert any(message.startswith("continuation.merge.json.invalid") for _, message in log_records)


def test_merge_markdown_drops_reopened_fence() -> None:
    merged = merge_markdown(["Intro\n```python\nx = 1\n", "```python\ny = 2\n```\n"])
    assert merged == "Intro\n```python\nx = 1\ny = 2\n```\n"
