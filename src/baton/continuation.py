"""Continuation of truncated model responses."""

from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from typing import Any, Union

from loguru import logger

from .errors import ConfigurationError, ProviderFinishError
from .providers.base import (
    FINISH_CONTENT_FILTER,
    FINISH_ERROR,
    FINISH_INCOMPLETE,
    CanonicalResponse,
    ModelRequest,
    ProviderStrategy,
    StatefulProviderStrategy,
    is_truncated,
)
from .usage import Usage

DEFAULT_MAX_ATTEMPTS = 3
CONTINUE_PROMPT = "Continue exactly where you left off. Do not repeat any earlier text."

MergeFunction = Callable[[Sequence[str]], str]
MergeStrategy = Union[str, MergeFunction]
RequestSender = Callable[[ModelRequest], CanonicalResponse]


def merge_concatenate(chunks: Sequence[str]) -> str:
    return "".join(chunks)


def merge_csv(chunks: Sequence[str]) -> str:
    """Join CSV fragments, dropping header rows repeated by later fragments."""
    if not chunks:
        return ""
    merged = chunks[0]
    header = chunks[0].splitlines()[0].strip() if chunks[0].strip() else ""
    for chunk in chunks[1:]:
        body = chunk
        stripped = chunk.lstrip("\r\n")
        if header and stripped.startswith(header):
            _, _, body = stripped.partition("\n")
            if merged and not merged.endswith("\n"):
                merged += "\n"
        merged += body
    return merged


def _strip_fence(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
        if stripped.rstrip().endswith("```"):
            stripped = stripped.rstrip()[:-3]
    return stripped.strip()


def merge_json(chunks: Sequence[str]) -> str:
    """Join JSON fragments; warn when the joined document does not parse."""
    merged = "".join(chunks)
    for candidate in (merged, _strip_fence(merged)):
        try:
            json.loads(candidate)
        except json.JSONDecodeError:
            continue
        return candidate
    logger.warning("continuation.merge.json.invalid length={}", len(merged))
    return merged


def merge_markdown(chunks: Sequence[str]) -> str:
    """Join markdown fragments, dropping fences reopened inside an open code block."""
    merged = ""
    for chunk in chunks:
        body = chunk
        if merged.count("```") % 2 == 1 and chunk.lstrip().startswith("```"):
            _, _, body = chunk.lstrip().partition("\n")
        merged += body
    return merged


MERGE_STRATEGIES: dict[str, MergeFunction] = {
    "concatenate": merge_concatenate,
    "csv": merge_csv,
    "json": merge_json,
    "markdown": merge_markdown,
}


def resolve_merge_strategy(strategy: MergeStrategy) -> MergeFunction:
    if callable(strategy):
        return strategy
    merge = MERGE_STRATEGIES.get(strategy)
    if merge is None:
        raise ConfigurationError(f"Unknown merge strategy: {strategy}")
    return merge


class ContinuationController:
    """Issue bounded follow-up requests until a response is no longer truncated."""

    def __init__(
        self,
        provider: ProviderStrategy,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        merge_strategy: MergeStrategy = "concatenate",
    ) -> None:
        self._provider = provider
        self._max_attempts = max_attempts
        self._merge_strategy = merge_strategy

    def complete_with_continuation(
        self,
        request: ModelRequest,
        max_attempts: int | None = None,
        merge_strategy: MergeStrategy | None = None,
        *,
        send: RequestSender | None = None,
    ) -> CanonicalResponse:
        """Complete ``request``, continuing while the provider reports truncation.

        ``send`` replaces the plain provider call for the initial request only.
        Never issues more than ``max_attempts`` requests in total.
        """
        limit = max_attempts if max_attempts is not None else self._max_attempts
        if limit < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        merge = resolve_merge_strategy(merge_strategy or self._merge_strategy)

        response = (send or self._send)(request)
        attempts = 1
        if not self._check_finish(response, attempts):
            return response

        responses = [response]
        while attempts < limit:
            attempts += 1
            logger.info(
                "continuation.attempt attempt={} max_attempts={} response_id={}",
                attempts,
                limit,
                response.response_id,
            )
            response = self._follow_up(request, responses)
            responses.append(response)
            if not self._check_finish(response, attempts):
                break
        else:
            logger.warning("continuation.exhausted attempts={} still_truncated=true", attempts)

        return self._assemble(responses, merge, attempts)

    def _send(self, request: ModelRequest) -> CanonicalResponse:
        return self._provider.complete(
            request.messages,
            model=request.model,
            tools=list(request.tools) or None,
            response_format=request.response_format,
            **request.call_kwargs(),
        )

    def _check_finish(self, response: CanonicalResponse, attempt: int) -> bool:
        """Return whether the response is truncated; raise on an error finish."""
        reason = response.finish_reason
        if reason == FINISH_ERROR:
            logger.error("continuation.finish.error attempt={} response_id={}", attempt, response.response_id)
            raise ProviderFinishError(
                f"Continuation: provider returned error finish_reason (response {response.response_id or '-'})"
            )
        if reason == FINISH_CONTENT_FILTER:
            logger.warning(
                "continuation.finish.content_filter attempt={} response_id={}", attempt, response.response_id
            )
            return False
        if reason == FINISH_INCOMPLETE:
            logger.warning(
                "continuation.finish.incomplete attempt={} response_id={}", attempt, response.response_id
            )
            return False
        return is_truncated(reason)

    def _follow_up(self, request: ModelRequest, responses: Sequence[CanonicalResponse]) -> CanonicalResponse:
        previous = responses[-1]
        if isinstance(self._provider, StatefulProviderStrategy) and previous.response_id:
            return self._provider.complete_stateful(
                [{"role": "user", "content": CONTINUE_PROMPT}],
                model=request.model,
                tools=list(request.tools) or None,
                previous_response_id=previous.response_id,
                **request.call_kwargs(),
            )
        partial = "".join(response.text for response in responses)
        messages: list[Any] = [
            *request.messages,
            {"role": "assistant", "content": partial},
            {"role": "user", "content": CONTINUE_PROMPT},
        ]
        return self._send(request.with_messages(messages))

    @staticmethod
    def _assemble(
        responses: Sequence[CanonicalResponse],
        merge: MergeFunction,
        attempts: int,
    ) -> CanonicalResponse:
        last = responses[-1]
        text = merge([response.text for response in responses])
        output: list[dict[str, Any]] = []
        if text:
            output.append({
                "type": "message",
                "role": "assistant",
                "content": [{"type": "output_text", "text": text}],
            })
        for response in responses:
            output.extend(
                dict(item) for item in response.output if item.get("type") not in ("message", "output_text")
            )
        usage = sum((response.usage for response in responses), Usage())
        return CanonicalResponse(
            output=output,
            usage=usage,
            finish_reason=last.finish_reason,
            response_id=last.response_id,
            truncated=is_truncated(last.finish_reason),
            metadata={**last.metadata, "continuation_attempts": attempts},
        )
