"""Republic-backed provider strategy."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from loguru import logger
from pydantic import BaseModel
from republic import LLM

from ..errors import (
    AuthenticationError,
    BatonError,
    InvalidRequestError,
    ModelNotConfiguredError,
    ProviderError,
    RateLimitError,
    ServerError,
)
from .base import CanonicalResponse, normalize_chat_completion, read_field

if TYPE_CHECKING:
    from ..config import Settings
    from ..tools.registry import FunctionTool

MODEL_NOT_CONFIGURED_ERROR = "Model not configured. Set BATON_MODEL (e.g. openai:gpt-4o-mini)."


def map_provider_exception(exc: Exception, provider: str | None = None) -> ProviderError:
    """Translate a client exception into the provider error taxonomy."""
    if isinstance(exc, ProviderError):
        return exc
    status = read_field(exc, "status_code")
    if status is None:
        status = read_field(read_field(exc, "response"), "status_code")
    message = f"Provider {provider or '-'} request failed: {exc!s}"
    if isinstance(exc, TimeoutError):
        return ServerError(message, provider=provider)
    if not isinstance(status, int):
        return ProviderError(message, provider=provider)
    if status in (401, 403):
        return AuthenticationError(message, status_code=status, provider=provider)
    if status == 429:
        return RateLimitError(message, status_code=status, provider=provider)
    if status >= 500:
        return ServerError(message, status_code=status, provider=provider)
    if 400 <= status < 500:
        return InvalidRequestError(message, status_code=status, provider=provider)
    return ProviderError(message, status_code=status, provider=provider)


def _response_format_payload(response_format: Any) -> Any:
    if isinstance(response_format, type) and issubclass(response_format, BaseModel):
        return {
            "type": "json_schema",
            "json_schema": {
                "name": response_format.__name__,
                "schema": response_format.model_json_schema(),
            },
        }
    return response_format


class RepublicProvider:
    """Stateless provider strategy over republic's LLM client."""

    def __init__(
        self,
        factory: Callable[[str], Any],
        *,
        default_model: str,
        max_tokens: int | None = None,
    ) -> None:
        self._factory = factory
        self._default_model = default_model
        self._max_tokens = max_tokens
        self._clients: dict[str, Any] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> RepublicProvider:
        if not settings.model:
            raise ModelNotConfiguredError(MODEL_NOT_CONFIGURED_ERROR)

        def _build(model: str) -> LLM:
            return LLM(model, api_key=settings.api_key, api_base=settings.api_base)

        return cls(_build, default_model=settings.model, max_tokens=settings.max_tokens)

    @property
    def default_model(self) -> str:
        return self._default_model

    def _client(self, model: str) -> Any:
        client = self._clients.get(model)
        if client is None:
            client = self._factory(model)
            self._clients[model] = client
        return client

    def complete(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        model: str | None = None,
        tools: Sequence[FunctionTool] | None = None,
        response_format: Any = None,
        stream: bool = False,
        **model_params: Any,
    ) -> CanonicalResponse:
        resolved_model = model or self._default_model
        kwargs: dict[str, Any] = {"messages": list(messages), **model_params}
        if self._max_tokens is not None:
            kwargs.setdefault("max_tokens", self._max_tokens)
        if tools:
            kwargs["tools"] = list(tools)
        if response_format is not None:
            kwargs["response_format"] = _response_format_payload(response_format)

        logger.debug("provider.request model={} messages={} tools={}", resolved_model, len(kwargs["messages"]), len(tools or ()))
        try:
            raw = self._client(resolved_model).chat.raw(**kwargs)
        except BatonError:
            raise
        except Exception as exc:
            logger.warning("provider.request.error model={} error={}", resolved_model, exc)
            raise map_provider_exception(exc, resolved_model) from exc
        return normalize_chat_completion(raw)
