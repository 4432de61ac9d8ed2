"""Input and output guardrails."""

from __future__ import annotations

import inspect
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, is_dataclass
from typing import TYPE_CHECKING, Any

from loguru import logger

from .items import FunctionCallOutput, Message
from .tools.registry import resolve_awaitable

if TYPE_CHECKING:
    from .agent import Agent

GuardrailFunction = Callable[[Any, "Agent", Any], Any]


@dataclass(frozen=True)
class GuardrailResult:
    tripwire_triggered: bool
    message: str = ""
    output_info: Any = None

    @classmethod
    def passed(cls, output_info: Any = None) -> GuardrailResult:
        return cls(tripwire_triggered=False, output_info=output_info)

    @classmethod
    def tripped(cls, message: str, output_info: Any = None) -> GuardrailResult:
        return cls(tripwire_triggered=True, message=message, output_info=output_info)


def _coerce_result(value: Any) -> GuardrailResult:
    if isinstance(value, GuardrailResult):
        return value
    if isinstance(value, bool):
        return GuardrailResult(tripwire_triggered=value)
    if isinstance(value, Mapping):
        return GuardrailResult(
            tripwire_triggered=bool(value.get("tripwire_triggered")),
            message=str(value.get("message") or ""),
            output_info=value.get("output_info"),
        )
    raise TypeError(f"Guardrail returned unsupported result type {type(value).__name__}")


@dataclass(frozen=True)
class _Guardrail:
    guardrail_function: GuardrailFunction
    name: str | None = None

    def get_name(self) -> str:
        return self.name or getattr(self.guardrail_function, "__name__", type(self).__name__)

    def run(self, context: Any, agent: Agent, value: Any) -> GuardrailResult:
        result = self.guardrail_function(context, agent, value)
        if inspect.isawaitable(result):
            result = resolve_awaitable(result)
        verdict = _coerce_result(result)
        logger.debug("guardrail.run name={} triggered={}", self.get_name(), verdict.tripwire_triggered)
        return verdict


class InputGuardrail(_Guardrail):
    """Checks the run input before the first provider call."""


class OutputGuardrail(_Guardrail):
    """Checks the final output before the run is reported successful."""


def input_guardrail(
    func: GuardrailFunction | None = None, *, name: str | None = None
) -> Any:
    """Decorator turning a function into an ``InputGuardrail``."""

    def _wrap(fn: GuardrailFunction) -> InputGuardrail:
        return InputGuardrail(guardrail_function=fn, name=name)

    return _wrap(func) if func is not None else _wrap


def output_guardrail(
    func: GuardrailFunction | None = None, *, name: str | None = None
) -> Any:
    """Decorator turning a function into an ``OutputGuardrail``."""

    def _wrap(fn: GuardrailFunction) -> OutputGuardrail:
        return OutputGuardrail(guardrail_function=fn, name=name)

    return _wrap(func) if func is not None else _wrap


def guardrail_text(value: Any) -> str:
    """Flatten run input or output into the text a rule inspects."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, Message):
        return value.content
    if isinstance(value, FunctionCallOutput):
        return value.output
    if is_dataclass(value):
        return ""
    if isinstance(value, Mapping):
        content = value.get("content")
        return content if isinstance(content, str) else ""
    if isinstance(value, Sequence):
        return "\n".join(text for text in (guardrail_text(item) for item in value) if text)
    model_dump_json = getattr(value, "model_dump_json", None)
    if callable(model_dump_json):
        return str(model_dump_json())
    return str(value)


def max_length_guardrail(limit: int, *, name: str = "max_length", output: bool = False) -> InputGuardrail | OutputGuardrail:
    """Trip when the flattened text exceeds ``limit`` characters."""

    def _check(context: Any, agent: Agent, value: Any) -> GuardrailResult:
        length = len(guardrail_text(value))
        if length > limit:
            return GuardrailResult.tripped(
                f"Content length {length} exceeds maximum of {limit}",
                {"length": length, "limit": limit},
            )
        return GuardrailResult.passed({"length": length})

    cls = OutputGuardrail if output else InputGuardrail
    return cls(guardrail_function=_check, name=name)


def blocked_terms_guardrail(
    terms: Iterable[str], *, name: str = "blocked_terms", output: bool = False
) -> InputGuardrail | OutputGuardrail:
    """Trip when any term appears as a whole word, case-insensitively."""
    term_list = [term for term in terms if term]
    pattern = re.compile(r"\b(?:" + "|".join(re.escape(term) for term in term_list) + r")\b", re.IGNORECASE)

    def _check(context: Any, agent: Agent, value: Any) -> GuardrailResult:
        if not term_list:
            return GuardrailResult.passed()
        found = sorted({match.group(0).lower() for match in pattern.finditer(guardrail_text(value))})
        if found:
            return GuardrailResult.tripped(f"Blocked terms found: {', '.join(found)}", {"terms": found})
        return GuardrailResult.passed()

    cls = OutputGuardrail if output else InputGuardrail
    return cls(guardrail_function=_check, name=name)
