"""Function tools and the name-keyed tool registry."""

from __future__ import annotations

import asyncio
import inspect
import json
import time
from collections.abc import Awaitable, Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from pydantic import BaseModel
from republic import Tool, tool_from_model

from ..errors import ConfigurationError, ToolDisabledError, ToolNotFoundError

CONTEXT_PARAMETER = "context"


def _empty_schema() -> dict[str, Any]:
    return {"type": "object", "properties": {}}


def _shorten_text(text: str, width: int = 30, placeholder: str = "...") -> str:
    """Shorten text to width characters, cutting in the middle of words if needed."""
    if len(text) <= width:
        return text
    available = width - len(placeholder)
    if available <= 0:
        return placeholder
    return text[:available] + placeholder


def resolve_awaitable(result: Awaitable[Any]) -> Any:
    """Drive an awaitable tool result to completion on a private event loop."""

    async def _await() -> Any:
        return await result

    return asyncio.run(_await())


def _takes_context(func: Callable[..., Any]) -> bool:
    try:
        return CONTEXT_PARAMETER in inspect.signature(func).parameters
    except (TypeError, ValueError):
        return False


@dataclass(frozen=True)
class FunctionTool(Tool):
    """Republic tool with run-time enablement and final-output marking.

    Build one with ``from_function`` or ``from_model`` so schema derivation and
    argument validation go through republic. A handler declaring a ``context``
    parameter receives the run context.
    """

    parameters: dict[str, Any] = field(default_factory=_empty_schema)
    enabled_when: Callable[[Any], bool] | None = None
    final_output: bool = False

    @classmethod
    def from_republic(cls, tool: Tool, **options: Any) -> FunctionTool:
        return cls(
            name=tool.name,
            description=tool.description,
            parameters=tool.parameters,
            handler=tool.handler,
            context=tool.context,
            **options,
        )

    @classmethod
    def from_model(
        cls,
        model: type[BaseModel],
        handler: Callable[..., Any],
        *,
        name: str,
        description: str | None = None,
        **options: Any,
    ) -> FunctionTool:
        """Build a tool whose arguments are validated by a pydantic model."""
        tool = tool_from_model(
            model,
            handler,
            name=name,
            description=description if description is not None else (model.__doc__ or "").strip(),
            context=_takes_context(handler),
        )
        return cls.from_republic(tool, **options)

    @classmethod
    def from_function(
        cls,
        func: Callable[..., Any],
        *,
        name: str | None = None,
        description: str | None = None,
        **options: Any,
    ) -> FunctionTool:
        """Build a tool from a plain function, deriving the schema from its signature."""
        tool = Tool.from_callable(
            func,
            name=name or getattr(func, "__name__", None),
            description=description,
            context=_takes_context(func),
        )
        return cls.from_republic(tool, **options)

    def enabled(self, context: Any = None) -> bool:
        if self.enabled_when is None:
            return True
        return bool(self.enabled_when(context))

    def invoke(self, arguments: Mapping[str, Any], context: Any = None) -> Any:
        if self.context:
            result = self.run(context=context, **arguments)
        else:
            result = self.run(**arguments)
        if inspect.isawaitable(result):
            result = resolve_awaitable(result)
        return result


class ToolRegistry:
    """Name-keyed table of tools, built when an agent is constructed."""

    def __init__(self, tools: Iterable[FunctionTool] = ()) -> None:
        self._tools: dict[str, FunctionTool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: FunctionTool) -> FunctionTool:
        if tool.name in self._tools:
            raise ConfigurationError(f"Duplicate tool name: {tool.name}")
        self._tools[tool.name] = tool
        return tool

    def tool(
        self, name: str | None = None, *, description: str | None = None, **options: Any
    ) -> Callable[[Callable[..., Any]], FunctionTool]:
        """Decorator registering a plain function as a tool."""

        def _decorator(func: Callable[..., Any]) -> FunctionTool:
            return self.register(FunctionTool.from_function(func, name=name, description=description, **options))

        return _decorator

    def has(self, name: str) -> bool:
        return name in self._tools

    def get(self, name: str) -> FunctionTool | None:
        return self._tools.get(name)

    def resolve(self, name: str) -> FunctionTool:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def names(self) -> list[str]:
        return list(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self) -> Iterator[FunctionTool]:
        return iter(self._tools.values())

    def enabled_tools(self, context: Any = None) -> list[FunctionTool]:
        return [tool for tool in self._tools.values() if tool.enabled(context)]

    def schemas(self, context: Any = None) -> list[dict[str, Any]]:
        return [tool.schema() for tool in self.enabled_tools(context)]

    def _log_tool_call(self, name: str, kwargs: Mapping[str, Any]) -> None:
        params: list[str] = []
        for key, value in kwargs.items():
            try:
                rendered = json.dumps(value, ensure_ascii=False)
            except TypeError:
                rendered = repr(value)
            params.append(f"{key}={_shorten_text(rendered)}")
        logger.info("tool.call.start name={} {{ {} }}", name, ", ".join(params))

    def execute(self, name: str, *, kwargs: Mapping[str, Any], context: Any = None) -> Any:
        """Resolve and invoke a tool, logging its duration."""
        tool = self.resolve(name)
        if not tool.enabled(context):
            raise ToolDisabledError(f"Tool {name} is disabled in the current context")

        self._log_tool_call(name, kwargs)
        start = time.monotonic()
        try:
            return tool.invoke(kwargs, context)
        except Exception:
            logger.exception("tool.call.error name={}", name)
            raise
        finally:
            duration = time.monotonic() - start
            logger.info("tool.call.end name={} duration={:.3f}ms", name, duration * 1000)
