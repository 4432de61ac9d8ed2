"""Tool call execution.

A batch of calls never raises: every call yields exactly one
``FunctionCallOutput`` correlated by call id, in call order. Failures are
kept as ``ToolFailure`` values until they are rendered into items.
"""

from __future__ import annotations

import json
import re
import shutil
import subprocess
from collections.abc import Callable, Mapping, MutableSequence, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, Union

from loguru import logger
from pydantic import BaseModel

from ..errors import ToolArgumentsError
from ..hooks import HookRuntime, RunHooks
from ..items import ComputerAction, ConversationItem, FunctionCall, FunctionCallOutput, Message, ShellCall
from .registry import ToolRegistry

if TYPE_CHECKING:
    from ..agent import Agent

TOOL_FAILURE_PREFIX = "Tool execution failed: "
DEFAULT_SHELL_TIMEOUT_MS = 60_000

ToolInvoker = Callable[[str, Mapping[str, Any]], Any]
ToolWrapper = Callable[[str, Mapping[str, Any], ToolInvoker], Any]

_TERMINATION_RE = re.compile(r"\b(?:stop|terminate|done|finished)\b", re.IGNORECASE)
_NEGATION_RE = re.compile(r"\b(?:not|never|don['’]t|won['’]t|can['’]t|cannot)\s+$", re.IGNORECASE)


@dataclass(frozen=True)
class ToolSuccess:
    call: FunctionCall | ComputerAction | ShellCall
    result: Any
    output: str

    def to_item(self) -> FunctionCallOutput:
        return FunctionCallOutput(call_id=self.call.call_id, output=self.output)


@dataclass(frozen=True)
class ToolFailure:
    call: FunctionCall | ComputerAction | ShellCall
    message: str
    error: Exception | None = None

    @property
    def output(self) -> str:
        return f"{TOOL_FAILURE_PREFIX}{self.message}"

    def to_item(self) -> FunctionCallOutput:
        return FunctionCallOutput(call_id=self.call.call_id, output=self.output)


ToolOutcome = Union[ToolSuccess, ToolFailure]


def render_output(result: Any) -> str:
    """Render a tool result as the text fed back to the model."""
    if result is None:
        return ""
    if isinstance(result, str):
        return result
    if isinstance(result, BaseModel):
        return result.model_dump_json()
    try:
        return json.dumps(result, ensure_ascii=False)
    except TypeError:
        return str(result)


def parse_arguments(name: str, raw: str | Mapping[str, Any] | None) -> dict[str, Any]:
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ToolArgumentsError(f"invalid JSON arguments for {name}: {exc.msg} at position {exc.pos}") from exc
    if not isinstance(parsed, dict):
        raise ToolArgumentsError(f"invalid JSON arguments for {name}: expected an object")
    return parsed


def should_continue(message: Message | Mapping[str, Any] | str | None) -> bool:
    """Decide whether an assistant message should prompt another turn.

    Tool calls always continue. Otherwise empty content stops, and a whole-word
    termination marker (stop, terminate, done, finished) stops unless it is
    directly negated, as in "let's not stop".
    """
    if message is None:
        return False
    if isinstance(message, Mapping):
        if message.get("tool_calls"):
            return True
        content = message.get("content")
    elif isinstance(message, Message):
        content = message.content
    else:
        content = message
    if not isinstance(content, str) or not content.strip():
        return False
    for match in _TERMINATION_RE.finditer(content):
        if not _NEGATION_RE.search(content[: match.start()]):
            return False
    return True


class ComputerExecutor(Protocol):
    def execute(self, action: Mapping[str, Any], context: Any) -> Any: ...


class ShellExecutor(Protocol):
    def run(self, call: ShellCall, context: Any) -> str: ...


class LocalShellExecutor:
    """Run shell calls on the local machine through bash."""

    def __init__(self, *, cwd: str | None = None, default_timeout_ms: int = DEFAULT_SHELL_TIMEOUT_MS) -> None:
        self._cwd = cwd
        self._default_timeout_ms = default_timeout_ms

    def run(self, call: ShellCall, context: Any) -> str:
        command = call.command if isinstance(call.command, str) else " ".join(call.command)
        bash_executable = shutil.which("bash") or "bash"
        timeout_ms = call.timeout_ms or self._default_timeout_ms
        try:
            # The model asked for this command explicitly through a shell call.
            result = subprocess.run(  # noqa: S603
                [bash_executable, "-lc", command],
                cwd=call.working_directory or self._cwd,
                capture_output=True,
                text=True,
                timeout=timeout_ms / 1000,
            )
        except subprocess.TimeoutExpired:
            return f"error: timeout after {timeout_ms}ms"
        except (OSError, subprocess.SubprocessError) as exc:
            return f"error: {exc!s}"

        output = ((result.stdout or "") + (result.stderr or "")).strip()
        if result.returncode != 0:
            return f"error: exit={result.returncode}\n{output or '(empty)'}"
        return output or "(empty)"


class ToolExecutor:
    """Resolve and invoke the calls of one turn against a tool registry."""

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        hooks: HookRuntime | RunHooks | None = None,
        agent: Agent | None = None,
        computer: ComputerExecutor | None = None,
        shell: ShellExecutor | None = None,
    ) -> None:
        self._registry = registry
        self._hooks = HookRuntime.coerce(hooks)
        self._agent = agent
        self._computer = computer
        self._shell = shell

    def run_calls(
        self,
        calls: Sequence[FunctionCall],
        context: Any = None,
        wrapper: ToolWrapper | None = None,
    ) -> list[ToolOutcome]:
        return [self._run_one(call, context, wrapper) for call in calls]

    def execute_tool_calls(
        self,
        calls: Sequence[FunctionCall],
        conversation: MutableSequence[ConversationItem],
        context: Any = None,
        wrapper: ToolWrapper | None = None,
    ) -> bool:
        """Run every call and append one output item per call to the conversation.

        Returns whether the model should be asked for another turn.
        """
        outcomes = self.run_calls(calls, context, wrapper)
        conversation.extend(outcome.to_item() for outcome in outcomes)
        return bool(outcomes)

    def _invoke(self, name: str, arguments: Mapping[str, Any], context: Any) -> Any:
        return self._registry.execute(name, kwargs=arguments, context=context)

    def _run_one(self, call: FunctionCall, context: Any, wrapper: ToolWrapper | None) -> ToolOutcome:
        self._hooks.on_tool_start(context, self._agent, call)
        try:
            arguments = parse_arguments(call.name, call.arguments)
        except ToolArgumentsError as exc:
            logger.warning("tool.arguments.invalid name={} call_id={} error={}", call.name, call.call_id, exc)
            return self._failed(call, context, exc)

        def _proceed(name: str, args: Mapping[str, Any]) -> Any:
            return self._invoke(name, args, context)

        try:
            if wrapper is not None:
                result = wrapper(call.name, arguments, _proceed)
            else:
                result = _proceed(call.name, arguments)
        except Exception as exc:
            # Tool bodies may raise anything; the model sees the failure as tool output.
            return self._failed(call, context, exc)

        self._hooks.on_tool_end(context, self._agent, call, result)
        return ToolSuccess(call=call, result=result, output=render_output(result))

    def _failed(self, call: FunctionCall | ComputerAction | ShellCall, context: Any, exc: Exception) -> ToolFailure:
        self._hooks.on_tool_error(context, self._agent, call, exc)
        return ToolFailure(call=call, message=str(exc) or type(exc).__name__, error=exc)

    def execute_actions(
        self,
        actions: Sequence[ComputerAction | ShellCall],
        conversation: MutableSequence[ConversationItem],
        context: Any = None,
    ) -> bool:
        """Run computer and shell actions sequentially, appending one output per action."""
        outcomes = [self._run_action(action, context) for action in actions]
        conversation.extend(outcome.to_item() for outcome in outcomes)
        return bool(outcomes)

    def _run_action(self, action: ComputerAction | ShellCall, context: Any) -> ToolOutcome:
        self._hooks.on_tool_start(context, self._agent, action)
        try:
            if isinstance(action, ComputerAction):
                if self._computer is None:
                    raise RuntimeError("no computer executor configured")
                result = self._computer.execute(action.action, context)
            else:
                if self._shell is None:
                    raise RuntimeError("no shell executor configured")
                result = self._shell.run(action, context)
        except Exception as exc:
            logger.warning("tool.action.error type={} call_id={} error={}", action.type, action.call_id, exc)
            return self._failed(action, context, exc)
        self._hooks.on_tool_end(context, self._agent, action, result)
        return ToolSuccess(call=action, result=result, output=render_output(result))
