"""Streaming run events and the background stream runner."""

from __future__ import annotations

import queue
import threading
import time
from collections.abc import Callable, Iterator
from typing import TYPE_CHECKING, Any, ClassVar

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from .hooks import RunHooks
from .items import ComputerAction, FunctionCall, ShellCall

if TYPE_CHECKING:
    from .agent import Agent
    from .items import CallItem
    from .runner import RunResult


class StreamEvent(BaseModel):
    """Base class for events published while a streamed run executes."""

    event_type: ClassVar[str] = "stream.event"

    model_config = ConfigDict(frozen=True)

    timestamp: float = Field(default_factory=time.time)

    @property
    def type(self) -> str:
        return self.event_type


class RawContentDeltaEvent(StreamEvent):
    event_type: ClassVar[str] = "raw.content_delta"

    delta: str


class RawToolCallStartEvent(StreamEvent):
    event_type: ClassVar[str] = "raw.tool_call_start"

    call_id: str | None = None
    name: str | None = None


class RawToolCallDeltaEvent(StreamEvent):
    event_type: ClassVar[str] = "raw.tool_call_delta"

    call_id: str | None = None
    delta: str = ""


class RawFinishEvent(StreamEvent):
    event_type: ClassVar[str] = "raw.finish"

    finish_reason: str | None = None


class AgentStartEvent(StreamEvent):
    event_type: ClassVar[str] = "agent.start"

    agent_name: str


class AgentFinishEvent(StreamEvent):
    event_type: ClassVar[str] = "agent.finish"

    agent_name: str
    output: Any = None


class AgentHandoffEvent(StreamEvent):
    event_type: ClassVar[str] = "agent.handoff"

    from_agent: str
    to_agent: str


class MessageStartEvent(StreamEvent):
    event_type: ClassVar[str] = "message.start"

    agent_name: str
    turn: int


class MessageCompleteEvent(StreamEvent):
    event_type: ClassVar[str] = "message.complete"

    agent_name: str
    content: str = ""
    finish_reason: str | None = None
    truncated: bool = False


class ToolExecutionStartEvent(StreamEvent):
    event_type: ClassVar[str] = "tool.start"

    call_id: str
    tool_name: str
    arguments: str = ""


class ToolExecutionCompleteEvent(StreamEvent):
    event_type: ClassVar[str] = "tool.complete"

    call_id: str
    tool_name: str
    result: Any = None


class ToolExecutionErrorEvent(StreamEvent):
    event_type: ClassVar[str] = "tool.error"

    call_id: str
    tool_name: str
    error: str


class GuardrailStartEvent(StreamEvent):
    event_type: ClassVar[str] = "guardrail.start"

    guardrail_name: str
    kind: str


class GuardrailCompleteEvent(StreamEvent):
    event_type: ClassVar[str] = "guardrail.complete"

    guardrail_name: str
    kind: str
    tripwire_triggered: bool
    message: str = ""


class StreamErrorEvent(StreamEvent):
    event_type: ClassVar[str] = "stream.error"

    error: str
    error_type: str


EventEmitter = Callable[[StreamEvent], None]


def _call_name(call: CallItem) -> str:
    if isinstance(call, FunctionCall):
        return call.name
    if isinstance(call, ComputerAction):
        return "computer"
    if isinstance(call, ShellCall):
        return "shell"
    return call.tool_name


def _call_arguments(call: CallItem) -> str:
    return call.arguments if isinstance(call, FunctionCall) else ""


class EventHooks(RunHooks):
    """Publish tool lifecycle callbacks as stream events."""

    def __init__(self, emit: EventEmitter) -> None:
        self._emit = emit

    def on_tool_start(self, context: Any, agent: Agent | None, call: CallItem) -> None:
        self._emit(
            ToolExecutionStartEvent(call_id=call.call_id, tool_name=_call_name(call), arguments=_call_arguments(call))
        )

    def on_tool_end(self, context: Any, agent: Agent | None, call: CallItem, result: Any) -> None:
        self._emit(ToolExecutionCompleteEvent(call_id=call.call_id, tool_name=_call_name(call), result=result))

    def on_tool_error(self, context: Any, agent: Agent | None, call: CallItem, error: Exception) -> None:
        self._emit(ToolExecutionErrorEvent(call_id=call.call_id, tool_name=_call_name(call), error=str(error)))


_DONE = object()


class RunResultStreaming:
    """Handle on a run executing on a background thread.

    The worker publishes events onto a FIFO queue; ``next_event`` blocks until
    an event arrives and returns ``None`` once the worker has finished and the
    queue is drained. An exception raised by the worker is re-raised from the
    draining call and from ``wait_for_completion``.
    """

    def __init__(self, worker: Callable[[EventEmitter], RunResult]) -> None:
        self._worker = worker
        self._queue: queue.Queue[Any] = queue.Queue()
        self._done = threading.Event()
        self._drained = False
        self._result: RunResult | None = None
        self._error: Exception | None = None
        self._thread = threading.Thread(target=self._run, name="baton-stream", daemon=True)

    def start(self) -> RunResultStreaming:
        if not self._thread.is_alive() and not self._done.is_set():
            self._thread.start()
        return self

    def emit(self, event: StreamEvent) -> None:
        self._queue.put_nowait(event)

    def _run(self) -> None:
        try:
            self._result = self._worker(self.emit)
        except Exception as exc:
            logger.opt(exception=exc).error("stream.worker.error error={}", exc)
            self._error = exc
            self.emit(StreamErrorEvent(error=str(exc), error_type=type(exc).__name__))
        finally:
            self._done.set()
            self._queue.put_nowait(_DONE)

    @property
    def is_complete(self) -> bool:
        return self._done.is_set()

    @property
    def error(self) -> Exception | None:
        return self._error

    @property
    def final_result(self) -> RunResult | None:
        return self._result

    def next_event(self) -> StreamEvent | None:
        if not self._drained:
            item = self._queue.get()
            if item is not _DONE:
                return item
            self._drained = True
        if self._error is not None:
            raise self._error
        return None

    def stream_events(self) -> Iterator[StreamEvent]:
        while True:
            event = self.next_event()
            if event is None:
                return
            yield event

    def __iter__(self) -> Iterator[StreamEvent]:
        return self.stream_events()

    def wait_for_completion(self, timeout: float | None = None) -> RunResult:
        self._thread.join(timeout)
        if not self._done.is_set():
            raise TimeoutError(f"Streamed run did not finish within {timeout}s")
        if self._error is not None:
            raise self._error
        assert self._result is not None
        return self._result
