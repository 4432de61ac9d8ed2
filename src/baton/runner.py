"""Top-level run loop."""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from .agent import Agent
from .config import Settings
from .continuation import DEFAULT_MAX_ATTEMPTS, ContinuationController, MergeStrategy
from .errors import BatonError, InputGuardrailTripwireTriggered, MaxTurnsError, OutputGuardrailTripwireTriggered
from .guardrails import InputGuardrail, OutputGuardrail
from .handoffs import HandoffContext
from .hooks import HookRuntime, RunHooks
from .items import (
    ConversationInput,
    ConversationItem,
    Message,
    last_message_text,
    normalize_input,
    to_provider_messages,
)
from .logging_utils import bind_run_id
from .providers.base import (
    CanonicalResponse,
    ModelRequest,
    ProviderChunk,
    ProviderStrategy,
    StreamingProviderStrategy,
)
from .session import Session, SessionStore
from .step import NextStepFinalOutput, NextStepHandoff, StepProcessor, ToolUseTracker
from .streaming import (
    AgentFinishEvent,
    AgentHandoffEvent,
    AgentStartEvent,
    EventEmitter,
    EventHooks,
    GuardrailCompleteEvent,
    GuardrailStartEvent,
    MessageCompleteEvent,
    MessageStartEvent,
    RawContentDeltaEvent,
    RawFinishEvent,
    RawToolCallDeltaEvent,
    RawToolCallStartEvent,
    RunResultStreaming,
    StreamEvent,
)
from .tools.executor import ComputerExecutor, ShellExecutor, ToolWrapper
from .usage import Usage

StopPredicate = Callable[["RunContext"], bool]


@dataclass(frozen=True)
class RunConfig:
    """Per-run settings layered over the agent's own configuration."""

    max_turns: int | None = None
    model: str | None = None
    model_params: Mapping[str, Any] = field(default_factory=dict)
    continuation_enabled: bool = True
    continuation_max_attempts: int = DEFAULT_MAX_ATTEMPTS
    merge_strategy: MergeStrategy = "concatenate"
    agents: Sequence[Agent] = ()
    tool_wrapper: ToolWrapper | None = None
    computer: ComputerExecutor | None = None
    shell: ShellExecutor | None = None

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> RunConfig:
        values: dict[str, Any] = {
            "max_turns": settings.max_turns,
            "continuation_enabled": settings.continuation_enabled,
            "continuation_max_attempts": settings.continuation_max_attempts,
            "merge_strategy": settings.continuation_merge_strategy,
        }
        values.update(overrides)
        return cls(**values)


@dataclass
class RunContext:
    """Mutable state of one run, handed to tools, hooks and guardrails."""

    context: Any = None
    run_id: str = ""
    usage: Usage = field(default_factory=Usage)
    turn: int = 0
    handoff_context: HandoffContext = field(default_factory=HandoffContext)


@dataclass(frozen=True)
class RunResult:
    input: tuple[ConversationItem, ...]
    new_items: tuple[ConversationItem, ...]
    final_output: Any
    usage: Usage
    last_agent: Agent
    turns: int
    success: bool = True
    stopped: bool = False
    run_id: str = ""

    @property
    def messages(self) -> list[ConversationItem]:
        """Final canonical conversation."""
        return [*self.input, *self.new_items]

    @property
    def last_message(self) -> ConversationItem | None:
        return self.messages[-1] if self.messages else None

    def to_provider_messages(self) -> list[dict[str, Any]]:
        return to_provider_messages(self.messages)


def _noop_emit(event: StreamEvent) -> None:
    return None


class Runner:
    """Drive agents through turns until a final output is produced."""

    def __init__(
        self,
        provider: ProviderStrategy,
        *,
        config: RunConfig | None = None,
        hooks: RunHooks | None = None,
        stop_predicate: StopPredicate | None = None,
        session_store: SessionStore | None = None,
    ) -> None:
        self._provider = provider
        self._config = config or RunConfig()
        self._hooks = hooks
        self._stop_predicate = stop_predicate
        self._session_store = session_store
        self._stream_lock = threading.Lock()
        self._active_stream: RunResultStreaming | None = None

    @property
    def config(self) -> RunConfig:
        return self._config

    def run(
        self,
        agent: Agent,
        input: ConversationInput,
        *,
        context: Any = None,
        session_id: str | None = None,
        handoff_context: HandoffContext | None = None,
    ) -> RunResult:
        """Run to completion on the calling thread.

        Agents returned by ``add_handoff_tools`` carry the context their tools
        record on, and the run adopts it. Pass ``handoff_context`` to share a
        different one; a fresh context is created when neither is available.
        """
        return self._run_loop(agent, input, context, session_id, handoff_context, _noop_emit)

    def run_streamed(
        self,
        agent: Agent,
        input: ConversationInput,
        *,
        context: Any = None,
        session_id: str | None = None,
        handoff_context: HandoffContext | None = None,
    ) -> RunResultStreaming:
        """Start the run on a background thread and return its event stream."""
        with self._stream_lock:
            if self._active_stream is not None and not self._active_stream.is_complete:
                raise BatonError("Runner: a streamed run is already in progress")
            streaming = RunResultStreaming(
                lambda emit: self._run_loop(agent, input, context, session_id, handoff_context, emit),
            )
            self._active_stream = streaming
        return streaming.start()

    def _run_loop(
        self,
        starting_agent: Agent,
        input: ConversationInput,
        context: Any,
        session_id: str | None,
        handoff_context: HandoffContext | None,
        emit: EventEmitter,
    ) -> RunResult:
        run_id = uuid.uuid4().hex[:12]
        with bind_run_id(run_id):
            original_input = normalize_input(input)
            session = self._load_session(session_id)
            history: list[ConversationItem] = [*(session.items() if session else []), *original_input]
            run_context = RunContext(
                context=context,
                run_id=run_id,
                handoff_context=handoff_context or starting_agent.handoff_context or HandoffContext(starting_agent),
            )
            hooks = HookRuntime(self._hooks, EventHooks(emit) if emit is not _noop_emit else None)
            processor = StepProcessor(
                hooks=hooks,
                handoff_context=run_context.handoff_context,
                agents={agent.name: agent for agent in self._config.agents},
                computer=self._config.computer,
                shell=self._config.shell,
            )
            logger.info("runner.start agent={} input_items={}", starting_agent.name, len(original_input))

            try:
                self._run_input_guardrails(starting_agent, original_input, run_context, emit)
                result = self._drive(starting_agent, history, run_context, processor, hooks, emit)
            except BatonError as exc:
                logger.error("runner.failed turn={} error={}", run_context.turn, exc)
                raise

            if session is not None and self._session_store is not None:
                session.add_items([*original_input, *result.new_items])
                self._session_store.store(session)
            logger.info(
                "runner.finish agent={} turns={} total_tokens={}",
                result.last_agent.name,
                result.turns,
                result.usage.total_tokens,
            )
            return result

    def _drive(
        self,
        starting_agent: Agent,
        history: list[ConversationItem],
        run_context: RunContext,
        processor: StepProcessor,
        hooks: HookRuntime,
        emit: EventEmitter,
    ) -> RunResult:
        agent = starting_agent
        tracker = ToolUseTracker()
        generated: list[ConversationItem] = []
        turns = 0
        stopped = False

        self._check_handoff_context(agent, run_context)
        hooks.on_agent_start(run_context, agent)
        emit(AgentStartEvent(agent_name=agent.name))
        while True:
            if turns > 0 and self._should_stop(run_context):
                logger.info("runner.stopped agent={} turn={}", agent.name, turns)
                final_output = last_message_text(generated)
                stopped = True
                break

            turns += 1
            max_turns = self._config.max_turns or agent.max_turns
            if turns > max_turns:
                raise MaxTurnsError(max_turns)
            run_context.turn = turns
            logger.info("runner.turn agent={} turn={}", agent.name, turns)

            response = self._call_model(agent, [*history, *generated], run_context, emit)
            run_context.usage = run_context.usage + response.usage

            step = processor.execute_step(
                agent=agent,
                original_input=history,
                pre_step_items=generated,
                model_response=response,
                tool_use_tracker=tracker,
                context=run_context,
                wrapper=self._config.tool_wrapper,
            )
            history = list(step.original_input)
            generated = step.generated_items
            agent = step.active_agent
            next_step = step.next_step

            if isinstance(next_step, NextStepHandoff):
                target = next_step.target_agent
                logger.info("runner.handoff from={} to={} turn={}", agent.name, target.name, turns)
                emit(AgentHandoffEvent(from_agent=agent.name, to_agent=target.name))
                emit(AgentFinishEvent(agent_name=agent.name))
                agent = target
                self._check_handoff_context(agent, run_context)
                hooks.on_agent_start(run_context, agent)
                emit(AgentStartEvent(agent_name=agent.name))
                continue
            if isinstance(next_step, NextStepFinalOutput):
                final_output = next_step.output
                break

        self._run_output_guardrails(agent, final_output, run_context, emit)
        hooks.on_agent_end(run_context, agent, final_output)
        emit(AgentFinishEvent(agent_name=agent.name, output=final_output))
        return RunResult(
            input=tuple(history),
            new_items=tuple(generated),
            final_output=final_output,
            usage=run_context.usage,
            last_agent=agent,
            turns=turns,
            stopped=stopped,
            run_id=run_context.run_id,
        )

    @staticmethod
    def _check_handoff_context(agent: Agent, run_context: RunContext) -> None:
        bound = agent.handoff_context
        if bound is not None and bound is not run_context.handoff_context:
            logger.warning(
                "runner.handoff_context.mismatch agent={} run_id={} handoff tools record on another context",
                agent.name,
                run_context.run_id,
            )

    def _should_stop(self, run_context: RunContext) -> bool:
        if self._stop_predicate is None:
            return False
        try:
            return bool(self._stop_predicate(run_context))
        except Exception:
            logger.exception("runner.stop_predicate.error turn={}", run_context.turn)
            return False

    def _build_request(self, agent: Agent, conversation: Sequence[ConversationItem], run_context: RunContext) -> ModelRequest:
        messages = to_provider_messages(conversation)
        system_prompt = agent.system_prompt(run_context)
        if system_prompt:
            messages.insert(0, {"role": "system", "content": system_prompt})
        return ModelRequest(
            messages=messages,
            model=self._config.model or agent.model,
            tools=agent.all_tools(run_context),
            response_format=agent.response_format,
            tool_choice=agent.tool_choice,
            model_params={**agent.model_params, **self._config.model_params},
        )

    def _call_model(
        self,
        agent: Agent,
        conversation: Sequence[ConversationItem],
        run_context: RunContext,
        emit: EventEmitter,
    ) -> CanonicalResponse:
        request = self._build_request(agent, conversation, run_context)
        emit(MessageStartEvent(agent_name=agent.name, turn=run_context.turn))

        send = self._send
        if emit is not _noop_emit and isinstance(self._provider, StreamingProviderStrategy):
            send = self._streaming_sender(emit)

        if self._config.continuation_enabled:
            controller = ContinuationController(
                self._provider,
                max_attempts=self._config.continuation_max_attempts,
                merge_strategy=self._config.merge_strategy,
            )
            response = controller.complete_with_continuation(request, send=send)
        else:
            response = send(request)

        emit(
            MessageCompleteEvent(
                agent_name=agent.name,
                content=response.text,
                finish_reason=response.finish_reason,
                truncated=response.truncated,
            )
        )
        return response

    def _send(self, request: ModelRequest) -> CanonicalResponse:
        return self._provider.complete(
            request.messages,
            model=request.model,
            tools=list(request.tools) or None,
            response_format=request.response_format,
            **request.call_kwargs(),
        )

    def _streaming_sender(self, emit: EventEmitter) -> Callable[[ModelRequest], CanonicalResponse]:
        provider = self._provider
        assert isinstance(provider, StreamingProviderStrategy)

        def _on_chunk(chunk: ProviderChunk) -> None:
            if chunk.kind == "content_delta":
                emit(RawContentDeltaEvent(delta=chunk.delta))
            elif chunk.kind == "tool_call_start":
                emit(RawToolCallStartEvent(call_id=chunk.call_id, name=chunk.name))
            elif chunk.kind == "tool_call_delta":
                emit(RawToolCallDeltaEvent(call_id=chunk.call_id, delta=chunk.delta))
            elif chunk.kind == "finish":
                emit(RawFinishEvent(finish_reason=chunk.finish_reason))

        def _send(request: ModelRequest) -> CanonicalResponse:
            return provider.stream_complete(
                request.messages,
                on_chunk=_on_chunk,
                model=request.model,
                tools=list(request.tools) or None,
                response_format=request.response_format,
                **request.call_kwargs(),
            )

        return _send

    def _run_input_guardrails(
        self,
        agent: Agent,
        items: list[ConversationItem],
        run_context: RunContext,
        emit: EventEmitter,
    ) -> None:
        user_input = [item for item in items if isinstance(item, Message) and item.role == "user"] or items
        for guardrail in agent.input_guardrails:
            self._check_guardrail(guardrail, "input", agent, user_input, run_context, emit)

    def _run_output_guardrails(self, agent: Agent, output: Any, run_context: RunContext, emit: EventEmitter) -> None:
        for guardrail in agent.output_guardrails:
            self._check_guardrail(guardrail, "output", agent, output, run_context, emit)

    @staticmethod
    def _check_guardrail(
        guardrail: InputGuardrail | OutputGuardrail,
        kind: str,
        agent: Agent,
        value: Any,
        run_context: RunContext,
        emit: EventEmitter,
    ) -> None:
        name = guardrail.get_name()
        emit(GuardrailStartEvent(guardrail_name=name, kind=kind))
        verdict = guardrail.run(run_context, agent, value)
        emit(
            GuardrailCompleteEvent(
                guardrail_name=name,
                kind=kind,
                tripwire_triggered=verdict.tripwire_triggered,
                message=verdict.message,
            )
        )
        if not verdict.tripwire_triggered:
            return
        logger.warning("guardrail.tripwire kind={} name={} message={}", kind, name, verdict.message)
        error_cls = InputGuardrailTripwireTriggered if kind == "input" else OutputGuardrailTripwireTriggered
        raise error_cls(name, verdict.message, verdict.output_info)

    def _load_session(self, session_id: str | None) -> Session | None:
        if session_id is None or self._session_store is None:
            return None
        session = self._session_store.retrieve(session_id)
        if session is None:
            logger.info("runner.session.new session_id={}", session_id)
            return Session(id=session_id)
        return session
