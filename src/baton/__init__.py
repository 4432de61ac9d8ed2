"""Baton: a turn-based agent execution runtime."""

from .agent import RUN_LLM_AGAIN, STOP_ON_FIRST_TOOL, Agent, StopAtTools, ToolsToFinalOutputResult
from .config import Settings, load_settings
from .continuation import ContinuationController
from .errors import (
    AuthenticationError,
    BatonError,
    CircularHandoffError,
    ConfigurationError,
    HandoffError,
    InputGuardrailTripwireTriggered,
    InvalidRequestError,
    MaxTurnsError,
    ModelBehaviorError,
    OutputGuardrailTripwireTriggered,
    ProviderError,
    RateLimitError,
    RetryableProviderError,
    ServerError,
    ToolError,
)
from .guardrails import (
    GuardrailResult,
    InputGuardrail,
    OutputGuardrail,
    blocked_terms_guardrail,
    input_guardrail,
    max_length_guardrail,
    output_guardrail,
)
from .handoffs import (
    ContextAndInput,
    ContextOnly,
    Handoff,
    HandoffContext,
    HandoffInputData,
    add_completion_tool,
    add_handoff_tools,
)
from .hooks import HookRuntime, RunHooks, hookimpl
from .items import ComputerAction, FunctionCall, FunctionCallOutput, HandoffCall, Message, ShellCall
from .providers import CanonicalResponse, RepublicProvider
from .retry import RetryPolicy, with_retry
from .runner import RunConfig, RunContext, Runner, RunResult
from .session import FileSessionStore, InMemorySessionStore, Session
from .streaming import RunResultStreaming, StreamEvent
from .tools import FunctionTool, LocalShellExecutor, ToolRegistry
from .usage import Usage

__all__ = [
    "RUN_LLM_AGAIN",
    "STOP_ON_FIRST_TOOL",
    "Agent",
    "AuthenticationError",
    "BatonError",
    "CanonicalResponse",
    "CircularHandoffError",
    "ComputerAction",
    "ConfigurationError",
    "ContextAndInput",
    "ContextOnly",
    "ContinuationController",
    "FileSessionStore",
    "FunctionCall",
    "FunctionCallOutput",
    "FunctionTool",
    "GuardrailResult",
    "Handoff",
    "HandoffCall",
    "HandoffContext",
    "HandoffError",
    "HandoffInputData",
    "HookRuntime",
    "InMemorySessionStore",
    "InputGuardrail",
    "InputGuardrailTripwireTriggered",
    "InvalidRequestError",
    "LocalShellExecutor",
    "MaxTurnsError",
    "Message",
    "ModelBehaviorError",
    "OutputGuardrail",
    "OutputGuardrailTripwireTriggered",
    "ProviderError",
    "RateLimitError",
    "RepublicProvider",
    "RetryPolicy",
    "RetryableProviderError",
    "RunConfig",
    "RunContext",
    "RunHooks",
    "RunResult",
    "RunResultStreaming",
    "Runner",
    "ServerError",
    "Session",
    "Settings",
    "ShellCall",
    "StopAtTools",
    "StreamEvent",
    "ToolError",
    "ToolRegistry",
    "ToolsToFinalOutputResult",
    "Usage",
    "add_completion_tool",
    "add_handoff_tools",
    "blocked_terms_guardrail",
    "hookimpl",
    "input_guardrail",
    "load_settings",
    "max_length_guardrail",
    "output_guardrail",
    "with_retry",
]
