"""Application-level exception types for Baton."""

from __future__ import annotations

from typing import Any


class BatonError(Exception):
    """Base exception for Baton."""


class ConfigurationError(BatonError):
    """Raised for invalid settings or malformed runtime configuration."""


class ModelNotConfiguredError(ConfigurationError):
    """Raised when no model is configured for a provider."""


class ToolError(BatonError):
    """Raised when a tool cannot be resolved or invoked.

    The tool executor recovers from these locally; they never escape a batch.
    """


class ToolNotFoundError(ToolError):
    """Raised when a tool name is not present in the registry."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Tool not found: {name}")
        self.name = name


class ToolArgumentsError(ToolError):
    """Raised when tool call arguments are not valid JSON objects."""


class ToolDisabledError(ToolError):
    """Raised when a tool is registered but disabled for the current context."""


class HandoffError(BatonError):
    """Raised when a handoff cannot be performed."""


class HandoffTargetMissingError(HandoffError):
    """Raised when a handoff is executed without a pending target."""


class CircularHandoffError(HandoffError):
    """Raised when a handoff target already appears in the handoff chain."""

    def __init__(self, message: str, agent_name: str) -> None:
        super().__init__(message)
        self.agent_name = agent_name


class MaxTurnsError(BatonError):
    """Raised when a run exhausts its turn budget."""

    def __init__(self, max_turns: int) -> None:
        super().__init__(f"Runner: max turns ({max_turns}) exceeded without a final output")
        self.max_turns = max_turns


class ModelBehaviorError(BatonError):
    """Raised when a model response cannot be interpreted."""


class GuardrailTripwireTriggered(BatonError):
    """Base exception for guardrail tripwires."""

    kind = "Guardrail"

    def __init__(self, guardrail_name: str, message: str = "", output_info: Any = None) -> None:
        text = f"{self.kind} guardrail '{guardrail_name}' triggered"
        if message:
            text = f"{text}: {message}"
        super().__init__(text)
        self.guardrail_name = guardrail_name
        self.guardrail_message = message
        self.output_info = output_info


class InputGuardrailTripwireTriggered(GuardrailTripwireTriggered):
    """Raised before any provider call when an input guardrail trips."""

    kind = "Input"


class OutputGuardrailTripwireTriggered(GuardrailTripwireTriggered):
    """Raised after final output computation when an output guardrail trips."""

    kind = "Output"


class ProviderError(BatonError):
    """Base exception for model provider failures."""

    retryable = False

    def __init__(self, message: str, *, status_code: int | None = None, provider: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.provider = provider


class AuthenticationError(ProviderError):
    """Raised when the provider rejects credentials."""


class InvalidRequestError(ProviderError):
    """Raised when the provider rejects the request payload."""


class ProviderFinishError(ProviderError):
    """Raised when the provider reports an error finish reason."""


class RetryableProviderError(ProviderError):
    """Provider failure that an external retry policy may re-attempt."""

    retryable = True


class RateLimitError(RetryableProviderError):
    """Raised when the provider is rate limiting requests."""


class ServerError(RetryableProviderError):
    """Raised for provider-side 5xx failures and timeouts."""
