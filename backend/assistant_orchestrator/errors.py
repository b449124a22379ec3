"""
Error taxonomy for the orchestrator.

Provider-level errors are contained by the resilience wrapper and turned into
degraded content. Only request validation and total store unavailability
reach the user as errors.
"""

from typing import Optional

from .models import ErrorInfo


class OrchestratorError(Exception):
    """Base class. Carries a human-readable cause and an optional retry hint."""

    kind = "orchestrator_error"
    default_retry_hint: Optional[str] = None

    def __init__(self, message: str, retry_hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.retry_hint = retry_hint or self.default_retry_hint

    def to_info(self) -> ErrorInfo:
        return ErrorInfo(kind=self.kind, message=self.message, retry_hint=self.retry_hint)


class ValidationError(OrchestratorError):
    """Malformed or empty request. No provider is invoked."""
    kind = "validation_error"
    default_retry_hint = "Please clarify your request and send it again."


class RoutingAmbiguous(OrchestratorError):
    """No domain scored high enough to act on."""
    kind = "routing_ambiguous"
    default_retry_hint = (
        "Tell me whether you want an explanation, code, debugging help, docs, "
        "deployment steps, workflow tips or a technology recommendation."
    )


class ProviderError(OrchestratorError):
    kind = "provider_error"


class ProviderTimeout(ProviderError):
    kind = "provider_timeout"
    default_retry_hint = "Ask again in a moment for the detailed answer."


class ProviderUnavailable(ProviderError):
    """Raised when trying to call through an OPEN circuit breaker."""
    kind = "provider_unavailable"
    default_retry_hint = "This capability is recovering; try again shortly."


class ProviderTransientError(ProviderError):
    """Retryable failure, e.g. resource exhaustion or a dropped connection."""
    kind = "provider_transient_error"
    default_retry_hint = "Try again shortly."


class ProviderPermanentError(ProviderError):
    """The provider rejected the input. Retrying would only repeat the rejection."""
    kind = "provider_permanent_error"
    default_retry_hint = "Rephrase the request or attach the relevant code or error text."


class ContextConflict(OrchestratorError):
    """Stored version changed since load."""
    kind = "context_conflict"

    def __init__(self, key: str, expected: int, actual: Optional[int] = None):
        super().__init__(
            f"Version conflict for {key}: expected {expected}, found {actual}"
        )
        self.key = key
        self.expected = expected
        self.actual = actual


class ContextUnavailable(OrchestratorError):
    """Session store is down."""
    kind = "context_unavailable"
    default_retry_hint = (
        "Your conversation context could not be saved; repeat any details "
        "you want me to remember in your next message."
    )
