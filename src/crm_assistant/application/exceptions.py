"""Application-level exceptions.

These are business-logic errors, not HTTP errors. The presentation layer
(FastAPI exception handlers in ``main``) translates them into HTTP responses.
"""

from __future__ import annotations


class AssistantError(Exception):
    """Base class for every error raised by the orchestration layer."""


class ValidationError(AssistantError, ValueError):
    """Malformed request; recovered locally by the caller."""


class EmptyMessageError(ValidationError):
    """Raised when the caller sends a blank chat message."""


class UnknownModelError(AssistantError, LookupError):
    """No provider (enabled, where it matters) supports the requested model."""

    def __init__(self, model: str) -> None:
        super().__init__(f"No provider found for model: {model}")
        self.model = model


class ProviderError(AssistantError):
    """A single provider call failed."""

    def __init__(self, provider: str, cause: str) -> None:
        super().__init__(f"{provider}: {cause}")
        self.provider = provider
        self.cause = cause


class GenerationTimeoutError(ProviderError):
    """A provider did not produce output within the per-call timeout."""

    def __init__(self, provider: str, timeout_seconds: float) -> None:
        super().__init__(provider, f"Request timeout after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class AllProvidersFailedError(AssistantError):
    """Every candidate model failed; terminal for the logical request."""

    def __init__(self, attempted: list[str], last_error: str | None = None) -> None:
        message = f"All models failed: {', '.join(attempted) or '(none attempted)'}"
        if last_error:
            message += f" (last error: {last_error})"
        super().__init__(message)
        self.attempted = attempted
        self.last_error = last_error


class EmbeddingError(AssistantError):
    """Embedding generation failed; the store/query call is aborted."""


class SummarizationError(AssistantError):
    """Summary generation failed. Absorbed by the summarizer, never surfaced."""


class RateLimitedError(AssistantError):
    """The user is sending messages too quickly. Retryable."""

    def __init__(self, retry_after: float) -> None:
        super().__init__("Please wait a moment before sending another message.")
        self.retry_after = retry_after


class ConversationNotFoundError(AssistantError, LookupError):
    """The conversation does not exist for this owner."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id
