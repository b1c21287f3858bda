"""Densify exception hierarchy.

Provides a structured exception tree so catch blocks can be specific
and callers can distinguish between different failure modes.
"""

from __future__ import annotations


class DensifyError(Exception):
    """Base for all Densify exceptions."""


class EngineError(DensifyError):
    """Planning and orchestration failures."""


class InputTooLongError(EngineError):
    """Raised before any backend call when a capture exceeds the input ceiling."""

    def __init__(self, estimated_tokens: int, limit: int):
        super().__init__(
            f"Capture is too long to densify (about {estimated_tokens} tokens; "
            f"limit is {limit}). Try a shorter selection or fewer pages."
        )
        self.estimated_tokens = estimated_tokens
        self.limit = limit


class EmptyInputError(EngineError):
    """The capture holds no text once normalized."""

    def __init__(self) -> None:
        super().__init__("Capture is empty; nothing to densify.")


class WindowOverflowError(EngineError):
    """A backend call exceeded the backend's context window.

    Internal to the orchestrator; it drives adaptive chunking and is only
    reported to callers (as ``ProviderRequestFailed``) once every budget
    level has been exhausted.
    """

    def __init__(self, backend: str, details: str):
        super().__init__(details)
        self.backend = backend
        self.details = details


class ProviderError(DensifyError):
    """Backend invocation failures."""

    retryable = False


class ProviderNotConfiguredError(ProviderError):
    """No backend is configured under the requested name."""


class ProviderLaunchFailed(ProviderError):
    """The backend's CLI binary could not be started."""


class ProviderRequestTimedOut(ProviderError):
    """A backend call hit its hard timeout."""

    retryable = True

    def __init__(self, backend: str, timeout_seconds: float):
        super().__init__(
            f"{backend} request timed out after {timeout_seconds:g} seconds."
        )
        self.backend = backend
        self.timeout_seconds = timeout_seconds


class ProviderRequestFailed(ProviderError):
    """A backend call failed; ``details`` is passed through verbatim."""

    def __init__(self, details: str):
        super().__init__(details)
        self.details = details


class ProviderRequestTransientFailure(ProviderRequestFailed):
    """Rate limits, overloads and connection drops; worth retrying later."""

    retryable = True


class ProviderRequestRejected(ProviderRequestFailed):
    """The backend refused the request (credentials, bad arguments)."""


class ProviderModelUnavailable(ProviderRequestFailed):
    """The requested model does not exist or is not enabled for the account."""

    def __init__(
        self,
        backend: str,
        model: str,
        details: str = "",
        suggestions: list[str] | None = None,
    ):
        message = details or f"Model '{model}' is not available on {backend}."
        if suggestions:
            message = f"{message} Try: {', '.join(suggestions)}."
        super().__init__(message)
        self.backend = backend
        self.model = model
        self.suggestions = list(suggestions or [])


def is_retryable_provider_failure(error: BaseException) -> bool:
    """Return True when the caller layer should retry a densification run."""
    return isinstance(error, ProviderError) and bool(error.retryable)
