"""
Error taxonomy for the verification core.

Provider errors are absorbed by the evaluators into degraded check results;
only InvalidRequestError and InternalFault reach the caller.
"""

from __future__ import annotations


class VerificationError(Exception):
    """Base class for every error raised by the verification core."""

    retryable: bool = False


class InvalidRequestError(VerificationError):
    """Malformed or incomplete verification request. Callers must not retry."""

    def __init__(self, message: str, *, errors: list[dict] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class ProviderError(VerificationError):
    """Failure reported by (or while talking to) the external analysis provider."""


class ProviderTransientError(ProviderError):
    retryable = True


class RateLimited(ProviderTransientError):
    def __init__(self, message: str = "provider rate limit exceeded", *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ProviderTimeout(ProviderTransientError):
    pass


class ProviderPermanentError(ProviderError):
    """The provider rejected the input; retrying will not help."""


class AdmissionClosed(ProviderError):
    """The admission gate was closed at shutdown. Not retried in-process; the caller may retry elsewhere."""

    retryable = True


class InternalFault(VerificationError):
    """Unexpected failure inside the core. Logged and surfaced, never retried here."""

    retryable = True
