"""
Provider-specific exceptions and error classification.

This module defines the error taxonomy used by the bar providers and the
fallback chain: caller errors that must never be retried, transient provider
failures that drive the retry/backoff state machine, and the terminal errors
raised when the chain gives up.
"""

from __future__ import annotations

import asyncio

import aiohttp

__all__ = [
    "InputError",
    "ProviderError",
    "TransientProviderError",
    "ExhaustionError",
    "DeadlineExceededError",
    "is_retryable",
    "RETRYABLE_KEYWORDS",
]

RETRYABLE_KEYWORDS = (
    "network",
    "timeout",
    "timed out",
    "connection",
    "reset",
    "unreachable",
    "temporarily unavailable",
)


class InputError(ValueError):
    """Malformed request: bad symbol, unsupported resolution, inverted range.

    Surfaced immediately; never retried and never routed to a fallback
    provider.
    """


class ProviderError(Exception):
    """Base exception for bar provider failures.

    Raised when a provider request fails with an HTTP status, a transport
    problem, or an unusable payload.
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        provider: str | None = None,
    ) -> None:
        """Initialize provider error.

        Args:
            message: Error description.
            status: HTTP status code if the failure came from a response.
            provider: Name of the provider that failed.
        """
        super().__init__(message)
        self.message = message
        self.status = status
        self.provider = provider

    @property
    def retryable(self) -> bool:
        """True when the failure is worth retrying on another provider."""
        if self.status is not None:
            return self.status == 429 or self.status >= 500
        lowered = self.message.lower()
        return any(keyword in lowered for keyword in RETRYABLE_KEYWORDS)

    def __str__(self) -> str:
        """String representation of the error."""
        prefix = self.provider or "provider"
        if self.status is not None:
            return f"{prefix} error (HTTP {self.status}): {self.message}"
        return f"{prefix} error: {self.message}"


class TransientProviderError(ProviderError):
    """Retryable failure: HTTP 429/5xx, network error or timeout."""

    @property
    def retryable(self) -> bool:
        return True


class DeadlineExceededError(ProviderError):
    """The caller-supplied overall deadline would be exceeded."""

    @property
    def retryable(self) -> bool:
        return False


class ExhaustionError(ProviderError):
    """Both the primary and the fallback provider failed.

    Keeps every underlying failure so operators can tell "primary down" from
    "both down".
    """

    def __init__(
        self,
        primary_error: BaseException,
        secondary_errors: list[BaseException],
    ) -> None:
        self.primary_error = primary_error
        self.secondary_errors = list(secondary_errors)
        last = self.secondary_errors[-1] if self.secondary_errors else None
        message = (
            f"all providers failed; primary: {primary_error}; "
            f"secondary ({len(self.secondary_errors)} attempts): {last}"
        )
        status = getattr(last, "status", None)
        super().__init__(message, status=status, provider="fallback-chain")

    @property
    def retryable(self) -> bool:
        return False


def is_retryable(error: BaseException) -> bool:
    """Classify a provider failure.

    HTTP 429, HTTP >= 500, timeouts and transport-level errors are
    retryable; everything else (client errors such as an unknown symbol)
    is not.
    """
    if isinstance(error, ProviderError):
        return error.retryable
    if isinstance(error, asyncio.TimeoutError | TimeoutError):
        return True
    if isinstance(error, aiohttp.ClientResponseError):
        return error.status == 429 or error.status >= 500
    if isinstance(error, aiohttp.ClientError | ConnectionError):
        return True
    status = getattr(error, "status", None)
    if isinstance(status, int):
        return status == 429 or status >= 500
    lowered = str(error).lower()
    return any(keyword in lowered for keyword in RETRYABLE_KEYWORDS)
