"""Typed error taxonomy for the gateway.

Every failure that leaves this layer is a ``GatewayError`` subclass carrying
an ``ErrorClass`` so business handlers can tell "retry later" apart from
"give up":

- transient: network errors, 5xx, 429 (retried by RetryPolicy)
- terminal: 4xx other than 429, malformed requests, unexpected exceptions
- rate_limit_timeout: we throttled ourselves past the caller's max wait
- verification: inbound webhook signature or payload rejected
- storage: durable store unavailable (degraded, non-fatal)
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any

import httpx

__all__ = [
    "ConfigurationError",
    "ErrorClass",
    "GatewayError",
    "ProviderError",
    "RateLimitTimeout",
    "RetryExhausted",
    "StorageError",
    "TerminalError",
    "TransientError",
    "WebhookPayloadError",
    "WebhookPayloadTooLarge",
    "WebhookVerificationError",
    "classify",
    "error_code_for_status",
]


class ErrorClass(str, Enum):
    """Classification of failures surfaced by the gateway."""

    TRANSIENT = "transient"
    TERMINAL = "terminal"
    RATE_LIMIT_TIMEOUT = "rate_limit_timeout"
    VERIFICATION = "verification"
    STORAGE = "storage"


# HTTP status -> provider error code
_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    402: "PAYMENT_REQUIRED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMIT_EXCEEDED",
    500: "INTERNAL_SERVER_ERROR",
    502: "SERVICE_UNAVAILABLE",
    503: "SERVICE_UNAVAILABLE",
    504: "SERVICE_UNAVAILABLE",
}


def error_code_for_status(status: int) -> str:
    """Map an HTTP status to a stable error code."""
    return _STATUS_CODES.get(status, f"HTTP_{status}")


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    error_class: ErrorClass = ErrorClass.TERMINAL

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.attempts: int = 0

    @property
    def retryable(self) -> bool:
        """Whether a later retry by the caller may succeed."""
        return self.error_class in (ErrorClass.TRANSIENT, ErrorClass.RATE_LIMIT_TIMEOUT)


class ConfigurationError(GatewayError):
    """Raised at startup when settings are missing or malformed."""


class TransientError(GatewayError):
    """A failure expected to resolve on retry (network error, timeout)."""

    error_class = ErrorClass.TRANSIENT


class ProviderError(GatewayError):
    """The provider answered with an HTTP error status.

    The provider's own message and body are preserved in ``message`` and
    ``details``. 5xx and 429 are transient; every other status is terminal.
    """

    def __init__(
        self,
        message: str,
        *,
        status: int,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        retry_after: str | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.status = status
        self.code = code or error_code_for_status(status)
        self.retry_after = retry_after

    @property
    def error_class(self) -> ErrorClass:  # type: ignore[override]
        if self.status == 429 or self.status >= 500:
            return ErrorClass.TRANSIENT
        return ErrorClass.TERMINAL

    def __str__(self) -> str:
        return f"{self.code} ({self.status}): {self.message}"


class TerminalError(GatewayError):
    """A failure that must not be retried (unexpected exception, bad request)."""


class RetryExhausted(GatewayError):
    """All retry attempts failed with transient errors."""

    error_class = ErrorClass.TRANSIENT

    def __init__(self, last_error: BaseException, attempts: int) -> None:
        super().__init__(
            f"Retry exhausted after {attempts} attempts: {last_error}",
            details={"last_error": type(last_error).__name__},
        )
        self.last_error = last_error
        self.attempts = attempts


class RateLimitTimeout(GatewayError):
    """Waited longer than the caller's max wait for a rate-limit token."""

    error_class = ErrorClass.RATE_LIMIT_TIMEOUT

    def __init__(self, provider: str, max_wait: float) -> None:
        super().__init__(
            f"Rate limit wait for {provider} exceeded {max_wait:.2f}s",
            details={"provider": provider, "max_wait": max_wait},
        )
        self.provider = provider
        self.max_wait = max_wait


class StorageError(GatewayError):
    """The durable store is unavailable."""

    error_class = ErrorClass.STORAGE


class WebhookVerificationError(GatewayError):
    """Inbound webhook failed signature verification."""

    error_class = ErrorClass.VERIFICATION


class WebhookPayloadError(GatewayError):
    """Inbound webhook body is not a valid event payload."""

    error_class = ErrorClass.VERIFICATION


class WebhookPayloadTooLarge(WebhookPayloadError):
    """Inbound webhook body exceeds the configured size limit."""

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(
            f"Webhook body of {size} bytes exceeds limit of {limit}",
            details={"size": size, "limit": limit},
        )
        self.size = size
        self.limit = limit


def classify(exc: BaseException) -> ErrorClass:
    """Classify any exception into an ``ErrorClass``.

    Network-level failures from httpx or the OS are transient. Gateway
    errors carry their own class. Anything else is terminal.
    """
    if isinstance(exc, GatewayError):
        return exc.error_class
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError, ConnectionError)):
        return ErrorClass.TRANSIENT
    if isinstance(exc, OSError):
        return ErrorClass.TRANSIENT
    return ErrorClass.TERMINAL
