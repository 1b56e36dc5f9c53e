"""
Error classification and the default retry decision.

Maps HTTP status codes and exception shapes to a small set of error kinds,
and decides whether a failed attempt is worth repeating.
"""

from __future__ import annotations

import asyncio
from enum import Enum

import httpx

from lims_resilience.errors.base import (
    AttemptTimeoutError,
    CallError,
    CircuitBreakerOpenError,
)


class ErrorKind(str, Enum):
    """Classification of a downstream failure."""

    NETWORK = "network"
    """Connection refused/reset, DNS failure, broken pipe."""

    TIMEOUT = "timeout"
    """Request timed out or deadline exceeded."""

    RATE_LIMITED = "rate_limited"
    """Throttled by the dependency (429)."""

    AUTHENTICATION = "authentication"
    """Missing or invalid credentials (401)."""

    PERMISSION_DENIED = "permission_denied"
    """Authenticated but not allowed (403)."""

    VALIDATION = "validation"
    """Malformed request or rejected payload (400, 422)."""

    NOT_FOUND = "not_found"
    """Resource does not exist (404)."""

    CONFLICT = "conflict"
    """Version conflict on update (409, 412)."""

    SERVER_ERROR = "server_error"
    """Server-side failure (5xx)."""

    UNAVAILABLE = "unavailable"
    """Dependency overloaded or down for maintenance (502, 503)."""

    OTHER = "other"
    """Anything not covered above."""


# Kinds retried when no HTTP status is attached
_RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {
        ErrorKind.NETWORK,
        ErrorKind.TIMEOUT,
        ErrorKind.RATE_LIMITED,
        ErrorKind.SERVER_ERROR,
        ErrorKind.UNAVAILABLE,
    }
)

_STATUS_MAPPING: dict[int, ErrorKind] = {
    400: ErrorKind.VALIDATION,
    401: ErrorKind.AUTHENTICATION,
    403: ErrorKind.PERMISSION_DENIED,
    404: ErrorKind.NOT_FOUND,
    408: ErrorKind.TIMEOUT,
    409: ErrorKind.CONFLICT,
    412: ErrorKind.CONFLICT,
    422: ErrorKind.VALIDATION,
    429: ErrorKind.RATE_LIMITED,
    500: ErrorKind.SERVER_ERROR,
    502: ErrorKind.UNAVAILABLE,
    503: ErrorKind.UNAVAILABLE,
    504: ErrorKind.TIMEOUT,
}

# Substrings that mark an untyped exception as a transient network problem
_NETWORK_HINTS: tuple[str, ...] = ("network", "timeout", "timed out", "connection")


def classify_http_status(status: int) -> ErrorKind:
    """Classify an HTTP status code.

    Args:
        status: HTTP status code

    Returns:
        ErrorKind for the status
    """
    if status in _STATUS_MAPPING:
        return _STATUS_MAPPING[status]
    if 400 <= status < 500:
        return ErrorKind.VALIDATION
    if status >= 500:
        return ErrorKind.SERVER_ERROR
    return ErrorKind.OTHER


def is_retryable_status(status: int) -> bool:
    """Check whether an HTTP status is worth retrying.

    Client errors are final except request timeout (408) and rate
    limiting (429); every server error is retried.
    """
    if 400 <= status < 500:
        return status in (408, 429)
    return status >= 500


def is_retryable_kind(kind: ErrorKind) -> bool:
    """Check whether an error kind is retryable when no status is known."""
    return kind in _RETRYABLE_KINDS


def default_should_retry(error: BaseException) -> bool:
    """Default retry classifier.

    Unknown errors are not retried: surfacing them is preferred over
    masking them with futile retries.

    Args:
        error: The exception raised by the failed attempt

    Returns:
        True if the attempt should be repeated
    """
    if isinstance(error, CircuitBreakerOpenError):
        return False

    if isinstance(error, AttemptTimeoutError):
        return True

    if isinstance(error, CallError):
        if error.http_status is not None:
            return is_retryable_status(error.http_status)
        return is_retryable_kind(error.kind)

    if isinstance(error, httpx.HTTPStatusError):
        return is_retryable_status(error.response.status_code)

    if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return True

    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True

    if type(error).__name__ == "NetworkError":
        return True

    message = str(error).lower()
    return any(hint in message for hint in _NETWORK_HINTS)
