"""
Base error classes for lims-resilience.

Provides a layered error hierarchy:
- ResilienceError: Base class for all library errors
- CallError: Tagged failure raised by downstream collaborators
- AttemptTimeoutError: An attempt did not settle within its deadline
- CircuitBreakerOpenError: Attempt suppressed by an open circuit
- PolicyValidationError: Invalid retry policy configuration
- UnknownPresetError: Preset name not registered
"""

from __future__ import annotations

import contextlib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import httpx

    from lims_resilience.errors.classification import ErrorKind


@dataclass
class ErrorContext:
    """Structured error context for diagnostics.

    Provides actionable information for debugging and error handling.
    """

    details: dict[str, Any] = field(default_factory=dict)
    """Additional details about the error"""

    source: str | None = None
    """Error source (e.g., 'remote', 'timeout', 'circuit_breaker')"""

    hint: str | None = None
    """Actionable hint for resolving the error"""

    def __str__(self) -> str:
        parts = []
        if self.source:
            parts.append(f"[{self.source}]")
        if self.hint:
            parts.append(f"(hint: {self.hint})")
        return " ".join(parts)


class ResilienceError(Exception):
    """Base class for all lims-resilience errors.

    Attributes:
        message: Human-readable error message
        context: Optional structured error context
    """

    def __init__(
        self,
        message: str,
        context: ErrorContext | None = None,
    ) -> None:
        self.message = message
        self.context = context or ErrorContext()
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format the full error message."""
        ctx_str = str(self.context)
        if ctx_str:
            return f"{self.message} {ctx_str}"
        return self.message

    def with_hint(self, hint: str) -> ResilienceError:
        """Add a hint to this error."""
        self.context.hint = hint
        self.args = (self._format_message(),)
        return self


class CallError(ResilienceError):
    """Failure of a downstream call (FHIR store, payment gateway, clearinghouse).

    Collaborators wrap raw transport failures in this type so the default
    retry classifier can decide on explicit fields instead of guessing
    at arbitrary exception shapes.

    Attributes:
        kind: Classification of the failure
        http_status: HTTP status code, if the failure came from a response
        retry_after: Server supplied retry hint in seconds
        service: Name of the downstream dependency
    """

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind,
        http_status: int | None = None,
        retry_after: float | None = None,
        service: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        ctx = ErrorContext(source="remote" if http_status else kind.value)
        ctx.details["kind"] = kind.value
        if http_status is not None:
            ctx.details["http_status"] = http_status
        if service:
            ctx.details["service"] = service
        super().__init__(message, ctx)

        self.kind = kind
        self.http_status = http_status
        self.retry_after = retry_after
        self.service = service
        self.__cause__ = cause

    @classmethod
    def from_status(
        cls,
        http_status: int,
        message: str | None = None,
        *,
        headers: dict[str, str] | None = None,
        service: str | None = None,
    ) -> CallError:
        """Create a CallError from an HTTP status code.

        Args:
            http_status: HTTP status code
            message: Error message (defaults to "HTTP <status>")
            headers: Response headers, inspected for Retry-After
            service: Name of the downstream dependency

        Returns:
            CallError with the kind derived from the status
        """
        from lims_resilience.errors.classification import classify_http_status

        retry_after = None
        if headers:
            retry_after_str = headers.get("retry-after") or headers.get("Retry-After")
            if retry_after_str:
                with contextlib.suppress(ValueError):
                    retry_after = float(retry_after_str)

        return cls(
            message or f"HTTP {http_status}",
            kind=classify_http_status(http_status),
            http_status=http_status,
            retry_after=retry_after,
            service=service,
        )

    @classmethod
    def from_httpx(cls, exc: httpx.HTTPError, service: str | None = None) -> CallError:
        """Wrap an httpx exception.

        Args:
            exc: Exception raised by an httpx client
            service: Name of the downstream dependency

        Returns:
            CallError carrying the status (for HTTPStatusError) or a
            network/timeout kind (for transport failures)
        """
        import httpx

        from lims_resilience.errors.classification import ErrorKind

        if isinstance(exc, httpx.HTTPStatusError):
            response = exc.response
            error = cls.from_status(
                response.status_code,
                str(exc),
                headers=dict(response.headers),
                service=service,
            )
            error.__cause__ = exc
            return error

        if isinstance(exc, httpx.TimeoutException):
            kind = ErrorKind.TIMEOUT
        elif isinstance(exc, httpx.TransportError):
            kind = ErrorKind.NETWORK
        else:
            kind = ErrorKind.OTHER

        return cls(str(exc) or type(exc).__name__, kind=kind, service=service, cause=exc)


class AttemptTimeoutError(ResilienceError, TimeoutError):
    """Raised when a single attempt does not settle within its timeout."""

    def __init__(self, timeout_ms: float, operation: str | None = None) -> None:
        target = f" for {operation}" if operation else ""
        ctx = ErrorContext(source="timeout")
        ctx.details["timeout_ms"] = timeout_ms
        super().__init__(f"Operation timeout after {timeout_ms:g}ms{target}", ctx)
        self.timeout_ms = timeout_ms
        self.operation = operation


class CircuitBreakerOpenError(ResilienceError):
    """Raised when the circuit for a policy key is open and the call is rejected."""

    def __init__(
        self,
        policy_key: str,
        time_until_retry: float | None = None,
    ) -> None:
        ctx = ErrorContext(source="circuit_breaker")
        ctx.details["policy_key"] = policy_key
        if time_until_retry is not None:
            ctx.details["time_until_retry"] = time_until_retry
        super().__init__(f"Circuit breaker is open for '{policy_key}'", ctx)
        self.policy_key = policy_key
        self.time_until_retry = time_until_retry


class PolicyValidationError(ResilienceError, ValueError):
    """Invalid retry policy configuration."""

    def __init__(self, message: str, *, field: str | None = None, actual: Any = None) -> None:
        ctx = ErrorContext(source="policy")
        if field:
            ctx.details["field"] = field
        if actual is not None:
            ctx.details["actual"] = actual
        super().__init__(message, ctx)
        self.field = field
        self.actual = actual


class UnknownPresetError(ResilienceError, KeyError):
    """Raised when a preset name is not registered."""

    def __init__(self, name: str, available: list[str] | None = None) -> None:
        ctx = ErrorContext(source="presets")
        if available:
            ctx.hint = f"available presets: {', '.join(sorted(available))}"
        super().__init__(f"Unknown retry preset '{name}'", ctx)
        self.name = name

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self._format_message()
