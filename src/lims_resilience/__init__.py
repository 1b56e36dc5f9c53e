"""
lims-resilience: retry and resilience engine for the lab information system.

Re-attempts failed calls to the FHIR store, the payments gateway and the
claims clearinghouse with exponential backoff, bounds each attempt with a
timeout, and fails fast through a per-dependency circuit breaker.
"""

from __future__ import annotations

from lims_resilience.errors import (
    AttemptTimeoutError,
    CallError,
    CircuitBreakerOpenError,
    ErrorKind,
    PolicyValidationError,
    ResilienceError,
    UnknownPresetError,
    default_should_retry,
)
from lims_resilience.resilience import (
    CircuitState,
    ResilienceRuntime,
    RetryPolicy,
    RetryResult,
    StatisticsSnapshot,
    calculate_delay,
    execute_with_retry,
    get_default_runtime,
    get_statistics,
    reset_statistics,
    retrying,
    set_default_runtime,
)

__version__ = "0.1.0"

__all__ = [
    # Errors
    "AttemptTimeoutError",
    "CallError",
    "CircuitBreakerOpenError",
    "CircuitState",
    "ErrorKind",
    "PolicyValidationError",
    "ResilienceError",
    # Runtime
    "ResilienceRuntime",
    # Policy
    "RetryPolicy",
    "RetryResult",
    "StatisticsSnapshot",
    "UnknownPresetError",
    "calculate_delay",
    "default_should_retry",
    "execute_with_retry",
    "get_default_runtime",
    "get_statistics",
    "reset_statistics",
    "retrying",
    "set_default_runtime",
    # Version
    "__version__",
]
