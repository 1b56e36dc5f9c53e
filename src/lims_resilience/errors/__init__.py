"""
Error hierarchy for lims-resilience.

Provides the tagged error type downstream clients raise, the synthetic
errors produced by the engine, and the default retry classification.
"""

from lims_resilience.errors.base import (
    AttemptTimeoutError,
    CallError,
    CircuitBreakerOpenError,
    ErrorContext,
    PolicyValidationError,
    ResilienceError,
    UnknownPresetError,
)
from lims_resilience.errors.classification import (
    ErrorKind,
    classify_http_status,
    default_should_retry,
    is_retryable_kind,
    is_retryable_status,
)

__all__ = [
    "AttemptTimeoutError",
    "CallError",
    "CircuitBreakerOpenError",
    "ErrorContext",
    "ErrorKind",
    "PolicyValidationError",
    "ResilienceError",
    "UnknownPresetError",
    "classify_http_status",
    "default_should_retry",
    "is_retryable_kind",
    "is_retryable_status",
]
