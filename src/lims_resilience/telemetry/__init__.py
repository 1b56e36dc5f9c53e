"""
Telemetry module for lims-resilience.

Provides structured logging with call-scoped context and masking of
credentials and patient identifiers.
"""

from lims_resilience.telemetry.logger import (
    JsonFormatter,
    LogContext,
    LogLevel,
    ResilienceLogger,
    SensitiveDataMasker,
    TextFormatter,
    bind_log_context,
    clear_log_context,
    get_log_context,
    get_logger,
    set_log_context,
)

__all__ = [
    "JsonFormatter",
    "LogContext",
    "LogLevel",
    "ResilienceLogger",
    "SensitiveDataMasker",
    "TextFormatter",
    "bind_log_context",
    "clear_log_context",
    "get_log_context",
    "get_logger",
    "set_log_context",
]
