"""
Structured logging for lims-resilience.

Log calls take keyword fields instead of formatted strings. Fields that
hold for a whole call (the policy key and operation name) are bound once
with :func:`bind_log_context` and attached to every record emitted inside
the block, including records from the circuit breaker and the timeout
guard. Credentials and patient identifiers are masked before output.
"""

from __future__ import annotations

import json
import logging
import re
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, ClassVar

_log_context: ContextVar[LogContext | None] = ContextVar("lims_log_context", default=None)


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"

    def to_logging_level(self) -> int:
        """Convert to standard logging level."""
        return getattr(logging, self.value)


@dataclass(frozen=True)
class LogContext:
    """Fields attached to every record logged within one call.

    Attributes:
        request_id: Identifier of the inbound request being served
        policy_key: Dependency the call goes to (breaker scope)
        operation: Name of the wrapped operation
        extra: Caller supplied fields such as an accession number
    """

    request_id: str | None = None
    policy_key: str | None = None
    operation: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result = {
            name: value
            for name, value in (
                ("request_id", self.request_id),
                ("policy_key", self.policy_key),
                ("operation", self.operation),
            )
            if value
        }
        result.update(self.extra)
        return result


def get_log_context() -> LogContext:
    """Get the context bound to the current task."""
    return _log_context.get() or LogContext()


def set_log_context(context: LogContext) -> None:
    """Replace the context of the current task."""
    _log_context.set(context)


def clear_log_context() -> None:
    """Drop the context of the current task."""
    _log_context.set(None)


@contextmanager
def bind_log_context(
    *,
    request_id: str | None = None,
    policy_key: str | None = None,
    operation: str | None = None,
    **extra: Any,
) -> Iterator[LogContext]:
    """Layer fields over the current context for the duration of a block.

    Unset arguments keep the outer value, so a retried call made while a
    request id is bound still logs that request id. The outer context is
    restored on exit, also when the block raises or is cancelled.

    Example:
        >>> with bind_log_context(request_id="req-42"):
        ...     await execute_with_retry(read_patient, "api", policy_key="fhir")
    """
    outer = get_log_context()
    context = replace(
        outer,
        request_id=request_id or outer.request_id,
        policy_key=policy_key or outer.policy_key,
        operation=operation or outer.operation,
        extra={**outer.extra, **extra},
    )
    token = _log_context.set(context)
    try:
        yield context
    finally:
        _log_context.reset(token)


class SensitiveDataMasker:
    """Masks credentials and patient identifiers in log text.

    Error reprs end up in retry and failure records, and downstream errors
    routinely quote request headers, gateway keys or the patient being
    looked up.
    """

    REDACTED: ClassVar[str] = "***REDACTED***"

    DEFAULT_PATTERNS: ClassVar[list[tuple[str, str]]] = [
        # Stripe secret / restricted keys
        (r"((?:sk|rk)_(?:live|test)_)[a-zA-Z0-9]{8,}", r"\1***REDACTED***"),
        (r"(api[_-]?key[\"']?\s*[:=]\s*[\"']?)([^\"'\s]+)", r"\1***REDACTED***"),
        (r"(Bearer\s+)([^\s]+)", r"\1***REDACTED***"),
        (r"(Authorization[\"']?\s*[:=]\s*[\"']?)([^\"'\s]+)", r"\1***REDACTED***"),
        # Medical record numbers
        (r"(MRN[\"']?\s*[:=#]?\s*[\"']?)([A-Z0-9-]+)", r"\1***REDACTED***"),
        # US social security numbers
        (r"\b\d{3}-\d{2}-\d{4}\b", r"***-**-****"),
    ]

    def __init__(self, patterns: list[tuple[str, str]] | None = None) -> None:
        self._patterns = [
            (re.compile(p, re.IGNORECASE), r)
            for p, r in (patterns or self.DEFAULT_PATTERNS)
        ]

    def mask(self, text: str) -> str:
        """Mask sensitive data in text."""
        for pattern, replacement in self._patterns:
            text = pattern.sub(replacement, text)
        return text

    def mask_fields(self, fields: dict[str, Any]) -> dict[str, Any]:
        """Mask string values of a field mapping; other values pass through."""
        return {
            key: self.mask(value) if isinstance(value, str) else value
            for key, value in fields.items()
        }


def _record_fields(record: logging.LogRecord, masker: SensitiveDataMasker) -> dict[str, Any]:
    """Bound context followed by the record's own keyword fields."""
    fields = get_log_context().to_dict()
    fields.update(getattr(record, "fields", {}))
    return masker.mask_fields(fields)


class JsonFormatter(logging.Formatter):
    """One JSON object per record, with context and fields at the top level."""

    def __init__(
        self,
        masker: SensitiveDataMasker | None = None,
        include_timestamp: bool = True,
    ) -> None:
        super().__init__()
        self._masker = masker or SensitiveDataMasker()
        self._include_timestamp = include_timestamp

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {}
        if self._include_timestamp:
            payload["timestamp"] = (
                time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created))
                + f".{int(record.msecs):03d}Z"
            )
        payload["level"] = record.levelname
        payload["logger"] = record.name
        payload["message"] = self._masker.mask(record.getMessage())
        payload.update(_record_fields(record, self._masker))

        if record.exc_info:
            payload["exception"] = self._masker.mask(self.formatException(record.exc_info))

        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable ``time | level | logger | message | key=value ...`` lines."""

    def __init__(self, masker: SensitiveDataMasker | None = None) -> None:
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        self._masker = masker or SensitiveDataMasker()

    def format(self, record: logging.LogRecord) -> str:
        line = self._masker.mask(super().format(record))
        fields = _record_fields(record, self._masker)
        if fields:
            line += " | " + " ".join(f"{key}={value}" for key, value in fields.items())
        return line


class ResilienceLogger:
    """Logger taking keyword fields.

    All engine loggers live under the ``lims_resilience`` namespace and
    share one handler, installed by :meth:`configure`.

    Example:
        >>> logger = get_logger("lims_resilience.executor")
        >>> logger.warning("Attempt failed, retrying", attempt=1, delay_ms=500)
    """

    ROOT: ClassVar[str] = "lims_resilience"

    _configured: ClassVar[bool] = False

    @classmethod
    def configure(
        cls,
        level: LogLevel = LogLevel.INFO,
        format: str = "text",
        stream: Any = None,
        masker: SensitiveDataMasker | None = None,
    ) -> None:
        """Install the handler for all engine loggers.

        Args:
            level: Minimum level emitted
            format: 'json' or 'text'
            stream: Output stream (default: stderr)
            masker: Sensitive data masker
        """
        formatter: logging.Formatter = (
            JsonFormatter(masker=masker) if format == "json" else TextFormatter(masker=masker)
        )
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(formatter)

        root = logging.getLogger(cls.ROOT)
        root.handlers.clear()
        root.addHandler(handler)
        root.setLevel(level.to_logging_level())
        root.propagate = False
        cls._configured = True

    @classmethod
    def get_logger(cls, name: str) -> ResilienceLogger:
        """Get a logger, configuring text output on stderr on first use."""
        if not cls._configured:
            cls.configure()
        return cls(logging.getLogger(name))

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(self, level: int, msg: str, exc_info: bool = False, **fields: Any) -> None:
        if self._logger.isEnabledFor(level):
            self._logger.log(level, msg, exc_info=exc_info, extra={"fields": fields})

    def debug(self, msg: str, **fields: Any) -> None:
        self._log(logging.DEBUG, msg, **fields)

    def info(self, msg: str, **fields: Any) -> None:
        self._log(logging.INFO, msg, **fields)

    def warning(self, msg: str, **fields: Any) -> None:
        self._log(logging.WARNING, msg, **fields)

    def error(self, msg: str, **fields: Any) -> None:
        self._log(logging.ERROR, msg, **fields)

    def exception(self, msg: str, **fields: Any) -> None:
        """Log at error level with the active exception's traceback."""
        self._log(logging.ERROR, msg, exc_info=True, **fields)


def get_logger(name: str) -> ResilienceLogger:
    """Get a logger instance."""
    return ResilienceLogger.get_logger(name)
