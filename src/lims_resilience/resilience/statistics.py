"""
Retry statistics.

Process-wide counters updated by the executor. Every increment happens
under a lock, so concurrent calls from several tasks or threads never
lose an update.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum


class RetryEvent(str, Enum):
    """Events counted by the statistics recorder."""

    STARTED = "started"
    RETRIED = "retried"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REJECTED = "rejected"


@dataclass
class StatisticsSnapshot:
    """Copy of the counters at one point in time.

    Attributes:
        total_operations: Calls that started executing
        total_retries: Attempts beyond the first
        successful_operations: Calls that returned a value
        failed_operations: Calls that raised after their retries
        rejected_operations: Calls refused by an open circuit
        by_policy: The same counters broken down by policy key
    """

    total_operations: int = 0
    total_retries: int = 0
    successful_operations: int = 0
    failed_operations: int = 0
    rejected_operations: int = 0
    by_policy: dict[str, dict[str, int]] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        """Share of finished calls that succeeded."""
        finished = self.successful_operations + self.failed_operations
        if finished == 0:
            return 0.0
        return self.successful_operations / finished

    def to_dict(self) -> dict[str, int]:
        """Global counters keyed by the names used in dashboards."""
        return {
            "totalOperations": self.total_operations,
            "totalRetries": self.total_retries,
            "successfulOperations": self.successful_operations,
            "failedOperations": self.failed_operations,
            "rejectedOperations": self.rejected_operations,
        }


_EVENT_FIELDS: dict[RetryEvent, str] = {
    RetryEvent.STARTED: "total_operations",
    RetryEvent.RETRIED: "total_retries",
    RetryEvent.SUCCEEDED: "successful_operations",
    RetryEvent.FAILED: "failed_operations",
    RetryEvent.REJECTED: "rejected_operations",
}


class StatisticsRecorder:
    """Thread-safe retry counters with a per policy key breakdown.

    Example:
        >>> stats = StatisticsRecorder()
        >>> stats.record(RetryEvent.STARTED, policy_key="fhir")
        >>> stats.snapshot().total_operations
        1
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._totals: dict[RetryEvent, int] = defaultdict(int)
        self._by_key: dict[str, dict[RetryEvent, int]] = defaultdict(lambda: defaultdict(int))

    def record(self, event: RetryEvent | str, policy_key: str | None = None) -> None:
        """Increment the counter for an event.

        Args:
            event: Event to count
            policy_key: Policy key for the breakdown, if known
        """
        event = RetryEvent(event)
        with self._lock:
            self._totals[event] += 1
            if policy_key is not None:
                self._by_key[policy_key][event] += 1

    def snapshot(self) -> StatisticsSnapshot:
        """Copy the current counters."""
        with self._lock:
            snapshot = StatisticsSnapshot(
                **{name: self._totals.get(event, 0) for event, name in _EVENT_FIELDS.items()}
            )
            snapshot.by_policy = {
                key: {name: counts.get(event, 0) for event, name in _EVENT_FIELDS.items()}
                for key, counts in self._by_key.items()
            }
        return snapshot

    def reset(self) -> None:
        """Zero all counters."""
        with self._lock:
            self._totals.clear()
            self._by_key.clear()

    def to_prometheus(self) -> str:
        """Export counters in Prometheus text format."""
        snapshot = self.snapshot()
        lines: list[str] = []

        for event, name in _EVENT_FIELDS.items():
            metric = f"lims_retry_{name}"
            lines.append(f"# HELP {metric} Retry engine {event.value} count")
            lines.append(f"# TYPE {metric} counter")
            lines.append(f"{metric} {getattr(snapshot, name)}")
            for key, counts in sorted(snapshot.by_policy.items()):
                lines.append(f'{metric}{{policy_key="{key}"}} {counts[name]}')

        return "\n".join(lines)
