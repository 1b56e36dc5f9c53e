"""
Circuit breaker for fault isolation.

Implements the circuit breaker pattern with three states:
- Closed: Normal operation, calls pass through
- Open: Circuit tripped, calls fail fast
- Half-Open: Cooldown elapsed, a single trial call is let through

One breaker exists per policy key, so independent dependencies never
share trip state. State is in-memory for the life of the process.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from lims_resilience.errors import CircuitBreakerOpenError
from lims_resilience.telemetry import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from lims_resilience.resilience.policy import RetryPolicy

logger = get_logger("lims_resilience.circuit_breaker")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class Permit(str, Enum):
    """Kind of permission granted to a call."""

    NORMAL = "normal"
    TRIAL = "trial"


@dataclass
class CircuitBreakerConfig:
    """Configuration for a circuit breaker.

    Attributes:
        failure_threshold: Consecutive failed calls that trip the circuit
        cooldown_seconds: Time in Open before a trial call; None means the
            circuit stays open until reset
    """

    failure_threshold: int = 5
    cooldown_seconds: float | None = 30.0

    @classmethod
    def from_policy(cls, policy: RetryPolicy) -> CircuitBreakerConfig:
        """Derive breaker settings from a retry policy."""
        cooldown = policy.circuit_breaker_cooldown_ms
        return cls(
            failure_threshold=policy.circuit_breaker_threshold,
            cooldown_seconds=None if cooldown is None else cooldown / 1000.0,
        )


@dataclass
class CircuitSnapshot:
    """Point-in-time view of one breaker."""

    policy_key: str
    state: CircuitState
    consecutive_failures: int
    failure_threshold: int
    opened_at: float | None = None
    time_until_retry: float | None = None
    times_opened: int = 0
    rejected_calls: int = 0


class CircuitBreaker:
    """Circuit breaker for one policy key.

    Callers ask for a permit before running, then report the outcome of
    the whole call (after its retries), not of each attempt.

    Example:
        >>> breaker = CircuitBreaker("fhir", CircuitBreakerConfig(failure_threshold=3))
        >>> permit = breaker.acquire()  # raises CircuitBreakerOpenError when open
        >>> breaker.record_success(permit)
    """

    def __init__(
        self,
        policy_key: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._key = policy_key
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False

        self._times_opened = 0
        self._rejected_calls = 0

    @property
    def policy_key(self) -> str:
        return self._key

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        with self._lock:
            return self._state

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    @property
    def opened_at(self) -> float | None:
        with self._lock:
            return self._opened_at

    def acquire(self) -> Permit:
        """Ask permission to run a call.

        Returns:
            Permit.NORMAL when closed, Permit.TRIAL for the single half-open probe

        Raises:
            CircuitBreakerOpenError: If the circuit is open, or a trial is
                already in flight
        """
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return Permit.NORMAL

            if self._state == CircuitState.OPEN and self._cooldown_elapsed():
                self._state = CircuitState.HALF_OPEN
                logger.info("Circuit breaker half-open, allowing trial call", policy_key=self._key)

            if self._state == CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return Permit.TRIAL

            self._rejected_calls += 1
            time_until_retry = self._time_until_retry()

        raise CircuitBreakerOpenError(self._key, time_until_retry=time_until_retry)

    def record_success(self, permit: Permit) -> None:
        """Record a successful call.

        Args:
            permit: The permit the call was admitted with. Only the trial
                permit can close a half-open circuit; a normal call that
                finishes after the circuit tripped changes nothing.
        """
        with self._lock:
            if permit is Permit.TRIAL:
                if self._state == CircuitState.HALF_OPEN and self._trial_in_flight:
                    self._close()
                    logger.info(
                        "Circuit breaker closed after successful trial", policy_key=self._key
                    )
            elif self._state == CircuitState.CLOSED:
                self._consecutive_failures = 0

    def record_failure(self, permit: Permit) -> None:
        """Record a call that failed after exhausting its retries.

        Args:
            permit: The permit the call was admitted with. Failures of normal
                calls admitted before the trip are ignored once the circuit
                is no longer closed, so they neither push back the cooldown
                nor decide the trial.
        """
        with self._lock:
            if permit is Permit.TRIAL:
                if self._state == CircuitState.HALF_OPEN and self._trial_in_flight:
                    self._trial_in_flight = False
                    self._open()
                    logger.warning(
                        "Circuit breaker re-opened after failed trial", policy_key=self._key
                    )
            elif self._state == CircuitState.CLOSED:
                self._consecutive_failures += 1
                if self._consecutive_failures >= self._config.failure_threshold:
                    self._open()
                    logger.warning(
                        "Circuit breaker opened",
                        policy_key=self._key,
                        consecutive_failures=self._consecutive_failures,
                    )

    def abandon_trial(self) -> None:
        """Give back a trial permit whose call ended without an outcome (cancelled)."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False

    def reset(self) -> None:
        """Reset to closed state."""
        with self._lock:
            self._close()
        logger.info("Circuit breaker manually reset", policy_key=self._key)

    def describe(self) -> CircuitSnapshot:
        """Get a snapshot of the breaker state."""
        with self._lock:
            return CircuitSnapshot(
                policy_key=self._key,
                state=self._state,
                consecutive_failures=self._consecutive_failures,
                failure_threshold=self._config.failure_threshold,
                opened_at=self._opened_at,
                time_until_retry=self._time_until_retry(),
                times_opened=self._times_opened,
                rejected_calls=self._rejected_calls,
            )

    def _cooldown_elapsed(self) -> bool:
        if self._config.cooldown_seconds is None or self._opened_at is None:
            return False
        return self._clock() - self._opened_at >= self._config.cooldown_seconds

    def _time_until_retry(self) -> float | None:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return None
        if self._config.cooldown_seconds is None:
            return None
        remaining = self._config.cooldown_seconds - (self._clock() - self._opened_at)
        return max(0.0, remaining)

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._times_opened += 1

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = None
        self._trial_in_flight = False

    def __repr__(self) -> str:
        return (
            f"CircuitBreaker(key={self._key!r}, state={self._state.value}, "
            f"failures={self._consecutive_failures}/{self._config.failure_threshold})"
        )


class CircuitBreakerRegistry:
    """Lazily created breakers, one per policy key."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, policy_key: str, config: CircuitBreakerConfig | None = None) -> CircuitBreaker:
        """Get the breaker for a key, creating it on first use.

        The configuration only applies when the breaker is created; later
        calls with a different configuration reuse the existing breaker.
        """
        with self._lock:
            breaker = self._breakers.get(policy_key)
            if breaker is None:
                breaker = CircuitBreaker(policy_key, config, clock=self._clock)
                self._breakers[policy_key] = breaker
            return breaker

    def find(self, policy_key: str) -> CircuitBreaker | None:
        """Get the breaker for a key if one exists."""
        with self._lock:
            return self._breakers.get(policy_key)

    def reset(self, policy_key: str | None = None) -> None:
        """Reset one breaker, or all of them."""
        with self._lock:
            breakers = (
                list(self._breakers.values())
                if policy_key is None
                else [b for k, b in self._breakers.items() if k == policy_key]
            )
        for breaker in breakers:
            breaker.reset()

    def snapshot(self) -> dict[str, CircuitSnapshot]:
        """Describe every known breaker."""
        with self._lock:
            breakers = dict(self._breakers)
        return {key: breaker.describe() for key, breaker in breakers.items()}

    def __len__(self) -> int:
        with self._lock:
            return len(self._breakers)
