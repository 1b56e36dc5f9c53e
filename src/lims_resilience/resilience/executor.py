"""
Retry executor.

Runs one operation under a RetryPolicy: asks the circuit breaker for a
permit, runs attempts strictly one after another under the timeout guard,
classifies failures, sleeps the backoff delay between attempts and
reports the final outcome to the breaker and the statistics.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from lims_resilience.errors import CircuitBreakerOpenError
from lims_resilience.resilience.backoff import calculate_delay
from lims_resilience.resilience.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    Permit,
)
from lims_resilience.resilience.statistics import RetryEvent, StatisticsRecorder
from lims_resilience.resilience.timeout import run_with_timeout
from lims_resilience.telemetry import bind_log_context, get_logger

if TYPE_CHECKING:
    import random
    from collections.abc import Awaitable, Callable

    from lims_resilience.resilience.circuit_breaker import CircuitBreaker
    from lims_resilience.resilience.policy import RetryPolicy

T = TypeVar("T")

logger = get_logger("lims_resilience.executor")


@dataclass
class RetryResult(Generic[T]):
    """Outcome of a retried call.

    Attributes:
        success: Whether the operation succeeded
        value: The result value (if success)
        error: The last error (if failed)
        attempts: Number of attempts made
        total_delay_ms: Total backoff delay in milliseconds
    """

    success: bool = False
    value: T | None = None
    error: BaseException | None = None
    attempts: int = 0
    total_delay_ms: float = 0.0


class RetryExecutor:
    """Executes operations with retry, timeout and circuit breaking.

    The executor holds no state of its own beyond references to the shared
    statistics and breaker registry, so one instance serves any number of
    concurrent calls.

    Example:
        >>> executor = RetryExecutor(StatisticsRecorder(), CircuitBreakerRegistry())
        >>> result = await executor.execute(fetch_patient, RetryPolicy.preset("api"))
    """

    def __init__(
        self,
        statistics: StatisticsRecorder,
        breakers: CircuitBreakerRegistry,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._statistics = statistics
        self._breakers = breakers
        self._sleep = sleep
        self._rng = rng

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
        on_retry: Callable[[int, BaseException, float], None] | None = None,
        name: str | None = None,
    ) -> T:
        """Execute an operation, retrying failures the policy deems retryable.

        Args:
            operation: Zero-argument callable returning an awaitable
            policy: Retry policy
            on_retry: Called with (retry number, error, delay seconds) before each backoff
            name: Operation name for logs and timeout messages

        Returns:
            The operation's result

        Raises:
            CircuitBreakerOpenError: If the circuit for the policy key is open
            AttemptTimeoutError: If the final attempt timed out
            Exception: The final attempt's own error, unchanged
        """
        return await self._run(operation, policy, on_retry, name, RetryResult())

    async def execute_with_result(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
        on_retry: Callable[[int, BaseException, float], None] | None = None,
        name: str | None = None,
    ) -> RetryResult[T]:
        """Execute an operation and report the outcome instead of raising.

        Returns:
            RetryResult with success status, value or error, and attempt count
        """
        result: RetryResult[T] = RetryResult()
        try:
            result.value = await self._run(operation, policy, on_retry, name, result)
            result.success = True
        except Exception as e:
            result.error = e
        return result

    async def _run(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
        on_retry: Callable[[int, BaseException, float], None] | None,
        name: str | None,
        result: RetryResult[T],
    ) -> T:
        key = policy.policy_key
        name = name or _operation_name(operation)

        with bind_log_context(policy_key=key, operation=name):
            breaker: CircuitBreaker | None = None
            permit = Permit.NORMAL
            if policy.enable_circuit_breaker:
                breaker = self._breakers.get(key, CircuitBreakerConfig.from_policy(policy))
                try:
                    permit = breaker.acquire()
                except CircuitBreakerOpenError as e:
                    self._statistics.record(RetryEvent.REJECTED, key)
                    logger.warning(
                        "Call rejected, circuit breaker open",
                        time_until_retry=e.time_until_retry,
                    )
                    raise

            self._statistics.record(RetryEvent.STARTED, key)

            # A half-open probe gets one attempt only
            max_retries = 0 if permit is Permit.TRIAL else policy.max_retries
            reported = False

            try:
                for attempt in range(max_retries + 1):
                    result.attempts = attempt + 1
                    logger.debug(
                        "Executing attempt", attempt=attempt + 1, max_attempts=max_retries + 1
                    )

                    try:
                        value = await run_with_timeout(operation, policy.timeout_ms, name)
                    except Exception as error:
                        if attempt >= max_retries or not self._should_retry(policy, error):
                            reported = True
                            if breaker is not None:
                                breaker.record_failure(permit)
                            self._statistics.record(RetryEvent.FAILED, key)
                            logger.error(
                                "Operation failed", attempts=attempt + 1, error=repr(error)
                            )
                            raise

                        delay = calculate_delay(attempt, policy, self._rng)
                        self._statistics.record(RetryEvent.RETRIED, key)
                        result.total_delay_ms += delay * 1000
                        logger.warning(
                            "Attempt failed, retrying",
                            attempt=attempt + 1,
                            delay_ms=round(delay * 1000, 1),
                            error=repr(error),
                        )
                        if on_retry is not None:
                            _notify_retry(on_retry, attempt + 1, error, delay)
                    else:
                        reported = True
                        if breaker is not None:
                            breaker.record_success(permit)
                        self._statistics.record(RetryEvent.SUCCEEDED, key)
                        if attempt > 0:
                            logger.info("Operation succeeded after retries", attempts=attempt + 1)
                        return value

                    await self._sleep(delay)
            finally:
                if breaker is not None and permit is Permit.TRIAL and not reported:
                    breaker.abandon_trial()

        # The loop always returns or raises
        raise AssertionError("retry loop exited without an outcome")

    def _should_retry(self, policy: RetryPolicy, error: BaseException) -> bool:
        try:
            return bool(policy.classifier(error))
        except Exception:
            # A broken predicate must not hide the operation's own error
            logger.exception("Retry predicate raised, not retrying")
            return False


def _notify_retry(
    on_retry: Callable[[int, BaseException, float], None],
    retry: int,
    error: BaseException,
    delay: float,
) -> None:
    try:
        on_retry(retry, error, delay)
    except Exception:
        # Callback errors are logged and never end the call
        logger.exception("Retry callback raised, continuing", retry=retry)


def _operation_name(operation: Any) -> str:
    return getattr(operation, "__qualname__", None) or type(operation).__name__
