"""
Resilience runtime.

The runtime owns all mutable state of the engine: statistics counters and
circuit breakers. Applications create one at their composition root and
pass it around; the module-level helpers use a lazily created default
runtime for callers that do not care.
"""

from __future__ import annotations

import asyncio
import functools
import random
import time
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, TypeVar

from lims_resilience.resilience.circuit_breaker import CircuitBreakerRegistry, CircuitState
from lims_resilience.resilience.executor import RetryExecutor, RetryResult
from lims_resilience.resilience.policy import RetryPolicy
from lims_resilience.resilience.presets import PresetRegistry, get_preset_registry
from lims_resilience.resilience.statistics import StatisticsRecorder, StatisticsSnapshot

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")


class ResilienceRuntime:
    """Statistics, circuit breakers and the executor bound to them.

    Example:
        >>> runtime = ResilienceRuntime()
        >>> claim = await runtime.execute_with_retry(submit_claim, "critical")
        >>> runtime.get_statistics().successful_operations
        1
    """

    def __init__(
        self,
        statistics: StatisticsRecorder | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        presets: PresetRegistry | None = None,
        defaults: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the runtime.

        Args:
            statistics: Statistics recorder (a fresh one by default)
            breakers: Circuit breaker registry (a fresh one by default)
            presets: Preset catalogue (the process-wide one by default)
            defaults: Policy used when a call supplies none
            sleep: Backoff sleep, replaceable in tests
            rng: Random source for jitter
            clock: Monotonic clock for breaker cooldowns
        """
        self._statistics = statistics or StatisticsRecorder()
        self._breakers = breakers or CircuitBreakerRegistry(clock=clock)
        self._presets = presets
        self._defaults = defaults or RetryPolicy()
        self._executor = RetryExecutor(self._statistics, self._breakers, sleep=sleep, rng=rng)

    @property
    def statistics(self) -> StatisticsRecorder:
        return self._statistics

    @property
    def breakers(self) -> CircuitBreakerRegistry:
        return self._breakers

    @property
    def presets(self) -> PresetRegistry:
        return self._presets or get_preset_registry()

    @property
    def defaults(self) -> RetryPolicy:
        return self._defaults

    @property
    def executor(self) -> RetryExecutor:
        return self._executor

    def resolve_policy(
        self,
        policy: RetryPolicy | str | Mapping[str, Any] | None = None,
        **overrides: Any,
    ) -> RetryPolicy:
        """Turn a policy, preset name or partial mapping into a full policy.

        Args:
            policy: RetryPolicy, preset name, mapping of overrides, or None
            **overrides: Fields merged on top

        Returns:
            The effective RetryPolicy
        """
        if policy is None:
            resolved = self._defaults
        elif isinstance(policy, RetryPolicy):
            resolved = policy
        elif isinstance(policy, str):
            resolved = self.presets.get(policy)
        elif isinstance(policy, Mapping):
            resolved = RetryPolicy.from_dict(policy, base=self._defaults)
        else:
            raise TypeError(f"Unsupported policy type: {type(policy).__name__}")
        return resolved.merge(**overrides)

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy | str | Mapping[str, Any] | None = None,
        *,
        on_retry: Callable[[int, BaseException, float], None] | None = None,
        name: str | None = None,
        **overrides: Any,
    ) -> T:
        """Execute an operation with retry.

        Args:
            operation: Zero-argument callable returning an awaitable
            policy: RetryPolicy, preset name, mapping of overrides, or None
            on_retry: Called with (retry number, error, delay seconds) before each backoff
            name: Operation name for logs
            **overrides: Policy fields merged on top

        Returns:
            Operation result

        Raises:
            The final error (operation error, AttemptTimeoutError or
            CircuitBreakerOpenError)
        """
        resolved = self.resolve_policy(policy, **overrides)
        return await self._executor.execute(operation, resolved, on_retry=on_retry, name=name)

    async def execute_with_result(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy | str | Mapping[str, Any] | None = None,
        *,
        on_retry: Callable[[int, BaseException, float], None] | None = None,
        name: str | None = None,
        **overrides: Any,
    ) -> RetryResult[T]:
        """Like execute_with_retry, but returns a RetryResult instead of raising."""
        resolved = self.resolve_policy(policy, **overrides)
        return await self._executor.execute_with_result(
            operation, resolved, on_retry=on_retry, name=name
        )

    def get_statistics(self) -> StatisticsSnapshot:
        """Snapshot of the retry counters."""
        return self._statistics.snapshot()

    def reset_statistics(self) -> None:
        """Zero the retry counters."""
        self._statistics.reset()

    def circuit_state(self, policy_key: str) -> CircuitState | None:
        """State of the breaker for a key, or None if it was never used."""
        breaker = self._breakers.find(policy_key)
        return breaker.state if breaker else None

    def reset_circuit_breakers(self, policy_key: str | None = None) -> None:
        """Close one breaker, or all of them."""
        self._breakers.reset(policy_key)

    def reset(self) -> None:
        """Zero statistics and close all breakers."""
        self.reset_statistics()
        self.reset_circuit_breakers()


_default_runtime: ResilienceRuntime | None = None


def get_default_runtime() -> ResilienceRuntime:
    """Get the process-wide runtime used by the module-level helpers."""
    global _default_runtime
    if _default_runtime is None:
        _default_runtime = ResilienceRuntime()
    return _default_runtime


def set_default_runtime(runtime: ResilienceRuntime) -> None:
    """Replace the process-wide runtime."""
    global _default_runtime
    _default_runtime = runtime


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | str | Mapping[str, Any] | None = None,
    *,
    runtime: ResilienceRuntime | None = None,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
    name: str | None = None,
    **overrides: Any,
) -> T:
    """Execute an operation with retry, raising the final error on failure.

    Args:
        operation: Zero-argument callable returning an awaitable
        policy: RetryPolicy, preset name, mapping of overrides, or None
        runtime: Runtime holding statistics and breakers (default runtime if None)
        on_retry: Called with (retry number, error, delay seconds) before each backoff
        name: Operation name for logs
        **overrides: Policy fields merged on top

    Example:
        >>> patient = await execute_with_retry(
        ...     lambda: fhir.read("Patient", patient_id),
        ...     "api",
        ...     policy_key="fhir",
        ...     timeout_ms=5000,
        ... )
    """
    return await (runtime or get_default_runtime()).execute_with_retry(
        operation, policy, on_retry=on_retry, name=name, **overrides
    )


def get_statistics(runtime: ResilienceRuntime | None = None) -> StatisticsSnapshot:
    """Snapshot of the retry counters of a runtime."""
    return (runtime or get_default_runtime()).get_statistics()


def reset_statistics(runtime: ResilienceRuntime | None = None) -> None:
    """Zero the retry counters of a runtime."""
    (runtime or get_default_runtime()).reset_statistics()


def retrying(
    policy: RetryPolicy | str | Mapping[str, Any] | None = None,
    *,
    runtime: ResilienceRuntime | None = None,
    **overrides: Any,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorate an async function so every call runs under a retry policy.

    The runtime is looked up at call time, so replacing the default
    runtime after decoration takes effect.

    Example:
        >>> @retrying("api", policy_key="clearinghouse")
        ... async def submit_claim(claim: dict) -> dict:
        ...     ...
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await execute_with_retry(
                lambda: func(*args, **kwargs),
                policy,
                runtime=runtime,
                name=func.__qualname__,
                **overrides,
            )

        return wrapper

    return decorator
