"""
Resilience layer - retry, backoff, timeout and circuit breaking.

- RetryPolicy: Immutable retry configuration, with named presets
- calculate_delay: Exponential backoff with additive jitter and a ceiling
- run_with_timeout: Per-attempt deadline
- CircuitBreaker: Closed/Open/Half-Open state machine per policy key
- RetryExecutor: Orchestrates the above for a single call
- StatisticsRecorder: Process-wide retry counters
- ResilienceRuntime: Composition root owning statistics and breakers
"""

from lims_resilience.resilience.backoff import calculate_delay, exponential_delay_ms
from lims_resilience.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitSnapshot,
    CircuitState,
    Permit,
)
from lims_resilience.resilience.executor import RetryExecutor, RetryResult
from lims_resilience.resilience.policy import RetryPolicy
from lims_resilience.resilience.presets import (
    BUILTIN_PRESETS,
    PresetFile,
    PresetRegistry,
    PresetSpec,
    get_preset_registry,
    set_preset_registry,
)
from lims_resilience.resilience.runtime import (
    ResilienceRuntime,
    execute_with_retry,
    get_default_runtime,
    get_statistics,
    reset_statistics,
    retrying,
    set_default_runtime,
)
from lims_resilience.resilience.statistics import (
    RetryEvent,
    StatisticsRecorder,
    StatisticsSnapshot,
)
from lims_resilience.resilience.timeout import run_with_timeout

__all__ = [
    "BUILTIN_PRESETS",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitSnapshot",
    "CircuitState",
    "Permit",
    # Presets
    "PresetFile",
    "PresetRegistry",
    "PresetSpec",
    # Runtime
    "ResilienceRuntime",
    # Statistics
    "RetryEvent",
    # Executor
    "RetryExecutor",
    # Policy
    "RetryPolicy",
    "RetryResult",
    "StatisticsRecorder",
    "StatisticsSnapshot",
    "calculate_delay",
    "execute_with_retry",
    "exponential_delay_ms",
    "get_default_runtime",
    "get_preset_registry",
    "get_statistics",
    "reset_statistics",
    "retrying",
    "run_with_timeout",
    "set_default_runtime",
    "set_preset_registry",
]
