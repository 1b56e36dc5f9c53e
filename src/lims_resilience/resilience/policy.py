"""
Retry policy configuration.

A RetryPolicy is an immutable bundle of retry, timeout and circuit breaker
settings. Callers usually start from engine defaults or a named preset and
override a few fields.
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from lims_resilience.errors import PolicyValidationError, default_should_retry

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from lims_resilience.resilience.presets import PresetRegistry


_TRUE_VALUES = {"1", "true", "yes", "on"}

# camelCase keys accepted by from_dict, mapped to field names
_DICT_ALIASES: dict[str, str] = {
    "maxRetries": "max_retries",
    "baseDelay": "base_delay_ms",
    "baseDelayMs": "base_delay_ms",
    "backoffMs": "base_delay_ms",
    "maxDelay": "max_delay_ms",
    "maxDelayMs": "max_delay_ms",
    "maxBackoffMs": "max_delay_ms",
    "backoffMultiplier": "backoff_multiplier",
    "enableJitter": "enable_jitter",
    "shouldRetry": "should_retry",
    "retryCondition": "should_retry",
    "timeout": "timeout_ms",
    "timeoutMs": "timeout_ms",
    "enableCircuitBreaker": "enable_circuit_breaker",
    "circuitBreakerThreshold": "circuit_breaker_threshold",
    "circuitBreakerCooldownMs": "circuit_breaker_cooldown_ms",
    "policyKey": "policy_key",
}


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for a retried call.

    Total attempts are ``max_retries + 1``. Delays are in milliseconds.

    Attributes:
        max_retries: Retries after the first attempt (0 = single attempt)
        base_delay_ms: Delay before the multiplier is applied
        max_delay_ms: Hard ceiling on any single delay
        backoff_multiplier: Exponential growth factor per attempt
        enable_jitter: Add up to 10% random delay on top of the backoff
        should_retry: Retry predicate; None uses the default classifier
        timeout_ms: Deadline for a single attempt; None waits indefinitely
        enable_circuit_breaker: Fail fast once the dependency looks down
        circuit_breaker_threshold: Consecutive failed calls that open the circuit
        circuit_breaker_cooldown_ms: Open period before a trial call;
            None keeps the circuit open until it is reset explicitly
        policy_key: Scope of the circuit breaker state

    Example:
        >>> policy = RetryPolicy.preset("api", timeout_ms=5000)
        >>> policy.merge(max_retries=1).max_retries
        1
    """

    max_retries: int = 3
    base_delay_ms: float = 1000
    max_delay_ms: float = 30000
    backoff_multiplier: float = 2.0
    enable_jitter: bool = True
    should_retry: Callable[[BaseException], bool] | None = None
    timeout_ms: float | None = None
    enable_circuit_breaker: bool = False
    circuit_breaker_threshold: int = 5
    circuit_breaker_cooldown_ms: float | None = 30000
    policy_key: str = "default"

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise PolicyValidationError(
                "max_retries must be >= 0", field="max_retries", actual=self.max_retries
            )
        if self.base_delay_ms < 0:
            raise PolicyValidationError(
                "base_delay_ms must be >= 0", field="base_delay_ms", actual=self.base_delay_ms
            )
        if self.max_delay_ms < self.base_delay_ms:
            raise PolicyValidationError(
                "max_delay_ms must be >= base_delay_ms",
                field="max_delay_ms",
                actual=self.max_delay_ms,
            )
        if self.backoff_multiplier < 1.0:
            raise PolicyValidationError(
                "backoff_multiplier must be >= 1",
                field="backoff_multiplier",
                actual=self.backoff_multiplier,
            )
        if self.timeout_ms is not None and self.timeout_ms <= 0:
            raise PolicyValidationError(
                "timeout_ms must be > 0", field="timeout_ms", actual=self.timeout_ms
            )
        if self.enable_circuit_breaker and self.circuit_breaker_threshold < 1:
            raise PolicyValidationError(
                "circuit_breaker_threshold must be >= 1",
                field="circuit_breaker_threshold",
                actual=self.circuit_breaker_threshold,
            )
        if self.circuit_breaker_cooldown_ms is not None and self.circuit_breaker_cooldown_ms < 0:
            raise PolicyValidationError(
                "circuit_breaker_cooldown_ms must be >= 0",
                field="circuit_breaker_cooldown_ms",
                actual=self.circuit_breaker_cooldown_ms,
            )
        if not self.policy_key:
            raise PolicyValidationError("policy_key must not be empty", field="policy_key")

    @property
    def max_attempts(self) -> int:
        """Total number of attempts including the first."""
        return self.max_retries + 1

    @property
    def classifier(self) -> Callable[[BaseException], bool]:
        """The effective retry predicate."""
        return self.should_retry or default_should_retry

    def merge(self, **overrides: Any) -> RetryPolicy:
        """Return a copy with the given fields replaced.

        Keys may be field names or the camelCase names accepted by
        :meth:`from_dict`. ``None`` values are ignored except for
        ``timeout_ms`` and ``circuit_breaker_cooldown_ms`` where None is
        meaningful.
        """
        if not overrides:
            return self
        return dataclasses.replace(self, **_normalize(overrides))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], base: RetryPolicy | None = None) -> RetryPolicy:
        """Create a policy from a mapping of (possibly partial) settings.

        Args:
            data: Settings keyed by field name or camelCase alias
            base: Policy supplying values for missing keys

        Returns:
            RetryPolicy instance
        """
        return (base or cls()).merge(**dict(data))

    @classmethod
    def from_env(cls, prefix: str = "LIMS_") -> RetryPolicy:
        """Create a policy from environment variables.

        Reads ``{prefix}RETRY_MAX_RETRIES``, ``RETRY_BASE_DELAY_MS``,
        ``RETRY_MAX_DELAY_MS``, ``RETRY_MULTIPLIER``, ``RETRY_JITTER``,
        ``RETRY_TIMEOUT_MS``, ``BREAKER_ENABLED``, ``BREAKER_THRESHOLD``
        and ``BREAKER_COOLDOWN_MS``. Unset variables keep the defaults.
        """
        overrides: dict[str, Any] = {}

        def read(name: str) -> str | None:
            value = os.getenv(f"{prefix}{name}")
            return value.strip() if value and value.strip() else None

        if (value := read("RETRY_MAX_RETRIES")) is not None:
            overrides["max_retries"] = int(value)
        if (value := read("RETRY_BASE_DELAY_MS")) is not None:
            overrides["base_delay_ms"] = float(value)
        if (value := read("RETRY_MAX_DELAY_MS")) is not None:
            overrides["max_delay_ms"] = float(value)
        if (value := read("RETRY_MULTIPLIER")) is not None:
            overrides["backoff_multiplier"] = float(value)
        if (value := read("RETRY_JITTER")) is not None:
            overrides["enable_jitter"] = value.lower() in _TRUE_VALUES
        if (value := read("RETRY_TIMEOUT_MS")) is not None:
            overrides["timeout_ms"] = float(value)
        if (value := read("BREAKER_ENABLED")) is not None:
            overrides["enable_circuit_breaker"] = value.lower() in _TRUE_VALUES
        if (value := read("BREAKER_THRESHOLD")) is not None:
            overrides["circuit_breaker_threshold"] = int(value)
        if (value := read("BREAKER_COOLDOWN_MS")) is not None:
            overrides["circuit_breaker_cooldown_ms"] = float(value)

        return cls(**overrides)

    @classmethod
    def preset(
        cls,
        name: str,
        registry: PresetRegistry | None = None,
        **overrides: Any,
    ) -> RetryPolicy:
        """Resolve a named preset and apply overrides.

        Args:
            name: Preset name (network, api, database, file, critical, background)
            registry: Preset catalogue; defaults to the built-in one
            **overrides: Fields replacing the preset values

        Raises:
            UnknownPresetError: If the preset is not registered
        """
        from lims_resilience.resilience.presets import get_preset_registry

        return (registry or get_preset_registry()).resolve(name, **overrides)

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        """Create a policy that makes a single attempt."""
        return cls(max_retries=0)


_NULLABLE_FIELDS = {"timeout_ms", "circuit_breaker_cooldown_ms", "should_retry"}
_FIELD_NAMES = {f.name for f in dataclasses.fields(RetryPolicy)}


def _normalize(overrides: Mapping[str, Any]) -> dict[str, Any]:
    """Map aliases to field names and drop unset values."""
    result: dict[str, Any] = {}
    for key, value in overrides.items():
        name = _DICT_ALIASES.get(key, key)
        if name not in _FIELD_NAMES:
            raise PolicyValidationError(f"Unknown retry policy field '{key}'", field=key)
        if value is None and name not in _NULLABLE_FIELDS:
            continue
        result[name] = value
    return result
