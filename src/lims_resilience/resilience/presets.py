"""
Named retry policy presets.

Built-in presets cover the common call shapes of the lab system: network
calls, REST APIs, database access, file I/O, critical submissions and
background jobs. Additional presets can be loaded from YAML:

    presets:
      clearinghouse:
        max_retries: 4
        base_delay_ms: 1500
        max_delay_ms: 20000
        backoff_multiplier: 2
        enable_circuit_breaker: true
        circuit_breaker_threshold: 3
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from lims_resilience.errors import PolicyValidationError, UnknownPresetError
from lims_resilience.resilience.policy import RetryPolicy
from lims_resilience.telemetry import get_logger

logger = get_logger("lims_resilience.presets")


class PresetSpec(BaseModel):
    """Declarative preset as found in a presets file."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    max_retries: int = Field(default=3, ge=0, alias="maxRetries")
    base_delay_ms: float = Field(default=1000, ge=0, alias="baseDelayMs")
    max_delay_ms: float = Field(default=30000, ge=0, alias="maxDelayMs")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, alias="backoffMultiplier")
    enable_jitter: bool = Field(default=True, alias="enableJitter")
    timeout_ms: float | None = Field(default=None, gt=0, alias="timeoutMs")
    enable_circuit_breaker: bool = Field(default=False, alias="enableCircuitBreaker")
    circuit_breaker_threshold: int = Field(default=5, ge=1, alias="circuitBreakerThreshold")
    circuit_breaker_cooldown_ms: float | None = Field(
        default=30000, ge=0, alias="circuitBreakerCooldownMs"
    )
    description: str | None = Field(default=None, description="Free-form note")

    def to_policy(self, name: str) -> RetryPolicy:
        """Build the RetryPolicy for this preset, keyed by the preset name."""
        return RetryPolicy(
            **self.model_dump(exclude={"description"}),
            policy_key=name,
        )


class PresetFile(BaseModel):
    """Top-level structure of a presets YAML file."""

    model_config = ConfigDict(extra="allow")

    presets: dict[str, PresetSpec] = Field(default_factory=dict)


BUILTIN_PRESETS: dict[str, PresetSpec] = {
    "network": PresetSpec(
        max_retries=5,
        base_delay_ms=500,
        max_delay_ms=10000,
        backoff_multiplier=1.5,
        enable_jitter=True,
        description="Flaky network hops",
    ),
    "api": PresetSpec(
        max_retries=3,
        base_delay_ms=1000,
        max_delay_ms=5000,
        backoff_multiplier=2,
        enable_jitter=True,
        description="REST calls to FHIR, payment and clearinghouse APIs",
    ),
    "database": PresetSpec(
        max_retries=2,
        base_delay_ms=2000,
        max_delay_ms=10000,
        backoff_multiplier=2,
        enable_jitter=False,
    ),
    "file": PresetSpec(
        max_retries=3,
        base_delay_ms=100,
        max_delay_ms=2000,
        backoff_multiplier=1.2,
        enable_jitter=False,
    ),
    "critical": PresetSpec(
        max_retries=10,
        base_delay_ms=2000,
        max_delay_ms=60000,
        backoff_multiplier=2,
        description="Claim submission and payment capture",
    ),
    "background": PresetSpec(
        max_retries=2,
        base_delay_ms=5000,
        max_delay_ms=30000,
        backoff_multiplier=3,
        description="Exports and other deferred work",
    ),
}


class PresetRegistry:
    """Catalogue of named presets.

    Policies are resolved once per name and cached; overrides produce a
    fresh policy and never touch the cached one.
    """

    def __init__(self, presets: dict[str, PresetSpec] | None = None) -> None:
        self._specs: dict[str, PresetSpec] = dict(BUILTIN_PRESETS if presets is None else presets)
        self._resolved: dict[str, RetryPolicy] = {}
        self._lock = threading.Lock()

    @property
    def names(self) -> list[str]:
        """Registered preset names."""
        return sorted(self._specs)

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def register(self, name: str, spec: PresetSpec | dict[str, Any]) -> None:
        """Register or replace a preset.

        Args:
            name: Preset name, also used as the default policy key
            spec: PresetSpec or a mapping validated into one
        """
        if not isinstance(spec, PresetSpec):
            spec = _validate_spec(name, spec)
        with self._lock:
            self._specs[name] = spec
            self._resolved.pop(name, None)

    def get(self, name: str) -> RetryPolicy:
        """Get the policy for a preset without overrides."""
        with self._lock:
            policy = self._resolved.get(name)
            if policy is None:
                spec = self._specs.get(name)
                if spec is None:
                    raise UnknownPresetError(name, list(self._specs))
                policy = spec.to_policy(name)
                self._resolved[name] = policy
        return policy

    def resolve(self, name: str, **overrides: Any) -> RetryPolicy:
        """Get the policy for a preset with caller overrides merged on top."""
        return self.get(name).merge(**overrides)

    def load_file(self, path: str | Path) -> list[str]:
        """Load presets from a YAML file.

        Args:
            path: Path to a YAML document with a top-level ``presets`` mapping

        Returns:
            Names of the presets loaded

        Raises:
            PolicyValidationError: If the file is malformed
        """
        path = Path(path)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise PolicyValidationError(f"Cannot read presets file {path}: {e}") from e

        try:
            parsed = PresetFile.model_validate(data)
        except ValidationError as e:
            raise PolicyValidationError(f"Invalid presets file {path}: {e}") from e

        for name, spec in parsed.presets.items():
            self.register(name, spec)

        logger.info("Loaded retry presets", path=str(path), presets=sorted(parsed.presets))
        return list(parsed.presets)


def _validate_spec(name: str, data: dict[str, Any]) -> PresetSpec:
    try:
        return PresetSpec.model_validate(data)
    except ValidationError as e:
        raise PolicyValidationError(f"Invalid preset '{name}': {e}", field=name) from e


_global_registry: PresetRegistry | None = None


def get_preset_registry() -> PresetRegistry:
    """Get the process-wide preset registry."""
    global _global_registry
    if _global_registry is None:
        _global_registry = PresetRegistry()
    return _global_registry


def set_preset_registry(registry: PresetRegistry) -> None:
    """Replace the process-wide preset registry."""
    global _global_registry
    _global_registry = registry
