"""Tests for resilience module."""

import random
import threading

import pytest

from lims_resilience.errors import (
    CircuitBreakerOpenError,
    PolicyValidationError,
    UnknownPresetError,
    default_should_retry,
)
from lims_resilience.resilience import (
    BUILTIN_PRESETS,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
    Permit,
    PresetRegistry,
    RetryEvent,
    RetryPolicy,
    StatisticsRecorder,
    calculate_delay,
    exponential_delay_ms,
)


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_default_policy(self) -> None:
        """Test engine defaults."""
        policy = RetryPolicy()
        assert policy.max_retries == 3
        assert policy.max_attempts == 4
        assert policy.base_delay_ms == 1000
        assert policy.max_delay_ms == 30000
        assert policy.backoff_multiplier == 2.0
        assert policy.enable_jitter is True
        assert policy.timeout_ms is None
        assert policy.enable_circuit_breaker is False
        assert policy.policy_key == "default"
        assert policy.classifier is default_should_retry

    def test_no_retry(self) -> None:
        """Test single-attempt policy."""
        assert RetryPolicy.no_retry().max_attempts == 1

    def test_custom_predicate_replaces_default(self) -> None:
        """Test a custom predicate fully replaces the classifier."""

        def predicate(error: BaseException) -> bool:
            return True

        assert RetryPolicy(should_retry=predicate).classifier is predicate

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_retries": -1},
            {"base_delay_ms": 5000, "max_delay_ms": 1000},
            {"backoff_multiplier": 0.5},
            {"timeout_ms": 0},
            {"enable_circuit_breaker": True, "circuit_breaker_threshold": 0},
            {"circuit_breaker_cooldown_ms": -1},
            {"policy_key": ""},
        ],
    )
    def test_validation(self, kwargs: dict) -> None:
        """Test invalid configurations are rejected."""
        with pytest.raises(PolicyValidationError):
            RetryPolicy(**kwargs)

    def test_merge(self) -> None:
        """Test merging overrides keeps the original untouched."""
        base = RetryPolicy()
        merged = base.merge(max_retries=1, timeout_ms=500)
        assert merged.max_retries == 1
        assert merged.timeout_ms == 500
        assert base.max_retries == 3
        assert base.merge() is base

    def test_merge_ignores_none(self) -> None:
        """Test None overrides keep the existing value."""
        merged = RetryPolicy(max_retries=2).merge(max_retries=None, policy_key="fhir")
        assert merged.max_retries == 2
        assert merged.policy_key == "fhir"

    def test_merge_unknown_field(self) -> None:
        """Test unknown fields are rejected."""
        with pytest.raises(PolicyValidationError):
            RetryPolicy().merge(retries=3)

    def test_from_dict_camel_case(self) -> None:
        """Test settings with the original camelCase keys."""
        policy = RetryPolicy.from_dict(
            {
                "maxRetries": 5,
                "backoffMs": 200,
                "maxBackoffMs": 4000,
                "backoffMultiplier": 1.5,
                "enableJitter": False,
                "timeoutMs": 1500,
                "enableCircuitBreaker": True,
                "circuitBreakerThreshold": 3,
                "policyKey": "candid",
            }
        )
        assert policy.max_retries == 5
        assert policy.base_delay_ms == 200
        assert policy.max_delay_ms == 4000
        assert policy.backoff_multiplier == 1.5
        assert policy.enable_jitter is False
        assert policy.timeout_ms == 1500
        assert policy.enable_circuit_breaker is True
        assert policy.circuit_breaker_threshold == 3
        assert policy.policy_key == "candid"

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test policy from environment variables."""
        monkeypatch.setenv("LIMS_RETRY_MAX_RETRIES", "6")
        monkeypatch.setenv("LIMS_RETRY_BASE_DELAY_MS", "250")
        monkeypatch.setenv("LIMS_RETRY_JITTER", "false")
        monkeypatch.setenv("LIMS_RETRY_TIMEOUT_MS", "8000")
        monkeypatch.setenv("LIMS_BREAKER_ENABLED", "yes")
        monkeypatch.setenv("LIMS_BREAKER_THRESHOLD", "4")
        monkeypatch.delenv("LIMS_RETRY_MAX_DELAY_MS", raising=False)

        policy = RetryPolicy.from_env()
        assert policy.max_retries == 6
        assert policy.base_delay_ms == 250
        assert policy.max_delay_ms == 30000
        assert policy.enable_jitter is False
        assert policy.timeout_ms == 8000
        assert policy.enable_circuit_breaker is True
        assert policy.circuit_breaker_threshold == 4


class TestBackoff:
    """Tests for backoff delay calculation."""

    def test_exponential_without_jitter(self) -> None:
        """Test exact exponential delays."""
        policy = RetryPolicy(base_delay_ms=1000, max_delay_ms=60000, enable_jitter=False)
        assert calculate_delay(0, policy) == 1.0
        assert calculate_delay(1, policy) == 2.0
        assert calculate_delay(2, policy) == 4.0

    def test_clamped_to_max(self) -> None:
        """Test delay never exceeds the ceiling."""
        policy = RetryPolicy(base_delay_ms=1000, max_delay_ms=5000, enable_jitter=False)
        assert calculate_delay(10, policy) == 5.0
        assert calculate_delay(5000, policy) == 5.0

    def test_formula_for_many_attempts(self) -> None:
        """Test min(base * multiplier^attempt, max) across attempts."""
        policy = RetryPolicy(
            base_delay_ms=100, max_delay_ms=20000, backoff_multiplier=1.5, enable_jitter=False
        )
        for attempt in range(20):
            expected = min(100 * 1.5**attempt, 20000) / 1000
            assert calculate_delay(attempt, policy) == pytest.approx(expected)

    def test_jitter_bounds(self) -> None:
        """Test jitter only ever adds up to 10% of the exponential term."""
        policy = RetryPolicy(base_delay_ms=100, max_delay_ms=10000, enable_jitter=True)
        rng = random.Random(1234)
        for attempt in range(12):
            term = exponential_delay_ms(attempt, policy)
            for _ in range(50):
                delay_ms = calculate_delay(attempt, policy, rng) * 1000
                assert min(term, 10000) <= delay_ms + 1e-9
                assert delay_ms <= min(1.1 * term, 10000) + 1e-9

    def test_jitter_varies(self) -> None:
        """Test jittered delays are not all identical."""
        policy = RetryPolicy(base_delay_ms=100, enable_jitter=True)
        rng = random.Random(99)
        assert len({calculate_delay(0, policy, rng) for _ in range(10)}) > 1

    def test_negative_attempt(self) -> None:
        """Test negative attempts are rejected."""
        with pytest.raises(ValueError):
            calculate_delay(-1, RetryPolicy())


class TestPresets:
    """Tests for policy presets."""

    def test_api_preset(self) -> None:
        """Test api preset values."""
        policy = RetryPolicy.preset("api")
        assert policy.max_retries == 3
        assert policy.enable_jitter is True
        assert 1.5 <= policy.backoff_multiplier <= 2
        assert 500 <= policy.base_delay_ms <= 1000
        assert policy.policy_key == "api"

    @pytest.mark.parametrize(
        ("name", "retries", "base", "multiplier", "jitter"),
        [
            ("network", 5, 500, 1.5, True),
            ("database", 2, 2000, 2, False),
            ("file", 3, 100, 1.2, False),
            ("critical", 10, 2000, 2, True),
            ("background", 2, 5000, 3, True),
        ],
    )
    def test_builtin_presets(
        self, name: str, retries: int, base: float, multiplier: float, jitter: bool
    ) -> None:
        """Test the built-in preset table."""
        policy = RetryPolicy.preset(name)
        assert policy.max_retries == retries
        assert policy.base_delay_ms == base
        assert policy.backoff_multiplier == multiplier
        assert policy.enable_jitter is jitter

    def test_preset_overrides(self) -> None:
        """Test overrides are merged over the preset."""
        policy = RetryPolicy.preset("network", max_retries=1, policy_key="fhir")
        assert policy.max_retries == 1
        assert policy.backoff_multiplier == 1.5
        assert policy.policy_key == "fhir"
        assert RetryPolicy.preset("network").max_retries == 5

    def test_preset_resolved_once(self) -> None:
        """Test presets are resolved once and cached."""
        registry = PresetRegistry()
        assert registry.get("file") is registry.get("file")

    def test_unknown_preset(self) -> None:
        """Test unknown preset names raise."""
        with pytest.raises(UnknownPresetError):
            RetryPolicy.preset("nightly")

    def test_register(self) -> None:
        """Test registering a preset from a mapping."""
        registry = PresetRegistry()
        registry.register("eligibility", {"maxRetries": 1, "baseDelayMs": 300})
        policy = RetryPolicy.preset("eligibility", registry=registry)
        assert policy.max_retries == 1
        assert policy.base_delay_ms == 300
        assert policy.policy_key == "eligibility"
        assert "eligibility" in registry

    def test_register_invalid(self) -> None:
        """Test invalid preset mappings are rejected."""
        registry = PresetRegistry()
        with pytest.raises(PolicyValidationError):
            registry.register("broken", {"max_retries": -2})
        with pytest.raises(PolicyValidationError):
            registry.register("typo", {"max_retrys": 2})

    def test_load_file(self, tmp_path) -> None:
        """Test loading presets from YAML."""
        path = tmp_path / "presets.yaml"
        path.write_text(
            "presets:\n"
            "  clearinghouse:\n"
            "    max_retries: 4\n"
            "    base_delay_ms: 1500\n"
            "    max_delay_ms: 20000\n"
            "    enable_circuit_breaker: true\n"
            "    circuit_breaker_threshold: 3\n"
            "  stripe:\n"
            "    maxRetries: 2\n"
            "    timeoutMs: 10000\n",
            encoding="utf-8",
        )
        registry = PresetRegistry()
        loaded = registry.load_file(path)

        assert sorted(loaded) == ["clearinghouse", "stripe"]
        clearinghouse = registry.get("clearinghouse")
        assert clearinghouse.max_retries == 4
        assert clearinghouse.enable_circuit_breaker is True
        assert clearinghouse.circuit_breaker_threshold == 3
        assert registry.get("stripe").timeout_ms == 10000
        assert "api" in registry.names

    def test_load_file_invalid(self, tmp_path) -> None:
        """Test malformed preset files raise PolicyValidationError."""
        path = tmp_path / "presets.yaml"
        path.write_text("presets:\n  bad:\n    backoff_multiplier: 0.1\n", encoding="utf-8")
        with pytest.raises(PolicyValidationError):
            PresetRegistry().load_file(path)

    def test_load_missing_file(self, tmp_path) -> None:
        """Test a missing file raises PolicyValidationError."""
        with pytest.raises(PolicyValidationError):
            PresetRegistry().load_file(tmp_path / "absent.yaml")

    def test_builtin_table_complete(self) -> None:
        """Test every documented preset is built in."""
        assert set(BUILTIN_PRESETS) == {
            "network", "api", "database", "file", "critical", "background"
        }


class TestCircuitBreaker:
    """Tests for CircuitBreaker."""

    def test_initial_state(self) -> None:
        """Test breaker starts closed."""
        breaker = CircuitBreaker("fhir")
        assert breaker.state == CircuitState.CLOSED
        assert breaker.acquire() == Permit.NORMAL

    def test_opens_at_threshold(self, fake_clock) -> None:
        """Test breaker opens after threshold consecutive failures."""
        breaker = CircuitBreaker("fhir", CircuitBreakerConfig(failure_threshold=3), clock=fake_clock)
        breaker.record_failure(Permit.NORMAL)
        breaker.record_failure(Permit.NORMAL)
        assert breaker.state == CircuitState.CLOSED
        breaker.record_failure(Permit.NORMAL)
        assert breaker.state == CircuitState.OPEN
        assert breaker.opened_at == fake_clock.now

        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            breaker.acquire()
        assert exc_info.value.policy_key == "fhir"

    def test_success_resets_count(self) -> None:
        """Test a success in closed state resets consecutive failures."""
        breaker = CircuitBreaker("fhir", CircuitBreakerConfig(failure_threshold=3))
        breaker.record_failure(Permit.NORMAL)
        breaker.record_failure(Permit.NORMAL)
        breaker.record_success(Permit.NORMAL)
        assert breaker.consecutive_failures == 0
        breaker.record_failure(Permit.NORMAL)
        breaker.record_failure(Permit.NORMAL)
        assert breaker.state == CircuitState.CLOSED

    def test_half_open_trial_success(self, fake_clock) -> None:
        """Test cooldown leads to a single trial that closes the circuit."""
        config = CircuitBreakerConfig(failure_threshold=1, cooldown_seconds=30)
        breaker = CircuitBreaker("stripe", config, clock=fake_clock)
        breaker.record_failure(Permit.NORMAL)

        fake_clock.advance(29)
        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            breaker.acquire()
        assert exc_info.value.time_until_retry == pytest.approx(1.0)

        fake_clock.advance(1)
        assert breaker.acquire() == Permit.TRIAL
        assert breaker.state == CircuitState.HALF_OPEN

        # Only one trial at a time
        with pytest.raises(CircuitBreakerOpenError):
            breaker.acquire()

        breaker.record_success(Permit.TRIAL)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0
        assert breaker.acquire() == Permit.NORMAL

    def test_half_open_trial_failure(self, fake_clock) -> None:
        """Test a failed trial re-opens the circuit with a fresh timestamp."""
        config = CircuitBreakerConfig(failure_threshold=1, cooldown_seconds=10)
        breaker = CircuitBreaker("stripe", config, clock=fake_clock)
        breaker.record_failure(Permit.NORMAL)
        first_opened = breaker.opened_at

        fake_clock.advance(10)
        assert breaker.acquire() == Permit.TRIAL
        breaker.record_failure(Permit.TRIAL)

        assert breaker.state == CircuitState.OPEN
        assert breaker.opened_at == first_opened + 10
        with pytest.raises(CircuitBreakerOpenError):
            breaker.acquire()

    def test_abandoned_trial(self, fake_clock) -> None:
        """Test an abandoned trial lets the next caller probe."""
        config = CircuitBreakerConfig(failure_threshold=1, cooldown_seconds=0)
        breaker = CircuitBreaker("fhir", config, clock=fake_clock)
        breaker.record_failure(Permit.NORMAL)
        assert breaker.acquire() == Permit.TRIAL
        breaker.abandon_trial()
        assert breaker.acquire() == Permit.TRIAL

    def test_no_cooldown_stays_open(self, fake_clock) -> None:
        """Test a breaker without cooldown never recovers on its own."""
        config = CircuitBreakerConfig(failure_threshold=1, cooldown_seconds=None)
        breaker = CircuitBreaker("fhir", config, clock=fake_clock)
        breaker.record_failure(Permit.NORMAL)
        fake_clock.advance(10**6)
        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            breaker.acquire()
        assert exc_info.value.time_until_retry is None

        breaker.reset()
        assert breaker.state == CircuitState.CLOSED

    def test_late_failures_ignored_when_open(self, fake_clock) -> None:
        """Test failures reported while open do not move the cooldown."""
        config = CircuitBreakerConfig(failure_threshold=1, cooldown_seconds=5)
        breaker = CircuitBreaker("fhir", config, clock=fake_clock)
        breaker.record_failure(Permit.NORMAL)
        opened_at = breaker.opened_at
        fake_clock.advance(3)
        breaker.record_failure(Permit.NORMAL)
        assert breaker.opened_at == opened_at

    def test_late_normal_failure_does_not_end_trial(self, fake_clock) -> None:
        """Test a normal call failing during half-open leaves the trial in flight."""
        config = CircuitBreakerConfig(failure_threshold=1, cooldown_seconds=10)
        breaker = CircuitBreaker("fhir", config, clock=fake_clock)
        breaker.record_failure(Permit.NORMAL)
        fake_clock.advance(10)
        assert breaker.acquire() == Permit.TRIAL

        breaker.record_failure(Permit.NORMAL)
        assert breaker.state == CircuitState.HALF_OPEN

        fake_clock.advance(10)
        with pytest.raises(CircuitBreakerOpenError):
            breaker.acquire()

        breaker.record_success(Permit.TRIAL)
        assert breaker.state == CircuitState.CLOSED

    def test_late_normal_success_does_not_close(self, fake_clock) -> None:
        """Test only the trial's success closes a half-open circuit."""
        config = CircuitBreakerConfig(failure_threshold=1, cooldown_seconds=10)
        breaker = CircuitBreaker("fhir", config, clock=fake_clock)
        breaker.record_failure(Permit.NORMAL)
        fake_clock.advance(10)
        assert breaker.acquire() == Permit.TRIAL

        breaker.record_success(Permit.NORMAL)
        assert breaker.state == CircuitState.HALF_OPEN

        breaker.record_failure(Permit.TRIAL)
        assert breaker.state == CircuitState.OPEN

    def test_stale_trial_outcome_after_reset(self, fake_clock) -> None:
        """Test a trial finishing after a manual reset does not re-open the circuit."""
        config = CircuitBreakerConfig(failure_threshold=1, cooldown_seconds=0)
        breaker = CircuitBreaker("fhir", config, clock=fake_clock)
        breaker.record_failure(Permit.NORMAL)
        assert breaker.acquire() == Permit.TRIAL

        breaker.reset()
        breaker.record_failure(Permit.TRIAL)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0

    def test_describe(self, fake_clock) -> None:
        """Test breaker snapshot."""
        breaker = CircuitBreaker("fhir", CircuitBreakerConfig(failure_threshold=1), clock=fake_clock)
        breaker.record_failure(Permit.NORMAL)
        with pytest.raises(CircuitBreakerOpenError):
            breaker.acquire()
        snapshot = breaker.describe()
        assert snapshot.state == CircuitState.OPEN
        assert snapshot.times_opened == 1
        assert snapshot.rejected_calls == 1
        assert snapshot.time_until_retry == pytest.approx(30.0)

    def test_config_from_policy(self) -> None:
        """Test breaker settings derived from a policy."""
        policy = RetryPolicy(circuit_breaker_threshold=7, circuit_breaker_cooldown_ms=1500)
        config = CircuitBreakerConfig.from_policy(policy)
        assert config.failure_threshold == 7
        assert config.cooldown_seconds == 1.5
        no_recovery = CircuitBreakerConfig.from_policy(policy.merge(circuit_breaker_cooldown_ms=None))
        assert no_recovery.cooldown_seconds is None


class TestCircuitBreakerRegistry:
    """Tests for CircuitBreakerRegistry."""

    def test_lazy_creation_per_key(self) -> None:
        """Test one breaker per key, created on first use."""
        registry = CircuitBreakerRegistry()
        assert registry.find("fhir") is None
        fhir = registry.get("fhir", CircuitBreakerConfig(failure_threshold=1))
        assert registry.get("fhir") is fhir
        assert registry.get("stripe") is not fhir
        assert len(registry) == 2

    def test_keys_are_independent(self) -> None:
        """Test tripping one key leaves others closed."""
        registry = CircuitBreakerRegistry()
        registry.get("fhir", CircuitBreakerConfig(failure_threshold=1)).record_failure(Permit.NORMAL)
        assert registry.get("fhir").state == CircuitState.OPEN
        assert registry.get("stripe").state == CircuitState.CLOSED

    def test_reset(self) -> None:
        """Test resetting one key or all."""
        registry = CircuitBreakerRegistry()
        for key in ("fhir", "stripe"):
            registry.get(key, CircuitBreakerConfig(failure_threshold=1)).record_failure(Permit.NORMAL)

        registry.reset("fhir")
        assert registry.get("fhir").state == CircuitState.CLOSED
        assert registry.get("stripe").state == CircuitState.OPEN

        registry.reset()
        assert all(s.state == CircuitState.CLOSED for s in registry.snapshot().values())


class TestStatisticsRecorder:
    """Tests for StatisticsRecorder."""

    def test_record_and_snapshot(self) -> None:
        """Test counters and per-key breakdown."""
        stats = StatisticsRecorder()
        stats.record(RetryEvent.STARTED, "fhir")
        stats.record(RetryEvent.RETRIED, "fhir")
        stats.record("succeeded", "fhir")
        stats.record(RetryEvent.STARTED)
        stats.record(RetryEvent.FAILED)

        snapshot = stats.snapshot()
        assert snapshot.total_operations == 2
        assert snapshot.total_retries == 1
        assert snapshot.successful_operations == 1
        assert snapshot.failed_operations == 1
        assert snapshot.success_rate == 0.5
        assert snapshot.by_policy["fhir"]["total_operations"] == 1
        assert snapshot.to_dict()["totalRetries"] == 1

    def test_reset(self) -> None:
        """Test reset zeroes all counters."""
        stats = StatisticsRecorder()
        stats.record(RetryEvent.STARTED, "fhir")
        stats.reset()
        snapshot = stats.snapshot()
        assert snapshot.total_operations == 0
        assert snapshot.by_policy == {}

    def test_thread_safety(self) -> None:
        """Test no increments are lost under concurrent threads."""
        stats = StatisticsRecorder()

        def worker() -> None:
            for _ in range(1000):
                stats.record(RetryEvent.RETRIED, "fhir")

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert stats.snapshot().total_retries == 8000

    def test_to_prometheus(self) -> None:
        """Test Prometheus export."""
        stats = StatisticsRecorder()
        stats.record(RetryEvent.STARTED, "fhir")
        output = stats.to_prometheus()
        assert "# TYPE lims_retry_total_operations counter" in output
        assert "lims_retry_total_operations 1" in output
        assert 'lims_retry_total_operations{policy_key="fhir"} 1' in output
