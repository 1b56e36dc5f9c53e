"""Root pytest fixtures for lims-resilience tests."""

from __future__ import annotations

import asyncio
import random

import pytest

from lims_resilience.resilience import (
    ResilienceRuntime,
    get_default_runtime,
    set_default_runtime,
)


class RecordingSleep:
    """Backoff sleep that records requested delays and only yields control."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def runtime(recording_sleep: RecordingSleep, fake_clock: FakeClock) -> ResilienceRuntime:
    """Isolated runtime with instant backoff, seeded jitter and a fake clock."""
    return ResilienceRuntime(sleep=recording_sleep, rng=random.Random(42), clock=fake_clock)


@pytest.fixture
def default_runtime(runtime: ResilienceRuntime):
    """Install the isolated runtime as the process default for one test."""
    previous = get_default_runtime()
    set_default_runtime(runtime)
    yield runtime
    set_default_runtime(previous)
