"""
Backoff delay calculation.

delay = min(base_delay * multiplier^attempt + jitter, max_delay), where
jitter is drawn uniformly from [0, 10% of the exponential term].
"""

from __future__ import annotations

import random
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from lims_resilience.resilience.policy import RetryPolicy

JITTER_RATIO = 0.1


def exponential_delay_ms(attempt: int, policy: RetryPolicy) -> float:
    """Exponential term of the backoff, before jitter and clamping."""
    return policy.base_delay_ms * (policy.backoff_multiplier ** attempt)


def calculate_delay(
    attempt: int,
    policy: RetryPolicy,
    rng: random.Random | None = None,
) -> float:
    """Calculate the delay before the retry that follows ``attempt``.

    Args:
        attempt: Index of the attempt that just failed (0-based)
        policy: Retry policy supplying base, multiplier, ceiling and jitter
        rng: Random source for jitter (defaults to the ``random`` module)

    Returns:
        Delay in seconds
    """
    if attempt < 0:
        raise ValueError("attempt must be >= 0")

    try:
        delay_ms = exponential_delay_ms(attempt, policy)
    except OverflowError:
        delay_ms = float("inf")

    if policy.enable_jitter and delay_ms < policy.max_delay_ms:
        # Positive jitter only: never shorter than the exponential term
        delay_ms += (rng or random).uniform(0, JITTER_RATIO * delay_ms)

    return min(delay_ms, policy.max_delay_ms) / 1000.0
