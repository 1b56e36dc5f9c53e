"""
Per-attempt timeout guard.

The attempt runs as its own task and races the deadline; whichever
finishes first wins. When the deadline wins the attempt task is cancelled,
which stops cooperative coroutines at their next await. Work the coroutine
handed to a thread (``asyncio.to_thread``, executors) keeps running to
completion unobserved.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import TYPE_CHECKING, Any, TypeVar

from lims_resilience.errors import AttemptTimeoutError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")


async def call_operation(operation: Callable[[], Awaitable[T] | T]) -> T:
    """Invoke an operation and await its result if it returned an awaitable.

    Exceptions raised while creating the awaitable surface here, so
    synchronous failures are handled exactly like asynchronous ones.
    """
    result: Any = operation()
    if inspect.isawaitable(result):
        return await result
    return result


async def run_with_timeout(
    operation: Callable[[], Awaitable[T] | T],
    timeout_ms: float | None,
    name: str | None = None,
) -> T:
    """Run one attempt, bounded by an optional deadline.

    Args:
        operation: Zero-argument callable returning an awaitable (or a value)
        timeout_ms: Deadline in milliseconds; None runs to completion
        name: Operation name used in the timeout message

    Returns:
        The operation's result

    Raises:
        AttemptTimeoutError: If the deadline elapsed first
    """
    if timeout_ms is None:
        return await call_operation(operation)

    task = asyncio.ensure_future(call_operation(operation))
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000.0)
    finally:
        # Also reached when the caller itself is cancelled
        if not task.done():
            task.cancel()
            task.add_done_callback(_discard_outcome)

    if task in done:
        return task.result()

    raise AttemptTimeoutError(timeout_ms, name)


def _discard_outcome(task: asyncio.Future[Any]) -> None:
    """Retrieve the abandoned attempt's outcome so asyncio does not warn about it."""
    if not task.cancelled():
        task.exception()
