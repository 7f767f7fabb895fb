"""
Bias Flows — Suspension helpers

Races a provider awaitable against a timeout and a cancellation event.
Providers are not assumed to be cancellable, so a losing call is abandoned
rather than cancelled: it keeps running and its outcome is discarded.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from .types import AttemptTimeoutError, GenerationCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _discard_outcome(task: asyncio.Future) -> None:
    # Retrieve the exception so asyncio does not report it as never retrieved.
    if not task.cancelled() and task.exception() is not None:
        logger.debug("abandoned call finished with error: %s", task.exception())


def abandon(task: asyncio.Future) -> None:
    """Let ``task`` run to completion and drop whatever it produces."""
    if task.done():
        _discard_outcome(task)
    else:
        task.add_done_callback(_discard_outcome)


async def race(
    awaitable: Awaitable[T],
    *,
    timeout_s: float | None = None,
    cancel: asyncio.Event | None = None,
) -> T:
    """Await ``awaitable`` unless the timeout or the cancel event wins first.

    Raises AttemptTimeoutError on timeout and GenerationCancelledError when
    ``cancel`` is set. Exceptions raised by ``awaitable`` propagate unchanged.
    """
    if cancel is not None and cancel.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise GenerationCancelledError()

    task = asyncio.ensure_future(awaitable)
    waiters: set[asyncio.Future] = {task}
    cancel_waiter: asyncio.Future | None = None
    if cancel is not None:
        cancel_waiter = asyncio.ensure_future(cancel.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout_s, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        abandon(task)
        raise
    finally:
        if cancel_waiter is not None and not cancel_waiter.done():
            cancel_waiter.cancel()

    if task in done:
        return task.result()

    abandon(task)
    if cancel_waiter is not None and cancel_waiter in done:
        raise GenerationCancelledError()
    raise AttemptTimeoutError(timeout_s)
