# =============================================================================
# Single-Flight
# =============================================================================
# Collapses concurrent identical calls into one execution.
#
# The first caller for a key starts the work as a task; callers arriving
# while it runs await the same task and get the same result (or the same
# exception). Once the task finishes the key is forgotten, so the next call
# runs again.
#
# A caller being cancelled does not cancel the shared work: the others are
# still waiting on it.
# =============================================================================

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """
    Keyed in-flight deduplication.

    Usage:
        >>> flight = SingleFlight()
        >>> result = await flight.run(key, lambda: do_work())
    """

    def __init__(self) -> None:
        self._inflight: dict[Hashable, asyncio.Task[T]] = {}

    def __len__(self) -> int:
        return len(self._inflight)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._inflight

    async def run(self, key: Hashable, func: Callable[[], Awaitable[T]]) -> T:
        """
        Run func() unless a call for the same key is already in flight.

        Args:
            key: Identity of the call.
            func: Zero-argument coroutine factory doing the work.

        Returns:
            The result of the (possibly shared) execution.
        """
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(func())
            self._inflight[key] = task
            task.add_done_callback(lambda t, key=key: self._forget(key, t))
        else:
            logger.debug(f"Joining in-flight call for {key!r}")

        return await asyncio.shield(task)

    def _forget(self, key: Hashable, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Retrieve the exception so a run whose callers were all cancelled
        # doesn't log "exception was never retrieved"
        if not task.cancelled():
            task.exception()
