"""Per-key coordination primitives for the cache.

``SingleFlight`` collapses concurrent population of the same key into one
call. ``KeyedLock`` serializes read-modify-write sequences on one key.
Neither holds a lock across keys; bookkeeping for a key exists only while
someone is using it.

Both are bound to the running event loop. State transitions never await
between checking and updating the mapping, which makes them atomic on the
loop.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def _consume_exception(future: asyncio.Future) -> None:
    # Every subscriber may have given up; mark the error as retrieved
    if not future.cancelled():
        future.exception()


@dataclass
class _Call:
    """One in-flight population round."""
    future: asyncio.Future
    task: asyncio.Task
    subscribers: int = 1


class SingleFlight:
    """At most one in-flight computation per key, shared by all callers.

    States per key:
        Idle (absent from ``_calls``) -> Populating (present) -> Idle

    The computation runs in its own task, so a subscriber that times out or
    is cancelled only stops waiting. The key returns to Idle before the
    result is published; errors go to every subscriber of that round and
    are never remembered.
    """

    def __init__(self):
        self._calls: Dict[str, _Call] = {}

    async def do(self, key: str, fn: Callable[[], Awaitable[T]],
                 timeout: Optional[float] = None) -> T:
        """Run ``fn`` for ``key`` unless a run is already in flight, then wait.

        Raises:
            asyncio.TimeoutError: this caller waited longer than ``timeout``.
                The computation keeps running for the other subscribers.
            Exception: whatever ``fn`` raised.
        """
        call = self._calls.get(key)
        if call is None:
            loop = asyncio.get_running_loop()
            future = loop.create_future()
            future.add_done_callback(_consume_exception)
            task = loop.create_task(self._run(key, fn, future))
            call = self._calls[key] = _Call(future=future, task=task)
            logger.debug("Single flight started", cache_key=key)
        else:
            call.subscribers += 1
            logger.debug("Single flight joined", cache_key=key, subscribers=call.subscribers)

        waiter = asyncio.shield(call.future)
        try:
            if timeout is None:
                return await waiter
            return await asyncio.wait_for(waiter, timeout)
        finally:
            call.subscribers -= 1

    async def _run(self, key: str, fn: Callable[[], Awaitable[Any]],
                   future: asyncio.Future) -> None:
        try:
            result = await fn()
        except asyncio.CancelledError:
            self._calls.pop(key, None)
            future.cancel()
            raise
        except Exception as e:
            self._calls.pop(key, None)
            logger.debug("Single flight failed", cache_key=key, error=str(e))
            future.set_exception(e)
        else:
            self._calls.pop(key, None)
            future.set_result(result)

    def in_flight(self, key: Optional[str] = None) -> int:
        """Number of keys currently populating, or subscribers for ``key``."""
        if key is None:
            return len(self._calls)
        call = self._calls.get(key)
        return call.subscribers if call else 0

    def keys(self) -> List[str]:
        return list(self._calls)

    async def cancel_all(self) -> None:
        """Cancel every in-flight computation (shutdown only)."""
        tasks = [call.task for call in self._calls.values()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class KeyedLock:
    """Reference-counted ``asyncio.Lock`` per key."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
