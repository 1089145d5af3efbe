"""Generic coalescing batch loader.

Every :meth:`BatchLoader.load` issued during one pass of the event loop
is queued and dispatched together as a single call to the batch
function on the next loop iteration.  Results are cached per key for
the life of the loader, which is one request; writers call
:meth:`BatchLoader.clear` for the key they changed.

The batch function receives de-duplicated keys and must return one
value per key, in the same order.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable, Iterable, Sequence
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

BatchFn = Callable[[list[K]], Awaitable[Sequence[V]]]


class BatchLoader(Generic[K, V]):
    """Coalesce single-key lookups into one batch fetch per loop tick.

    Parameters
    ----------
    batch_fn:
        Coroutine taking a list of unique keys and returning a sequence
        of values aligned with those keys.
    name:
        Label used in log messages.
    """

    def __init__(self, batch_fn: BatchFn[K, V], *, name: str = "loader") -> None:
        self._batch_fn = batch_fn
        self.name = name
        self._cache: dict[K, asyncio.Future[V]] = {}
        self._queue: list[tuple[K, asyncio.Future[V]]] = []
        self._dispatch_scheduled = False
        self._tasks: set[asyncio.Task[None]] = set()

    def load(self, key: K) -> asyncio.Future[V]:
        """Return a future resolving to the value for *key*."""
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        loop = asyncio.get_running_loop()
        future: asyncio.Future[V] = loop.create_future()
        self._cache[key] = future
        self._queue.append((key, future))
        if not self._dispatch_scheduled:
            self._dispatch_scheduled = True
            loop.call_soon(self._dispatch)
        return future

    async def load_many(self, keys: Iterable[K]) -> list[V]:
        """Load several keys; the result preserves the requested order."""
        return list(await asyncio.gather(*(self.load(key) for key in keys)))

    def clear(self, key: K) -> None:
        """Drop the cached value for a single key."""
        self._cache.pop(key, None)

    def clear_all(self) -> None:
        self._cache.clear()

    def prime(self, key: K, value: V) -> None:
        """Seed the cache with a value already in hand."""
        if key in self._cache:
            return
        future: asyncio.Future[V] = asyncio.get_running_loop().create_future()
        future.set_result(value)
        self._cache[key] = future

    # -- dispatch ----------------------------------------------------------

    def _dispatch(self) -> None:
        queue, self._queue = self._queue, []
        self._dispatch_scheduled = False
        if not queue:
            return
        task = asyncio.get_running_loop().create_task(self._run_batch(queue))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_batch(self, queue: list[tuple[K, asyncio.Future[V]]]) -> None:
        keys = [key for key, _ in queue]
        try:
            values = await self._batch_fn(keys)
            if len(values) != len(keys):
                raise ValueError(f"{self.name}: batch function returned {len(values)} values for {len(keys)} keys")
        except Exception as exc:
            logger.debug("Batch %s failed for %d keys", self.name, len(keys), exc_info=True)
            for key, future in queue:
                # Failures are not cached; a later load retries.
                if self._cache.get(key) is future:
                    del self._cache[key]
                if not future.done():
                    future.set_exception(exc)
            return

        for (_, future), value in zip(queue, values, strict=True):
            if not future.done():
                future.set_result(value)
