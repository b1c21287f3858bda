"""Per-backend bounded concurrency with FIFO hand-off.

One ``BackendWorkLimiter`` is created by the runtime and shared by every
caller of a backend: densification runs, title generation and health
checks all draw from the same per-backend slots.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class BackendWorkLimiter:
    """Caps simultaneously in-flight calls per backend name.

    All counters and waiter queues are mutated on the event loop thread
    with no suspension point between a check and its update, so the loop
    is the single serialization point. ``release`` hands a freed slot
    directly to the oldest waiter; the in-flight count is only
    decremented when nobody is waiting.
    """

    def __init__(self) -> None:
        self._in_flight: dict[str, int] = {}
        self._waiters: dict[str, deque[asyncio.Future[None]]] = {}

    async def acquire(self, backend: str, limit: int) -> bool:
        """Take a slot for ``backend``; returns True if the caller had to wait."""
        limit = max(1, int(limit))
        queue = self._waiters.get(backend)
        if self._in_flight.get(backend, 0) < limit and not queue:
            self._in_flight[backend] = self._in_flight.get(backend, 0) + 1
            return False

        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(backend, deque()).append(future)
        logger.debug(
            "Waiting for %s slot (in flight %d, limit %d, queued %d)",
            backend, self._in_flight.get(backend, 0), limit,
            len(self._waiters[backend]),
        )
        try:
            await future
        except asyncio.CancelledError:
            if future.done() and not future.cancelled():
                # The slot was handed over just before cancellation; pass it on.
                self.release(backend)
            else:
                self._discard_waiter(backend, future)
            raise
        return True

    def release(self, backend: str) -> None:
        """Return a slot, handing it to the oldest live waiter if any."""
        queue = self._waiters.get(backend)
        while queue:
            future = queue.popleft()
            if not future.done():
                future.set_result(None)
                if not queue:
                    self._waiters.pop(backend, None)
                return
        self._waiters.pop(backend, None)

        count = self._in_flight.get(backend, 0)
        if count <= 0:
            logger.warning("Release without matching acquire for %s", backend)
            return
        if count == 1:
            self._in_flight.pop(backend, None)
        else:
            self._in_flight[backend] = count - 1

    @asynccontextmanager
    async def slot(self, backend: str, limit: int) -> AsyncIterator[bool]:
        """Hold one slot for the duration of the block."""
        waited = await self.acquire(backend, limit)
        try:
            yield waited
        finally:
            self.release(backend)

    def in_flight(self, backend: str) -> int:
        return self._in_flight.get(backend, 0)

    def waiting(self, backend: str) -> int:
        queue = self._waiters.get(backend)
        return sum(1 for f in queue if not f.done()) if queue else 0

    def _discard_waiter(self, backend: str, future: asyncio.Future[None]) -> None:
        queue = self._waiters.get(backend)
        if not queue:
            return
        try:
            queue.remove(future)
        except ValueError:
            pass
        if not queue:
            self._waiters.pop(backend, None)
