"""
Work queue for resource keys.

Delivery is at-least-once with per-key serialization:
- a key that is already waiting is not queued twice;
- a key added while it is being processed is remembered and queued again
  once the worker calls ``done``, so it is never handed to two workers at
  the same time;
- ``add_after`` schedules a delayed add on the running loop.
"""

from __future__ import annotations

import asyncio
from typing import Hashable


class WorkQueue:
    """De-duplicating asyncio work queue."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pending: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._dirty: set[Hashable] = set()
        self._timers: set[asyncio.TimerHandle] = set()

    def add(self, key: Hashable) -> None:
        """Queue *key* unless it is already waiting."""
        if key in self._pending:
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        self._pending.add(key)
        self._queue.put_nowait(key)

    def add_after(self, key: Hashable, delay: float) -> None:
        """Queue *key* after *delay* seconds."""
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()

        def fire() -> None:
            self._timers.discard(handle)
            self.add(key)

        handle = loop.call_later(delay, fire)
        self._timers.add(handle)

    async def get(self) -> Hashable:
        """Wait for the next key and mark it as being processed."""
        key = await self._queue.get()
        self._pending.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: Hashable) -> None:
        """Finish processing *key*; re-queue it if it was added meanwhile."""
        self._processing.discard(key)
        self._queue.task_done()
        if key in self._dirty:
            self._dirty.discard(key)
            self.add(key)

    def is_idle(self) -> bool:
        return not self._pending and not self._processing

    @property
    def scheduled(self) -> int:
        """Number of delayed adds that have not fired yet."""
        return len(self._timers)

    def shutdown(self) -> None:
        """Cancel every delayed add."""
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._pending
