"""
Keyed work queue for the control loop.

- a key is queued at most once at a time
- a key handed to a worker is never handed to a second worker until done()
- a key added while in flight is re-queued when done() is called
- add_after schedules a delayed add; the earliest pending deadline wins
"""

from __future__ import annotations

import asyncio
from typing import Dict, Optional, Set

_SHUTDOWN = object()


class ShutDown(Exception):
    """The queue was shut down while waiting for a key."""


class WorkQueue:
    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._queued: Set[str] = set()
        self._processing: Set[str] = set()
        self._dirty: Set[str] = set()
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._deadlines: Dict[str, float] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queued)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def in_flight(self) -> int:
        return len(self._processing)

    @property
    def delayed(self) -> int:
        return len(self._timers)

    def add(self, key: str) -> None:
        if self._shutting_down:
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    def add_after(self, key: str, delay: float) -> None:
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        existing = self._deadlines.get(key)
        if existing is not None and existing <= deadline:
            return
        if key in self._timers:
            self._timers.pop(key).cancel()

        self._deadlines[key] = deadline
        self._timers[key] = loop.call_at(deadline, self._fire, key)

    def _fire(self, key: str) -> None:
        self._timers.pop(key, None)
        self._deadlines.pop(key, None)
        self.add(key)

    async def get(self) -> str:
        """Wait for the next key and mark it in flight."""
        item = await self._queue.get()
        if item is _SHUTDOWN:
            # wake the next waiter too
            self._queue.put_nowait(_SHUTDOWN)
            raise ShutDown()
        self._queued.discard(item)
        self._processing.add(item)
        return item

    def done(self, key: str) -> None:
        self._processing.discard(key)
        if key in self._dirty:
            self._dirty.discard(key)
            self.add(key)

    def shutdown(self) -> None:
        self._shutting_down = True
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._deadlines.clear()
        self._queue.put_nowait(_SHUTDOWN)
