"""
Bounded relay for job watch streams.

A JobWatch owns a background task that reads cluster watch events, turns
them into JobMonitor records and pushes them onto a bounded asyncio.Queue.
When the consumer falls behind, the relay blocks on the full queue instead of
buffering without limit. Iteration ends (the channel "closes") once the relay
stops, whether because the job was deleted, the watch was cancelled, the
deadline passed, or the stream failed; any stream failure is kept in `error`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable, Optional

from ..cluster.base import DELETED, WatchEvent
from ..errors import InternalError, SyncError
from .types import JobMonitor

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 10


class JobWatch:
    """Async iterator over JobMonitor events for one job."""

    def __init__(
        self,
        job_id: str,
        events: AsyncIterator[WatchEvent],
        translate: Callable[[WatchEvent], JobMonitor],
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        until_terminal: bool = False,
    ):
        self.job_id = job_id
        self.error: Optional[SyncError] = None
        self._events = events
        self._translate = translate
        self._until_terminal = until_terminal
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)
        self._closed = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._deadline: Optional[asyncio.TimerHandle] = None

    def start(self, timeout: Optional[float] = None) -> "JobWatch":
        self._task = asyncio.ensure_future(self._relay())
        if timeout is not None:
            self._deadline = asyncio.get_running_loop().call_later(timeout, self.cancel)
        return self

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def buffered(self) -> int:
        return self._queue.qsize()

    async def _relay(self) -> None:
        try:
            async for event in self._events:
                if event.type == DELETED:
                    break
                monitor = self._translate(event)
                # Blocks while the buffer is full
                await self._queue.put(monitor)
                if self._until_terminal and monitor.status.value in ("succeeded", "failed"):
                    break
        except SyncError as e:
            logger.warning(f"Watch for job {self.job_id} ended with error: {e}")
            self.error = e
        except Exception as e:
            logger.error(f"Watch for job {self.job_id} failed unexpectedly: {e!r}")
            self.error = InternalError(
                "job watch stream failed", component="job_watch", operation="watch_job", job_id=self.job_id, cause=e
            )
        finally:
            aclose = getattr(self._events, "aclose", None)
            if aclose is not None:
                await aclose()
            if self._deadline is not None:
                self._deadline.cancel()
            self._closed.set()

    def cancel(self) -> None:
        """Stop the relay. Already-buffered events can still be drained."""
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def aclose(self) -> None:
        self.cancel()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def __aenter__(self) -> "JobWatch":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def __aiter__(self) -> "JobWatch":
        return self

    async def __anext__(self) -> JobMonitor:
        while True:
            if not self._queue.empty():
                return self._queue.get_nowait()
            if self._closed.is_set():
                raise StopAsyncIteration

            getter = asyncio.ensure_future(self._queue.get())
            closer = asyncio.ensure_future(self._closed.wait())
            try:
                done, _ = await asyncio.wait(
                    {getter, closer}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                getter.cancel()
                closer.cancel()
            if getter in done and not getter.cancelled():
                return getter.result()
