"""Per-session outbound event queue."""

import asyncio
from typing import Generic, List, Optional, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class EventQueue(Generic[T]):
    """Ordered single-producer queue that drops the oldest event when full.

    A slow or absent consumer never blocks the producer; it loses the
    oldest undelivered events instead, and ``dropped`` counts them.
    """

    def __init__(self, maxsize: int = 1000):
        self._queue: "asyncio.Queue[T]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def put(self, event: T) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> Optional[T]:
        """Next event, or None if nothing arrived within ``timeout``."""
        if timeout is None:
            return await self._queue.get()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def drain(self) -> List[T]:
        """Everything queued right now, oldest first."""
        events = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def qsize(self) -> int:
        return self._queue.qsize()

    def empty(self) -> bool:
        return self._queue.empty()
