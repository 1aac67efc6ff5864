"""A bounded queue that drops the oldest item when full.

Only the latest state matters for reconciliation, so under an event storm it
is better to lose old events than to grow without bound or block producers.
"""

import asyncio
from collections import deque
import logging
from typing import Generic, TypeVar

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

__all__ = ["BoundedEventQueue"]


class BoundedEventQueue(Generic[T]):
    """Single consumer queue with drop-oldest overflow."""

    def __init__(self, maxsize: int, name: str = "") -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self._items: deque[T] = deque()
        self._maxsize = maxsize
        self._name = name
        self._not_empty = asyncio.Event()
        self.dropped = 0

    def __len__(self) -> int:
        return len(self._items)

    def put_nowait(self, item: T) -> None:
        """Add an item, discarding the oldest one if the queue is full."""
        if len(self._items) >= self._maxsize:
            dropped = self._items.popleft()
            self.dropped += 1
            _LOGGER.debug("Queue %s full, dropped oldest event %s", self._name, dropped)
        self._items.append(item)
        self._not_empty.set()

    def get_nowait(self) -> T:
        """Remove and return an item, raising asyncio.QueueEmpty if empty."""
        if not self._items:
            raise asyncio.QueueEmpty()
        item = self._items.popleft()
        if not self._items:
            self._not_empty.clear()
        return item

    async def get(self) -> T:
        """Wait for and return the next item."""
        while not self._items:
            await self._not_empty.wait()
        return self.get_nowait()

    def drain(self) -> list[T]:
        """Remove and return every queued item."""
        items = list(self._items)
        self._items.clear()
        self._not_empty.clear()
        return items
