from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DrainQueue(Generic[T]):
    """FIFO drained by at most one task at a time."""

    def __init__(self, name: str, handler: Callable[[T], Awaitable[None]]) -> None:
        self.name = name
        self._handler = handler
        self._items: deque[T] = deque()
        self._task: asyncio.Task[None] | None = None
        self.drains_started = 0
        self.processed = 0
        self.failed = 0

    def __len__(self) -> int:
        return len(self._items)

    @property
    def draining(self) -> bool:
        return self._task is not None and not self._task.done()

    def push(self, item: T) -> None:
        self._items.append(item)
        if not self.draining:
            self.drains_started += 1
            self._task = asyncio.create_task(self._drain(), name=f"{self.name}-drain")
            self._task.add_done_callback(self._on_drain_done)

    async def wait_idle(self) -> None:
        while self.draining:
            assert self._task is not None
            await asyncio.gather(self._task, return_exceptions=True)

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._items.clear()

    async def _drain(self) -> None:
        logger.debug("%s: drain started (size=%d)", self.name, len(self._items))
        while self._items:
            item = self._items.popleft()
            try:
                await self._handler(item)
                self.processed += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failed += 1
                logger.exception("%s: failed to process %r", self.name, item)
        logger.debug("%s: drain complete", self.name)

    def _on_drain_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s: drain task crashed: %r", self.name, exc)
