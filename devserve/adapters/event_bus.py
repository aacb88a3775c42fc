"""Queue between registry callbacks and a single event consumer.

Reader and flush tasks inside the engine call the bus callback; the
SSE pump or the CLI printer drains it with ``consume()``. Puts block
while the queue is full so a slow consumer slows producers down before
any event is dropped.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from devserve.adapters.events import DevServerEvent, dict_to_event
from devserve.engine.config import EventCallback

logger = logging.getLogger(__name__)


class EventBus:
    def __init__(self, maxsize: int = 5000, put_timeout: float = 30.0) -> None:
        # None is the close() sentinel.
        self._queue: asyncio.Queue[DevServerEvent | None] = asyncio.Queue(maxsize)
        self._put_timeout = put_timeout
        self._closed = False
        self.dropped = 0

    def make_callback(self) -> EventCallback:
        """Callback for ``DevServerConfig.event_callback``."""
        async def publish(data: dict[str, Any]) -> None:
            try:
                event = dict_to_event(data)
            except ValueError:
                logger.warning("Ignoring unknown engine event %r", data.get("event"))
                return
            await self.emit(event)

        return publish

    async def emit(self, event: DevServerEvent) -> None:
        if self._closed:
            return
        try:
            await asyncio.wait_for(self._queue.put(event), timeout=self._put_timeout)
        except asyncio.TimeoutError:
            self.dropped += 1
            logger.error(
                "Event queue full for %.0fs, dropped %s for %s (%d dropped so far)",
                self._put_timeout, event.event_type, event.worktree_path, self.dropped,
            )

    async def consume(
        self,
        worktree_path: str | None = None,
    ) -> AsyncIterator[DevServerEvent]:
        """Yield events in arrival order until close().

        With *worktree_path*, events for other worktrees are skipped.
        """
        while True:
            event = await self._queue.get()
            if event is None:
                return
            if worktree_path is not None and event.worktree_path != worktree_path:
                continue
            yield event

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        """Refuse new events; the consumer ends after what is queued."""
        if self._closed:
            return
        self._closed = True
        while True:
            try:
                self._queue.put_nowait(None)
                return
            except asyncio.QueueFull:
                # Shutting down: the oldest event gives way to the sentinel.
                self._queue.get_nowait()

    def reset(self) -> None:
        """Discard everything queued and accept events again."""
        while not self._queue.empty():
            self._queue.get_nowait()
        self._closed = False
