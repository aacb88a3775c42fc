"""Scrollback buffering and throttled broadcast of dev server output.

Raw process output can arrive in large, frequent bursts (build tool
logs). Every chunk lands in a bounded scrollback used to replay history
to late subscribers, and in a pending buffer that is drained at most
once per throttle window and at most ``batch_size`` characters per
event, so a live subscriber is never flooded.
"""
from __future__ import annotations

import asyncio
import logging

from .config import EventCallback, fire_event
from .models import ServerEntry, utcnow_iso

logger = logging.getLogger(__name__)

MAX_SCROLLBACK_SIZE = 50_000
OUTPUT_BATCH_SIZE = 4096
OUTPUT_THROTTLE_SECONDS = 0.004


class OutputPipeline:
    """Per-entry scrollback plus time- and size-bounded output events."""

    def __init__(
        self,
        *,
        scrollback_limit: int = MAX_SCROLLBACK_SIZE,
        batch_size: int = OUTPUT_BATCH_SIZE,
        throttle_seconds: float = OUTPUT_THROTTLE_SECONDS,
        event_callback: EventCallback | None = None,
    ) -> None:
        self.scrollback_limit = scrollback_limit
        self.batch_size = batch_size
        self.throttle_seconds = throttle_seconds
        self._event_callback = event_callback

    def append(self, entry: ServerEntry, chunk: str) -> None:
        """Record *chunk* and make sure a flush is scheduled."""
        if entry.stopping or not chunk:
            return

        entry.scrollback += chunk
        if len(entry.scrollback) > self.scrollback_limit:
            entry.scrollback = entry.scrollback[-self.scrollback_limit:]

        entry.pending_output += chunk
        if entry.flush_task is None:
            entry.flush_task = asyncio.get_running_loop().create_task(
                self._flush_loop(entry)
            )

        logger.debug("[Port%d] %s", entry.port, chunk.rstrip())

    async def flush(self, entry: ServerEntry) -> bool:
        """Emit up to one batch of pending output.

        Returns True when output is still pending and another flush
        should follow after the throttle window.
        """
        if entry.stopping or not entry.pending_output:
            return False

        content = entry.pending_output[:self.batch_size]
        await fire_event(
            self._event_callback,
            {
                "event": "dev_server_output",
                "worktree_path": entry.worktree_path,
                "content": content,
                "timestamp": utcnow_iso(),
            },
        )
        # Removed only after delivery; a flush cancelled mid-emit keeps
        # its batch. Chunks arriving meanwhile are appended at the end.
        entry.pending_output = entry.pending_output[len(content):]
        return bool(entry.pending_output) and not entry.stopping

    def get_history(self, entry: ServerEntry) -> str:
        return entry.scrollback

    def cancel(self, entry: ServerEntry, *, discard: bool = True) -> None:
        """Cancel the scheduled flush; optionally drop unflushed output."""
        task = entry.flush_task
        entry.flush_task = None
        if task is not None and not task.done():
            task.cancel()
        if discard:
            entry.pending_output = ""

    async def _flush_loop(self, entry: ServerEntry) -> None:
        try:
            while True:
                await asyncio.sleep(self.throttle_seconds)
                if not await self.flush(entry):
                    return
        finally:
            # cancel() clears the slot itself before cancelling.
            if entry.flush_task is asyncio.current_task():
                entry.flush_task = None
