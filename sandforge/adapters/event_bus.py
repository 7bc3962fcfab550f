"""Queue orchestrator events for asynchronous consumers.

``Orchestrator.subscribe(bus.make_callback())`` turns every event dict
into a typed ``SandforgeEvent`` on the bus. The replay CLI drains it for
its summary; long-lived consumers iterate ``consume()``.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from typing import Any

from sandforge.adapters.events import SandforgeEvent, dict_to_event

logger = logging.getLogger(__name__)


class EventBus:
    """Bounded event queue with backpressure on the producer side.

    A producer waits up to ``put_timeout`` seconds for room; after that
    the event is dropped and counted in ``dropped``.
    """

    def __init__(self, maxsize: int = 5000, put_timeout: float = 30.0) -> None:
        self._queue: asyncio.Queue[SandforgeEvent] = asyncio.Queue(maxsize=maxsize)
        self._put_timeout = put_timeout
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def make_callback(
        self, event_types: Iterable[str] | None = None,
    ) -> Callable[[dict[str, Any]], Awaitable[None]]:
        """Return a subscriber callback, optionally limited to *event_types*."""
        wanted = frozenset(event_types) if event_types is not None else None

        async def publish(data: dict[str, Any]) -> None:
            if wanted is not None and data.get("event") not in wanted:
                return
            await self.emit(dict_to_event(data))

        return publish

    async def emit(self, event: SandforgeEvent) -> None:
        if self._closed:
            return
        try:
            await asyncio.wait_for(self._queue.put(event), timeout=self._put_timeout)
        except asyncio.TimeoutError:
            self.dropped += 1
            logger.error(
                "Event queue full for %.0fs, dropping %s (queued=%d dropped=%d)",
                self._put_timeout, event.event_type, self._queue.qsize(), self.dropped,
            )

    def drain(self) -> list[SandforgeEvent]:
        """Return and remove every queued event without waiting."""
        events: list[SandforgeEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return events

    async def consume(self, poll_interval: float = 0.5) -> AsyncIterator[SandforgeEvent]:
        """Yield events as they arrive until ``close()``."""
        while not self._closed:
            try:
                yield await asyncio.wait_for(self._queue.get(), timeout=poll_interval)
            except asyncio.TimeoutError:
                continue

    def close(self) -> None:
        self._closed = True

    def reset(self) -> None:
        """Discard queued events and reopen the bus."""
        self.drain()
        self._closed = False
        self.dropped = 0
