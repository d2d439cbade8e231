"""Async event bus bridging backend callbacks to the session registry.

Backends may run their transport in background tasks and fire events via
callback. The EventBus queues them for SessionRegistry.consume(), which
routes each one to its session in arrival order.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any, Awaitable, Callable

from tandem.adapters.events import StreamEvent, dict_to_event

logger = logging.getLogger(__name__)

# Longest a producer waits on a full queue before the event is dropped.
PUT_TIMEOUT_SECONDS = 30.0


class EventBus:
    """Async queue of stream events tagged with their session id."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def _callback(self, data: dict[str, Any]) -> None:
        """Callback for backends that report plain dicts."""
        await self.emit(dict_to_event(data))

    def make_callback(self) -> Callable[[dict[str, Any]], Awaitable[None]]:
        return self._callback

    async def emit(self, event: StreamEvent) -> None:
        if self._closed:
            return
        try:
            # Backpressure instead of silently dropping.
            await asyncio.wait_for(self._queue.put(event), timeout=PUT_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for %ss, dropping: %s (queue size: %d)",
                PUT_TIMEOUT_SECONDS, event.event_type, self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[StreamEvent]:
        """Yield events as they arrive. Stops on close() once drained."""
        while not (self._closed and self._queue.empty()):
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield event

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True

    def reset(self) -> None:
        """Drain leftover events and re-open the bus."""
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._closed = False
