"""Process-wide event broadcaster bridging sessions to UI consumers.

Launcher and stream adapter publish synchronously; in-process listeners
(the client reducer, tests) are called inline, and async consumers such
as the SSE endpoint read from a bounded EventQueue.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Protocol

from conductor.adapters.events import NormalizedEvent

logger = logging.getLogger(__name__)

Listener = Callable[[NormalizedEvent], None]


class UiBridge(Protocol):
    """Anything that can be told about a normalized event."""

    def notify(self, event: NormalizedEvent) -> None: ...


class EventQueue:
    """Bounded async queue fed by the broadcaster for one consumer."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[NormalizedEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._dropped = 0
        self.on_close: Callable[[], None] | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def dropped(self) -> int:
        return self._dropped

    def put(self, event: NormalizedEvent) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._dropped += 1
            logger.error(
                "EventQueue full, dropping: %s process=%s (queue size: %d)",
                event.event_type, event.process_id, self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[NormalizedEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
                yield event
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    def close(self) -> None:
        """Stop the consumer loop permanently and detach from the broadcaster."""
        if self._closed:
            return
        self._closed = True
        if self.on_close is not None:
            self.on_close()


class EventBroadcaster:
    """Synchronous pub/sub for normalized events.

    Delivery is best-effort and in subscription order. A listener that
    raises is logged and skipped; it never blocks the others.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._published = 0

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    @property
    def published_count(self) -> int:
        return self._published

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            self.unsubscribe(listener)

        return _unsubscribe

    def unsubscribe(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def attach_bridge(self, bridge: UiBridge) -> Callable[[], None]:
        return self.subscribe(bridge.notify)

    def publish(self, event: NormalizedEvent) -> None:
        self._published += 1
        logger.debug(
            "publish type=%s process=%s session=%s",
            event.event_type, event.process_id, event.session_id,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Event listener failed type=%s process=%s",
                    event.event_type, event.process_id,
                )

    def open_queue(self, maxsize: int = 5000) -> EventQueue:
        """Subscribe a fresh EventQueue; closing it unsubscribes."""
        queue = EventQueue(maxsize=maxsize)
        unsubscribe = self.subscribe(queue.put)
        queue.on_close = unsubscribe
        return queue

    def close(self) -> None:
        """Drop every subscriber."""
        self._listeners.clear()
