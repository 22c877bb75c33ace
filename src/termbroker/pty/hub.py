"""Subscription hub — fans session output out to independent subscribers.

The session's pump is the single producer. Each subscriber gets its own
queue, so a slow consumer only ever hurts itself: once its backlog passes
``max_pending`` events it receives ``ERROR(OVERFLOW)`` and is severed,
while the producer and every other subscriber carry on.
"""

from __future__ import annotations

import asyncio
import logging
import threading

from termbroker.pty.buffer import RollingBuffer
from termbroker.pty.events import ErrorKind, EventType, OutputEvent

logger = logging.getLogger(__name__)

DEFAULT_MAX_PENDING = 1024


class Subscription:
    """One consumer's cursor into a session's output stream.

    Async-iterable; iteration ends after the terminal ``EXITED`` or
    ``ERROR`` event. Not restartable: call ``subscribe()`` again for a
    fresh stream.
    """

    def __init__(self, hub: SubscriptionHub, max_pending: int) -> None:
        if max_pending < 1:
            raise ValueError("max_pending must be >= 1")
        self._hub = hub
        self._max_pending = max_pending
        # None marks end of stream
        self._queue: asyncio.Queue[OutputEvent | None] = asyncio.Queue()
        self._ended = False  # Terminal event (or close) already enqueued
        self._exhausted = False  # Consumer has read the sentinel
        self.overflowed = False

    def _offer(self, event: OutputEvent) -> bool:
        """Enqueue ``event``. Returns False when this subscriber is finished.

        Called by the hub while holding its lock.
        """
        if self._ended:
            return False
        if event.terminal:
            self._end(event)
            return False
        if self._queue.qsize() >= self._max_pending:
            self.overflowed = True
            self._end(
                OutputEvent.failed(
                    ErrorKind.OVERFLOW,
                    f"subscriber fell more than {self._max_pending} events behind",
                )
            )
            return False
        self._queue.put_nowait(event)
        return True

    def _end(self, event: OutputEvent | None) -> None:
        self._ended = True
        if event is not None:
            self._queue.put_nowait(event)
        self._queue.put_nowait(None)

    async def get(self) -> OutputEvent | None:
        """Next event, or None once the stream has ended."""
        if self._exhausted:
            return None
        event = await self._queue.get()
        if event is None:
            self._exhausted = True
        return event

    def get_nowait(self) -> OutputEvent | None:
        """Next event if one is queued.

        Raises:
            asyncio.QueueEmpty: Nothing is queued yet.
        """
        if self._exhausted:
            return None
        event = self._queue.get_nowait()
        if event is None:
            self._exhausted = True
        return event

    def close(self) -> None:
        """Detach from the hub; pending events are discarded."""
        self._hub.unsubscribe(self)
        if not self._ended:
            self._end(None)
        while not self._queue.empty():
            self._queue.get_nowait()
        self._exhausted = True

    @property
    def pending(self) -> int:
        """Number of queued events not yet consumed."""
        return self._queue.qsize()

    @property
    def ended(self) -> bool:
        return self._ended

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> OutputEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class SubscriptionHub:
    """Broadcasts output events and keeps the replay history.

    ``publish`` never blocks or awaits. History, the subscriber set and the
    terminal event are guarded by one lock, so a new subscription sees
    each byte exactly once: either in its replay or as a live event.
    """

    def __init__(
        self,
        history: RollingBuffer | None = None,
        max_pending: int = DEFAULT_MAX_PENDING,
    ) -> None:
        self.history = history if history is not None else RollingBuffer()
        self._max_pending = max_pending
        self._subscribers: list[Subscription] = []
        self._lock = threading.Lock()
        self._started = False
        self._final: OutputEvent | None = None

    def subscribe(self, max_pending: int | None = None) -> Subscription:
        """Create a subscription primed with the bounded replay."""
        sub = Subscription(self, max_pending or self._max_pending)
        with self._lock:
            # Replay counts toward the backlog bound like any other event
            if self._started:
                sub._queue.put_nowait(OutputEvent.started())
            replay = self.history.read_all()
            if replay:
                sub._queue.put_nowait(OutputEvent.chunk(replay))
            if self._final is not None:
                sub._end(self._final)
            else:
                self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    def publish(self, event: OutputEvent) -> None:
        """Deliver ``event`` to every live subscriber.

        Events after the terminal one are dropped.
        """
        with self._lock:
            if self._final is not None:
                logger.debug("Dropping %s event after end of stream", event.type)
                return
            if event.type == EventType.DATA:
                self.history.append(event.data)
            elif event.type == EventType.STARTED:
                self._started = True

            for sub in list(self._subscribers):
                if not sub._offer(event):
                    self._subscribers.remove(sub)
                    if sub.overflowed:
                        logger.debug("Severed overflowing subscriber %#x", id(sub))

            if event.terminal:
                self._final = event
                self._subscribers.clear()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    @property
    def final_event(self) -> OutputEvent | None:
        with self._lock:
            return self._final

    @property
    def closed(self) -> bool:
        return self.final_event is not None
