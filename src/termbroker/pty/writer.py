"""Input writer — ordered raw byte writes to the PTY master."""

from __future__ import annotations

import asyncio
import logging

from termbroker.pty.channel import FdChannel
from termbroker.pty.errors import SessionIOError

logger = logging.getLogger(__name__)


class InputWriter:
    """Serializes writes so input reaches the child in submission order.

    Bytes are passed through untouched: no line editing, no echo handling,
    no interpretation of control characters (^C, ^D, escape sequences).
    The terminal line discipline takes care of all of that.
    """

    def __init__(self, channel: FdChannel) -> None:
        self._channel = channel
        self._lock = asyncio.Lock()
        self._closed = False
        self._waiter: asyncio.Future[None] | None = None
        self.bytes_written: int = 0

    async def write(self, data: bytes) -> int:
        """Write all of ``data``; returns the number of bytes written.

        Concurrent callers are queued behind each other; a call's bytes
        are never interleaved with another call's.

        Raises:
            SessionIOError: The master descriptor rejected the write or
                the writer was closed while waiting.
        """
        async with self._lock:
            view = memoryview(data)
            while view:
                if self._closed:
                    raise SessionIOError("input channel closed")
                try:
                    n = self._channel.write(view)
                except BlockingIOError:
                    await self._wait_writable()
                    continue
                except OSError as e:
                    raise SessionIOError(f"write to PTY failed: {e}") from e
                view = view[n:]
                self.bytes_written += n
            return len(data)

    async def _wait_writable(self) -> None:
        loop = asyncio.get_running_loop()
        fd = self._channel.fileno()
        waiter: asyncio.Future[None] = loop.create_future()
        self._waiter = waiter

        def _ready() -> None:
            if not waiter.done():
                waiter.set_result(None)

        loop.add_writer(fd, _ready)
        try:
            await waiter
        finally:
            self._waiter = None
            loop.remove_writer(fd)

    def close(self) -> None:
        """Fail any write blocked on a full tty and reject new ones."""
        if self._closed:
            return
        self._closed = True
        waiter = self._waiter
        if waiter is not None and not waiter.done():
            asyncio.get_running_loop().remove_writer(self._channel.fileno())
            waiter.set_exception(SessionIOError("input channel closed"))

    @property
    def closed(self) -> bool:
        return self._closed
