"""Output pump — drains the PTY master and publishes aligned chunks."""

from __future__ import annotations

import asyncio
import codecs
import enum
import errno
import logging
from dataclasses import dataclass
from typing import Callable

from termbroker.pty.channel import FdChannel
from termbroker.pty.events import OutputEvent

logger = logging.getLogger(__name__)


class ChunkAligner:
    """Holds back trailing bytes that may start an incomplete character.

    Uses the codec's incremental decoder only to learn how many bytes are
    still pending; the bytes themselves pass through untouched. Invalid
    sequences are not held (the decoder consumes them with ``replace``),
    so at most one partial character is ever buffered.

    With ``encoding=None`` the stream is treated as binary and every chunk
    passes straight through.
    """

    def __init__(self, encoding: str | None = "utf-8") -> None:
        self.encoding = encoding
        self._decoder = (
            codecs.getincrementaldecoder(encoding)(errors="replace")
            if encoding
            else None
        )
        self._held = b""

    def feed(self, data: bytes) -> bytes:
        """Return the prefix of ``held + data`` that ends on a full character."""
        if self._decoder is None:
            return data
        self._decoder.decode(data)
        pending, _ = self._decoder.getstate()
        buf = self._held + data
        cut = len(buf) - len(pending)
        self._held = buf[cut:]
        return buf[:cut]

    def flush(self) -> bytes:
        """Return whatever is still held (an undecodable tail) and reset."""
        held, self._held = self._held, b""
        if self._decoder is not None:
            self._decoder.reset()
        return held

    @property
    def pending(self) -> int:
        return len(self._held)


class PumpOutcome(enum.Enum):
    EOF = "eof"  # Child side closed
    ERROR = "error"  # Read failed for another reason
    CANCELLED = "cancelled"  # Stopped by the session owner


@dataclass
class PumpResult:
    outcome: PumpOutcome
    error: OSError | None = None


class OutputPump:
    """Reads the master fd for the lifetime of a running session.

    Readiness comes from ``loop.add_reader``, so the task never sits in a
    blocking read and can be cancelled at any await point. One chunk is
    read per wakeup; the selector is level-triggered and wakes us again
    while data remains.
    """

    def __init__(
        self,
        channel: FdChannel,
        publish: Callable[[OutputEvent], None],
        encoding: str | None = "utf-8",
        read_size: int = 4096,
        name: str = "",
    ) -> None:
        self._channel = channel
        self._publish = publish
        self._aligner = ChunkAligner(encoding)
        self._read_size = read_size
        self._name = name
        self._task: asyncio.Task[PumpResult] | None = None
        self._listening: asyncio.Future[None] | None = None
        self._released = asyncio.Event()
        self.bytes_read: int = 0

    def start(self) -> asyncio.Task[PumpResult]:
        """Start the pump task. Must be called from the event loop thread."""
        if self._task is not None:
            raise RuntimeError("pump already started")
        loop = asyncio.get_running_loop()
        self._listening = loop.create_future()
        self._task = asyncio.create_task(self._run(), name=f"pty-pump-{self._name}")
        return self._task

    def release(self) -> None:
        """Let the pump start reading. Until then data waits in the tty."""
        self._released.set()

    async def wait_listening(self) -> None:
        """Resolve once the reader is registered on the descriptor.

        Raises whatever ended the pump if it died before getting there.
        """
        assert self._listening is not None and self._task is not None
        await asyncio.wait(
            {self._listening, self._task}, return_when=asyncio.FIRST_COMPLETED
        )
        if not self._listening.done():
            self._task.result()  # Propagate an unexpected crash
            raise OSError(errno.EIO, "pump ended before listening")

    async def cancel(self) -> PumpResult:
        """Cancel the pump and wait for it to flush and finish."""
        if self._task is None:
            return PumpResult(PumpOutcome.CANCELLED)
        if not self._task.done():
            self._task.cancel()
        await asyncio.wait({self._task})
        if self._task.cancelled():
            return PumpResult(PumpOutcome.CANCELLED)
        return self._task.result()

    @property
    def task(self) -> asyncio.Task[PumpResult] | None:
        return self._task

    async def _run(self) -> PumpResult:
        loop = asyncio.get_running_loop()
        fd = self._channel.fileno()
        readable = asyncio.Event()
        loop.add_reader(fd, readable.set)
        assert self._listening is not None
        self._listening.set_result(None)
        try:
            await self._released.wait()
            while True:
                await readable.wait()
                readable.clear()
                try:
                    data = self._channel.read(self._read_size)
                except BlockingIOError:
                    continue
                except OSError as e:
                    # Linux reports a hung-up PTY as EIO instead of EOF
                    if e.errno == errno.EIO:
                        return PumpResult(PumpOutcome.EOF)
                    logger.debug("PTY pump %s read failed: %s", self._name, e)
                    return PumpResult(PumpOutcome.ERROR, e)
                if not data:
                    return PumpResult(PumpOutcome.EOF)
                self.bytes_read += len(data)
                chunk = self._aligner.feed(data)
                if chunk:
                    self._publish(OutputEvent.chunk(chunk))
        finally:
            loop.remove_reader(fd)
            tail = self._aligner.flush()
            if tail:
                self._publish(OutputEvent.chunk(tail, decode_error=True))
            logger.debug(
                "PTY pump %s finished after %d bytes", self._name, self.bytes_read
            )
