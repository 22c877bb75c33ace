"""Tests for termbroker.pty.pump (ChunkAligner, OutputPump)."""

from __future__ import annotations

import asyncio
import os

import pytest

from termbroker.pty.channel import FdChannel
from termbroker.pty.errors import SessionIOError
from termbroker.pty.events import EventType, OutputEvent
from termbroker.pty.pump import ChunkAligner, OutputPump, PumpOutcome


# ---------------------------------------------------------------------------
# ChunkAligner
# ---------------------------------------------------------------------------


class TestChunkAligner:
    def test_ascii_passes_through(self) -> None:
        aligner = ChunkAligner()
        assert aligner.feed(b"hello") == b"hello"
        assert aligner.pending == 0

    def test_holds_incomplete_character(self) -> None:
        euro = "€".encode()  # 3 bytes
        aligner = ChunkAligner()
        assert aligner.feed(b"price " + euro[:2]) == b"price "
        assert aligner.pending == 2
        assert aligner.feed(euro[2:] + b"5") == euro + b"5"
        assert aligner.pending == 0

    def test_character_split_over_many_reads(self) -> None:
        emoji = "🙂".encode()  # 4 bytes
        aligner = ChunkAligner()
        out = [aligner.feed(emoji[i : i + 1]) for i in range(4)]
        assert out == [b"", b"", b"", emoji]

    def test_every_split_point_yields_whole_characters(self) -> None:
        text = "añb€c🙂d".encode()
        for cut in range(len(text) + 1):
            aligner = ChunkAligner()
            first = aligner.feed(text[:cut])
            second = aligner.feed(text[cut:])
            first.decode("utf-8")
            second.decode("utf-8")
            assert first + second == text

    def test_invalid_bytes_are_not_held(self) -> None:
        aligner = ChunkAligner()
        assert aligner.feed(b"a\xffb") == b"a\xffb"
        assert aligner.pending == 0

    def test_flush_returns_held_tail(self) -> None:
        aligner = ChunkAligner()
        aligner.feed(b"x\xe2\x82")
        assert aligner.flush() == b"\xe2\x82"
        assert aligner.pending == 0
        assert aligner.feed(b"ok") == b"ok"

    def test_binary_mode_never_holds(self) -> None:
        aligner = ChunkAligner(encoding=None)
        assert aligner.feed(b"\xe2\x82") == b"\xe2\x82"
        assert aligner.flush() == b""

    def test_other_multibyte_encoding(self) -> None:
        text = "日本".encode("shift_jis")
        aligner = ChunkAligner("shift_jis")
        assert aligner.feed(text[:1]) == b""
        assert aligner.feed(text[1:]) == text


# ---------------------------------------------------------------------------
# OutputPump over a pipe
# ---------------------------------------------------------------------------


@pytest.fixture
def pipe():
    read_fd, write_fd = os.pipe()
    os.set_blocking(read_fd, False)
    fds = {"r": read_fd, "w": write_fd}
    yield fds
    for fd in fds.values():
        try:
            os.close(fd)
        except OSError:
            pass


def _close(fds: dict[str, int], key: str) -> None:
    os.close(fds.pop(key))


class TestOutputPump:
    @pytest.mark.asyncio
    async def test_publishes_chunks_then_eof(self, pipe) -> None:
        events: list[OutputEvent] = []
        pump = OutputPump(FdChannel(pipe["r"]), events.append, read_size=4)
        task = pump.start()
        await pump.wait_listening()
        pump.release()

        os.write(pipe["w"], b"hello world")
        _close(pipe, "w")
        result = await asyncio.wait_for(task, 5)

        assert result.outcome is PumpOutcome.EOF
        assert b"".join(e.data for e in events) == b"hello world"
        assert all(e.type == EventType.DATA for e in events)
        assert pump.bytes_read == 11

    @pytest.mark.asyncio
    async def test_nothing_read_before_release(self, pipe) -> None:
        events: list[OutputEvent] = []
        pump = OutputPump(FdChannel(pipe["r"]), events.append)
        pump.start()
        await pump.wait_listening()

        os.write(pipe["w"], b"early")
        await asyncio.sleep(0.05)
        assert events == []

        pump.release()
        _close(pipe, "w")
        await asyncio.wait_for(pump.task, 5)
        assert b"".join(e.data for e in events) == b"early"

    @pytest.mark.asyncio
    async def test_split_characters_are_realigned(self, pipe) -> None:
        events: list[OutputEvent] = []
        pump = OutputPump(FdChannel(pipe["r"]), events.append, read_size=5)
        pump.start()
        await pump.wait_listening()
        pump.release()

        text = ("€🙂ñ" * 20).encode()
        os.write(pipe["w"], text)
        _close(pipe, "w")
        await asyncio.wait_for(pump.task, 5)

        for event in events:
            event.data.decode("utf-8")  # strict: no chunk ends mid-character
        assert b"".join(e.data for e in events) == text

    @pytest.mark.asyncio
    async def test_cancel_flushes_partial_tail_with_marker(self, pipe) -> None:
        events: list[OutputEvent] = []
        pump = OutputPump(FdChannel(pipe["r"]), events.append)
        pump.start()
        await pump.wait_listening()
        pump.release()

        os.write(pipe["w"], b"ok\xe2\x82")
        await asyncio.sleep(0.05)
        result = await pump.cancel()

        assert result.outcome is PumpOutcome.CANCELLED
        assert [e.data for e in events] == [b"ok", b"\xe2\x82"]
        assert events[-1].decode_error is True
        assert events[0].decode_error is False

    @pytest.mark.asyncio
    async def test_cancel_after_eof_reports_eof(self, pipe) -> None:
        pump = OutputPump(FdChannel(pipe["r"]), lambda e: None)
        pump.start()
        await pump.wait_listening()
        pump.release()
        _close(pipe, "w")
        await asyncio.wait_for(pump.task, 5)

        result = await pump.cancel()
        assert result.outcome is PumpOutcome.EOF

    @pytest.mark.asyncio
    async def test_double_start_rejected(self, pipe) -> None:
        pump = OutputPump(FdChannel(pipe["r"]), lambda e: None)
        pump.start()
        with pytest.raises(RuntimeError):
            pump.start()
        await pump.cancel()


class TestFdChannel:
    def test_revoked_channel_refuses_io(self, pipe) -> None:
        channel = FdChannel(pipe["r"])
        channel.revoke()
        assert channel.revoked
        with pytest.raises(SessionIOError):
            channel.read(1)
        with pytest.raises(SessionIOError):
            channel.fileno()
