"""Tests for termbroker.pty.writer.InputWriter."""

from __future__ import annotations

import asyncio
import os

import pytest

from termbroker.pty.channel import FdChannel
from termbroker.pty.errors import SessionIOError
from termbroker.pty.writer import InputWriter


@pytest.fixture
def pipe():
    read_fd, write_fd = os.pipe()
    os.set_blocking(write_fd, False)
    yield read_fd, write_fd
    for fd in (read_fd, write_fd):
        try:
            os.close(fd)
        except OSError:
            pass


def _drain(fd: int) -> bytes:
    os.set_blocking(fd, False)
    chunks = []
    while True:
        try:
            chunk = os.read(fd, 65536)
        except BlockingIOError:
            break
        if not chunk:
            break
        chunks.append(chunk)
    return b"".join(chunks)


class TestInputWriter:
    @pytest.mark.asyncio
    async def test_write_returns_length(self, pipe) -> None:
        read_fd, write_fd = pipe
        writer = InputWriter(FdChannel(write_fd))
        assert await writer.write(b"ls -la\n") == 7
        assert _drain(read_fd) == b"ls -la\n"
        assert writer.bytes_written == 7

    @pytest.mark.asyncio
    async def test_control_bytes_pass_through(self, pipe) -> None:
        read_fd, write_fd = pipe
        writer = InputWriter(FdChannel(write_fd))
        payload = b"\x03\x04\x1b[A\x7f\r"
        await writer.write(payload)
        assert _drain(read_fd) == payload

    @pytest.mark.asyncio
    async def test_concurrent_writes_keep_submission_order(self, pipe) -> None:
        read_fd, write_fd = pipe
        writer = InputWriter(FdChannel(write_fd))
        chunks = [f"chunk-{i:03d};".encode() for i in range(100)]
        await asyncio.gather(*(writer.write(c) for c in chunks))
        assert _drain(read_fd) == b"".join(chunks)

    @pytest.mark.asyncio
    async def test_full_pipe_waits_for_reader(self, pipe) -> None:
        read_fd, write_fd = pipe
        writer = InputWriter(FdChannel(write_fd))
        payload = bytes(range(256)) * 1024  # 256 KiB, more than a pipe holds

        received = bytearray()
        loop = asyncio.get_running_loop()
        os.set_blocking(read_fd, False)
        done = asyncio.Event()

        def _on_readable() -> None:
            try:
                received.extend(os.read(read_fd, 65536))
            except BlockingIOError:
                return
            if len(received) >= len(payload):
                done.set()

        loop.add_reader(read_fd, _on_readable)
        try:
            assert await asyncio.wait_for(writer.write(payload), 10) == len(payload)
            await asyncio.wait_for(done.wait(), 10)
        finally:
            loop.remove_reader(read_fd)
        assert bytes(received) == payload

    @pytest.mark.asyncio
    async def test_close_fails_blocked_write(self, pipe) -> None:
        _, write_fd = pipe
        writer = InputWriter(FdChannel(write_fd))
        blocked = asyncio.create_task(writer.write(b"x" * (1024 * 1024)))
        await asyncio.sleep(0.05)
        assert not blocked.done()

        writer.close()
        with pytest.raises(SessionIOError):
            await blocked
        assert writer.closed

    @pytest.mark.asyncio
    async def test_write_after_close_fails(self, pipe) -> None:
        _, write_fd = pipe
        writer = InputWriter(FdChannel(write_fd))
        writer.close()
        with pytest.raises(SessionIOError):
            await writer.write(b"late")

    @pytest.mark.asyncio
    async def test_os_error_becomes_session_io_error(self, pipe) -> None:
        read_fd, write_fd = pipe
        os.close(read_fd)  # Writing now raises EPIPE
        writer = InputWriter(FdChannel(write_fd))
        with pytest.raises(SessionIOError):
            await writer.write(b"data")
