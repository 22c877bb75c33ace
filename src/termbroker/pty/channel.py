"""Narrow read/write capability over a PTY master descriptor."""

from __future__ import annotations

import errno
import os

from termbroker.pty.errors import SessionIOError


class FdChannel:
    """Read/write access to the master fd without ownership of it.

    The pump and writer only ever see this object. The controller that
    owns the descriptor calls ``revoke()`` before closing it, after which
    every operation fails instead of touching a possibly reused fd number.
    """

    def __init__(self, fd: int) -> None:
        self._fd = fd
        self._revoked = False

    def fileno(self) -> int:
        self._check()
        return self._fd

    def read(self, size: int) -> bytes:
        """Non-blocking read. Raises BlockingIOError when nothing is ready."""
        self._check()
        return os.read(self._fd, size)

    def write(self, data: bytes | memoryview) -> int:
        """Non-blocking write. Raises BlockingIOError when the tty is full."""
        self._check()
        return os.write(self._fd, data)

    def revoke(self) -> None:
        self._revoked = True

    @property
    def revoked(self) -> bool:
        return self._revoked

    def _check(self) -> None:
        if self._revoked:
            raise SessionIOError(os.strerror(errno.EBADF))
