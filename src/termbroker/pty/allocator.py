"""Pseudo-terminal allocation."""

from __future__ import annotations

import fcntl
import logging
import os
import pty
import struct
import termios
from dataclasses import dataclass, field

from termbroker.pty.errors import AllocationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WindowSize:
    """Terminal dimensions in character cells."""

    cols: int = 80
    rows: int = 24

    def __post_init__(self) -> None:
        if self.cols <= 0 or self.rows <= 0:
            raise ValueError(f"invalid window size {self.cols}x{self.rows}")

    def pack(self) -> bytes:
        # struct winsize is (rows, cols, xpixel, ypixel)
        return struct.pack("HHHH", self.rows, self.cols, 0, 0)

    @classmethod
    def unpack(cls, raw: bytes) -> WindowSize:
        rows, cols, _, _ = struct.unpack("HHHH", raw)
        return cls(cols=cols, rows=rows)


def set_window_size(fd: int, size: WindowSize) -> None:
    """Apply ``size`` to the terminal behind ``fd`` (TIOCSWINSZ)."""
    fcntl.ioctl(fd, termios.TIOCSWINSZ, size.pack())


def get_window_size(fd: int) -> WindowSize:
    """Read the window size of the terminal behind ``fd`` (TIOCGWINSZ)."""
    raw = fcntl.ioctl(fd, termios.TIOCGWINSZ, b"\0" * 8)
    return WindowSize.unpack(raw)


@dataclass
class PTYPair:
    """A freshly allocated master/subordinate descriptor pair.

    The master is non-blocking so the pump can be cancelled without being
    stuck in a read. Neither descriptor is inherited by children except
    through explicit stdio redirection.
    """

    master_fd: int
    subordinate_fd: int
    subordinate_path: str
    _closed: set[str] = field(default_factory=set, repr=False)

    def close_subordinate(self) -> None:
        """Close the parent's copy of the subordinate side (idempotent)."""
        self._close("subordinate", self.subordinate_fd)

    def close_master(self) -> None:
        """Close the master side (idempotent)."""
        self._close("master", self.master_fd)

    def close(self) -> None:
        self.close_subordinate()
        self.close_master()

    def _close(self, side: str, fd: int) -> None:
        if side in self._closed:
            return
        self._closed.add(side)
        try:
            os.close(fd)
        except OSError as e:
            logger.debug("Closing PTY %s fd %d failed: %s", side, fd, e)


class PTYAllocator:
    """Hands out pseudo-terminal pairs from the operating system."""

    def allocate(self, size: WindowSize) -> PTYPair:
        """Open a new PTY pair sized to ``size``.

        Raises:
            AllocationError: The OS refused (e.g. out of PTYs or fds).
        """
        try:
            master_fd, subordinate_fd = pty.openpty()
        except OSError as e:
            raise AllocationError(f"could not open pseudo-terminal: {e}") from e

        pair = PTYPair(
            master_fd=master_fd,
            subordinate_fd=subordinate_fd,
            subordinate_path="",
        )
        try:
            pair.subordinate_path = os.ttyname(subordinate_fd)
            set_window_size(subordinate_fd, size)
            os.set_blocking(master_fd, False)
            os.set_inheritable(master_fd, False)
            os.set_inheritable(subordinate_fd, False)
        except OSError as e:
            pair.close()
            raise AllocationError(f"could not configure pseudo-terminal: {e}") from e

        logger.debug(
            "Allocated PTY %s (master fd=%d, %dx%d)",
            pair.subordinate_path,
            master_fd,
            size.cols,
            size.rows,
        )
        return pair
