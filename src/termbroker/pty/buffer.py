"""Rolling history buffer for PTY output."""

from __future__ import annotations

import threading


class RollingBuffer:
    """Thread-safe bounded byte log of the most recent PTY output.

    Keeps at most ``max_bytes`` bytes; the oldest bytes are evicted first.
    Used to replay recent context to late subscribers without holding on
    to unbounded history.
    """

    def __init__(self, max_bytes: int = 64 * 1024) -> None:
        if max_bytes < 0:
            raise ValueError("max_bytes must be >= 0")
        self._max_bytes = max_bytes
        self._data = bytearray()
        self._total_bytes: int = 0  # Total bytes ever appended
        self._lock = threading.Lock()

    def append(self, data: bytes) -> None:
        """Append a chunk, evicting the oldest bytes past the cap."""
        if not data:
            return
        with self._lock:
            self._total_bytes += len(data)
            if len(data) >= self._max_bytes:
                self._data[:] = data[len(data) - self._max_bytes :]
                return
            self._data += data
            overflow = len(self._data) - self._max_bytes
            if overflow > 0:
                del self._data[:overflow]

    def read_all(self) -> bytes:
        """Snapshot of everything currently retained."""
        with self._lock:
            return bytes(self._data)

    @property
    def size(self) -> int:
        """Number of bytes currently retained."""
        with self._lock:
            return len(self._data)

    @property
    def total_bytes(self) -> int:
        """Total number of bytes ever appended."""
        with self._lock:
            return self._total_bytes
