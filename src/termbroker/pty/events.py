"""Output events delivered to session subscribers.

Every subscription sees a finite stream: an optional ``STARTED``, any
number of ``DATA`` chunks, and exactly one terminal event (``EXITED`` or
``ERROR``) at the end.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


class EventType(enum.StrEnum):
    STARTED = "started"
    DATA = "data"
    EXITED = "exited"
    ERROR = "error"


class ErrorKind(enum.StrEnum):
    """Why a stream ended with an ``ERROR`` event."""

    START = "start"  # The session never got running
    IO = "io"  # The PTY itself failed; the whole session is gone
    OVERFLOW = "overflow"  # Only this subscriber fell behind and was severed


@dataclass(frozen=True)
class OutputEvent:
    """A single event on a session's output stream."""

    type: EventType
    data: bytes = b""
    exit_code: int | None = None  # None means the status was not obtainable
    error: ErrorKind | None = None
    message: str = ""
    decode_error: bool = False  # Raw bytes flushed without a complete character

    @property
    def terminal(self) -> bool:
        """True for the event that ends a stream."""
        return self.type in (EventType.EXITED, EventType.ERROR)

    @classmethod
    def started(cls) -> OutputEvent:
        return cls(type=EventType.STARTED)

    @classmethod
    def chunk(cls, data: bytes, decode_error: bool = False) -> OutputEvent:
        return cls(type=EventType.DATA, data=data, decode_error=decode_error)

    @classmethod
    def exited(cls, exit_code: int | None) -> OutputEvent:
        return cls(type=EventType.EXITED, exit_code=exit_code)

    @classmethod
    def failed(cls, kind: ErrorKind, message: str = "") -> OutputEvent:
        return cls(type=EventType.ERROR, error=kind, message=message)
