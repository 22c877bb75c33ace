"""PTY session management — shells brokered over pseudo-terminals.

A session spawns a shell on a fresh PTY, pumps its raw output to any
number of subscribers, forwards input bytes untouched, and tears the
child down deterministically when its owner stops it.
"""

from termbroker.pty.allocator import PTYAllocator, PTYPair, WindowSize
from termbroker.pty.buffer import RollingBuffer
from termbroker.pty.errors import (
    AllocationError,
    InvalidStateError,
    SessionIOError,
    SessionNotFoundError,
    SpawnError,
    StartError,
    TerminalError,
)
from termbroker.pty.events import ErrorKind, EventType, OutputEvent
from termbroker.pty.hub import Subscription, SubscriptionHub
from termbroker.pty.manager import SessionManager
from termbroker.pty.process import ShellProcess
from termbroker.pty.session import SessionController, SessionOptions, SessionState

__all__ = [
    "AllocationError",
    "ErrorKind",
    "EventType",
    "InvalidStateError",
    "OutputEvent",
    "PTYAllocator",
    "PTYPair",
    "RollingBuffer",
    "SessionController",
    "SessionIOError",
    "SessionManager",
    "SessionNotFoundError",
    "SessionOptions",
    "SessionState",
    "ShellProcess",
    "SpawnError",
    "StartError",
    "Subscription",
    "SubscriptionHub",
    "TerminalError",
    "WindowSize",
]
