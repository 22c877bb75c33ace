"""Error taxonomy for terminal sessions."""

from __future__ import annotations


class TerminalError(Exception):
    """Base class for all terminal session errors."""


class StartError(TerminalError):
    """A session could not be started. Never retried automatically."""


class AllocationError(StartError):
    """The OS refused to hand out a pseudo-terminal pair."""


class SpawnError(StartError):
    """The shell process could not be launched."""


class SessionIOError(TerminalError):
    """A read or write against the master descriptor failed."""


class InvalidStateError(TerminalError):
    """The operation is not allowed in the session's current state."""

    def __init__(self, operation: str, state: object) -> None:
        self.operation = operation
        self.state = state
        super().__init__(f"cannot {operation} while session is {state}")


class SessionNotFoundError(TerminalError):
    """No session is registered under the given id."""
