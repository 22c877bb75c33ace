"""Shared fixtures for PTY session tests."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

import pytest

from termbroker.pty.events import EventType
from termbroker.pty.hub import Subscription
from termbroker.pty.session import SessionOptions

# A quiet, predictable interactive shell: no rc files, fixed prompt
SH_ENV = {"PS1": "$ ", "ENV": "/dev/null", "HISTFILE": "/dev/null"}


@pytest.fixture
def sh_options() -> SessionOptions:
    return SessionOptions(
        shell="/bin/sh",
        cwd="/tmp",
        env=dict(SH_ENV),
        stop_grace=1.0,
        kill_timeout=1.0,
    )


ReadUntil = Callable[..., Awaitable[bytes]]


@pytest.fixture
def read_until() -> ReadUntil:
    """Return ``read_until(sub, predicate, timeout=5.0)``.

    Collects DATA bytes from ``sub`` until ``predicate(collected)`` is true
    and returns everything collected so far.
    """

    async def _read_until(
        sub: Subscription,
        predicate: Callable[[bytes], bool],
        timeout: float = 5.0,
    ) -> bytes:
        collected = bytearray()

        async def _collect() -> None:
            while not predicate(bytes(collected)):
                event = await sub.get()
                if event is None:
                    raise AssertionError(f"stream ended early: {bytes(collected)!r}")
                if event.type == EventType.DATA:
                    collected.extend(event.data)

        try:
            await asyncio.wait_for(_collect(), timeout)
        except TimeoutError:
            raise AssertionError(f"timed out; got {bytes(collected)!r}") from None
        return bytes(collected)

    return _read_until
