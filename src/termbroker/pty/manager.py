"""Session manager — the entry point UIs use to drive shell sessions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, Mapping

from termbroker.pty.allocator import WindowSize
from termbroker.pty.errors import SessionNotFoundError
from termbroker.pty.hub import Subscription
from termbroker.pty.session import SessionController, SessionOptions, SessionState

if TYPE_CHECKING:
    from termbroker.config import TermbrokerConfig

logger = logging.getLogger(__name__)


class SessionManager:
    """Manages the lifecycle of several independent shell sessions.

    The manager ensures:
    - Sessions are tracked and can be looked up by ID
    - All sessions are stopped on cleanup (no orphan processes)
    - Session limits are enforced
    - Sessions that end on their own are dropped from tracking
    """

    MAX_SESSIONS = 10

    def __init__(
        self,
        defaults: SessionOptions | None = None,
        max_sessions: int | None = None,
        on_exit: Callable[[SessionController], None] | None = None,
    ) -> None:
        self._sessions: dict[str, SessionController] = {}
        self._defaults = defaults or SessionOptions()
        self._max_sessions = max_sessions or self.MAX_SESSIONS
        self._on_exit = on_exit

    @classmethod
    def from_config(
        cls,
        config: TermbrokerConfig,
        on_exit: Callable[[SessionController], None] | None = None,
    ) -> SessionManager:
        """Build a manager whose sessions and limit come from ``config``."""
        return cls(
            defaults=SessionOptions.from_config(config),
            max_sessions=config.limits.max_sessions,
            on_exit=on_exit,
        )

    async def start_session(
        self,
        shell: str | None = None,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        size: tuple[int, int] | WindowSize | None = None,
        title: str = "",
    ) -> SessionController:
        """Start a new shell session.

        Args:
            shell: Shell executable. Defaults to the configured shell.
            cwd: Working directory.
            env: Additional environment variables.
            size: Initial ``(cols, rows)``.
            title: Human-readable title for the session.

        Returns:
            The running session.

        Raises:
            StartError: The PTY could not be allocated or the shell spawned.
        """
        if len(self._sessions) >= self._max_sessions:
            oldest = next(iter(self._sessions))
            logger.warning("Max sessions reached, stopping oldest: %s", oldest)
            await self.stop_session(oldest)

        overrides: dict[str, Any] = {"shell": shell, "cwd": cwd}
        if env is not None:
            overrides["env"] = {**self._defaults.env, **env}
        if size is not None:
            overrides["size"] = size if isinstance(size, WindowSize) else WindowSize(*size)
        options = self._defaults.with_overrides(**overrides)

        session = SessionController(options, title=title)
        session.add_state_listener(self._on_state)
        await session.start()
        self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> SessionController:
        """Get a session by ID.

        Raises:
            SessionNotFoundError: No such session is tracked.
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"no such session: {session_id}")
        return session

    async def send_input(self, session_id: str, data: bytes | str) -> int:
        """Forward raw input to a session; returns the bytes written."""
        return await self.get(session_id).write(data)

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        self.get(session_id).resize(cols, rows)

    def subscribe(self, session_id: str, max_pending: int | None = None) -> Subscription:
        return self.get(session_id).subscribe(max_pending)

    async def stop_session(self, session_id: str) -> None:
        """Stop a session and remove it from tracking. Unknown IDs are a no-op."""
        session = self._sessions.pop(session_id, None)
        if session:
            await session.stop()

    def list_sessions(self) -> list[dict[str, Any]]:
        """List all tracked sessions."""
        return [
            {
                "id": s.id,
                "title": s.title,
                "shell": s.options.shell,
                "pid": s.pid,
                "alive": s.alive,
                "state": s.state.value,
                "history_bytes": s.history.size,
                "output_bytes": s.history.total_bytes,
                "subscribers": s.hub.subscriber_count,
            }
            for s in self._sessions.values()
        ]

    async def cleanup(self) -> None:
        """Stop all sessions. Called on shutdown."""
        for session_id in list(self._sessions.keys()):
            await self.stop_session(session_id)
        logger.info("All PTY sessions cleaned up")

    def _on_state(self, session: SessionController, state: SessionState) -> None:
        if state not in (SessionState.STOPPED, SessionState.FAILED):
            return
        # Ended on its own (or failed); explicit stops were already popped
        if self._sessions.pop(session.id, None) is not None:
            logger.info("PTY session %s ended (%s)", session.id, state.value)
            if self._on_exit:
                try:
                    self._on_exit(session)
                except Exception:
                    logger.exception(
                        "Error in on_exit callback for session %s", session.id
                    )

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

