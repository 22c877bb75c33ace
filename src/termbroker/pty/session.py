"""PTY session — a shell on a pseudo-terminal with a managed lifecycle."""

from __future__ import annotations

import asyncio
import enum
import errno
import logging
import signal
import uuid
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Callable

from termbroker.pty.allocator import (
    PTYAllocator,
    PTYPair,
    WindowSize,
    get_window_size,
    set_window_size,
)
from termbroker.pty.buffer import RollingBuffer
from termbroker.pty.channel import FdChannel
from termbroker.pty.errors import (
    InvalidStateError,
    SessionIOError,
    SpawnError,
    StartError,
)
from termbroker.pty.events import ErrorKind, OutputEvent
from termbroker.pty.hub import Subscription, SubscriptionHub
from termbroker.pty.process import DEFAULT_TERM, ShellProcess, build_env
from termbroker.pty.pump import OutputPump, PumpOutcome
from termbroker.pty.writer import InputWriter

if TYPE_CHECKING:
    from termbroker.config import TermbrokerConfig

logger = logging.getLogger(__name__)


class SessionState(enum.StrEnum):
    """Lifecycle states for a PTY session."""

    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"  # Stop requested, tearing down
    STOPPED = "stopped"  # Child gone, resources released
    FAILED = "failed"  # Start failed or the PTY broke; see ``failure``


class _Ending(enum.Enum):
    STOP = "stop"  # Owner called stop()
    EXIT = "exit"  # Child closed its side of the PTY
    IO = "io"  # Reading the master failed
    ABORT = "abort"  # Start failed after the shell was spawned


StateListener = Callable[["SessionController", SessionState], None]


@dataclass(frozen=True)
class SessionOptions:
    """Immutable configuration captured when a session is created."""

    shell: str | None = None
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    size: WindowSize = field(default_factory=WindowSize)
    encoding: str | None = "utf-8"
    login: bool = False
    term: str = DEFAULT_TERM
    extra_paths: tuple[str, ...] = ()
    history_bytes: int = 64 * 1024
    max_pending: int = 1024
    read_size: int = 4096
    stop_grace: float = 2.0
    kill_timeout: float = 2.0

    @classmethod
    def from_config(cls, config: TermbrokerConfig, **overrides: Any) -> SessionOptions:
        """Build options from loaded config; keyword overrides win."""
        term = config.terminal
        limits = config.limits
        options = cls(
            shell=term.shell,
            cwd=term.cwd,
            env=dict(term.env),
            size=WindowSize(cols=term.cols, rows=term.rows),
            encoding=term.encoding,
            login=term.login_shell,
            term=term.term,
            extra_paths=tuple(term.extra_paths),
            history_bytes=limits.history_bytes,
            max_pending=limits.subscriber_queue,
            read_size=limits.read_size,
            stop_grace=limits.stop_grace,
            kill_timeout=limits.kill_timeout,
        )
        return options.with_overrides(**overrides)

    def with_overrides(self, **overrides: Any) -> SessionOptions:
        """Copy with the given fields replaced; None values are ignored."""
        overrides = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **overrides) if overrides else self


class SessionController:
    """Owns one shell session and drives its state machine.

    NOT_STARTED -> STARTING -> RUNNING -> STOPPING -> STOPPED, with FAILED
    reachable from STARTING (allocation/spawn failed) and RUNNING (PTY
    read error). A child that exits on its own moves RUNNING straight to
    STOPPED once cleanup finishes.

    Only this class touches the master descriptor and the process handle.
    The pump and writer get an ``FdChannel`` that is revoked before the
    descriptor is closed. Nothing is torn down implicitly: whoever called
    ``start()`` must call ``stop()``.
    """

    def __init__(
        self,
        options: SessionOptions | None = None,
        allocator: PTYAllocator | None = None,
        title: str = "",
    ) -> None:
        self.id: str = uuid.uuid4().hex[:8]
        self.title = title
        self.options = options or SessionOptions()
        self._allocator = allocator or PTYAllocator()
        self.hub = SubscriptionHub(
            RollingBuffer(self.options.history_bytes),
            max_pending=self.options.max_pending,
        )

        self._state = SessionState.NOT_STARTED
        self.failure: str | None = None
        self.exit_code: int | None = None

        self._pair: PTYPair | None = None
        self._process: ShellProcess | None = None
        self._channel: FdChannel | None = None
        self._pump: OutputPump | None = None
        self._writer: InputWriter | None = None
        self._teardown: asyncio.Task[None] | None = None
        self._start_done = asyncio.Event()
        self._closed = asyncio.Event()
        self._listeners: list[StateListener] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Allocate a PTY, spawn the shell and start pumping output.

        Returns once the session is RUNNING and ``STARTED`` was published.

        Raises:
            InvalidStateError: The session was already started.
            AllocationError: No PTY could be allocated.
            SpawnError: The shell could not be launched.
        """
        if self._state is not SessionState.NOT_STARTED:
            raise InvalidStateError("start", self._state)
        self._set_state(SessionState.STARTING)
        opts = self.options

        try:
            self._pair = self._allocator.allocate(opts.size)
            env = build_env(opts.env, term=opts.term, extra_paths=opts.extra_paths)
            self._process = ShellProcess.spawn(
                self._pair, shell=opts.shell, cwd=opts.cwd, env=env, login=opts.login
            )
        except Exception as e:
            if self._pair is not None:
                self._pair.close()
            self._fail(ErrorKind.START, str(e) or repr(e))
            self._start_done.set()
            self._closed.set()
            logger.info("PTY session %s failed to start: %s", self.id, e)
            if isinstance(e, StartError):
                raise
            raise SpawnError(f"could not start shell: {e!r}") from e

        # The child holds its own copy; ours would keep EOF from ever arriving
        self._pair.close_subordinate()
        self._channel = FdChannel(self._pair.master_fd)
        self._writer = InputWriter(self._channel)
        self._pump = OutputPump(
            self._channel,
            self.hub.publish,
            encoding=opts.encoding,
            read_size=opts.read_size,
            name=self.id,
        )
        pump_task = self._pump.start()

        try:
            await self._pump.wait_listening()
        except BaseException as e:
            await asyncio.shield(self._shutdown(_Ending.ABORT, str(e) or repr(e)))
            self._start_done.set()
            if isinstance(e, Exception):
                raise StartError(f"PTY reader could not start: {e}") from e
            raise

        pump_task.add_done_callback(self._on_pump_done)
        self._set_state(SessionState.RUNNING)
        self.hub.publish(OutputEvent.started())
        self._pump.release()
        self._start_done.set()

        logger.info(
            "PTY session %s started: pid=%d pgid=%d shell=%s cwd=%s",
            self.id,
            self._process.pid,
            self._process.pgid,
            " ".join(self._process.argv),
            opts.cwd or ".",
        )

    async def stop(self) -> None:
        """Stop the session and release everything it holds.

        Idempotent and safe to call concurrently: every caller waits for
        the same teardown. When this returns no further events will be
        published. On an unstarted, stopped or failed session it is a
        no-op.
        """
        if self._state is SessionState.STARTING:
            await self._start_done.wait()
        if self._teardown is None:
            if self._state is not SessionState.RUNNING:
                return
            self._teardown = asyncio.get_running_loop().create_task(
                self._shutdown(_Ending.STOP), name=f"pty-stop-{self.id}"
            )
        await asyncio.shield(self._teardown)

    async def wait_closed(self, timeout: float | None = None) -> int | None:
        """Wait until the session reaches STOPPED or FAILED.

        Returns the exit code (None when unknown).

        Raises:
            TimeoutError: ``timeout`` elapsed first.
        """
        await asyncio.wait_for(self._closed.wait(), timeout)
        if self._teardown is not None:
            await asyncio.shield(self._teardown)
        return self.exit_code

    # ------------------------------------------------------------------
    # Input / control
    # ------------------------------------------------------------------

    async def write(self, data: bytes | str) -> int:
        """Send raw input to the shell. ``str`` is encoded first.

        Raises:
            InvalidStateError: The session is not RUNNING.
            SessionIOError: The PTY rejected the write. Unless the child
                simply hung up, the session fails with ``ERROR(IO)``.
        """
        if self._state is not SessionState.RUNNING:
            raise InvalidStateError("write", self._state)
        if isinstance(data, str):
            data = data.encode(self.options.encoding or "utf-8")
        assert self._writer is not None
        try:
            return await self._writer.write(data)
        except SessionIOError as e:
            cause = e.__cause__
            # EIO means the child hung up; the pump reports that as an exit
            if isinstance(cause, OSError) and cause.errno != errno.EIO:
                self._begin_teardown(_Ending.IO, f"PTY write failed: {cause}")
            raise

    def resize(self, cols: int, rows: int) -> None:
        """Change the window size and notify the shell's process group.

        Raises:
            InvalidStateError: The session is not RUNNING. Nothing is queued.
            ValueError: Non-positive dimensions.
            SessionIOError: The ioctl failed.
        """
        if self._state is not SessionState.RUNNING:
            raise InvalidStateError("resize", self._state)
        size = WindowSize(cols=cols, rows=rows)
        assert self._channel is not None and self._process is not None
        try:
            set_window_size(self._channel.fileno(), size)
        except OSError as e:
            raise SessionIOError(f"resize failed: {e}") from e
        self._process.signal_group(signal.SIGWINCH)
        logger.debug("PTY session %s resized to %dx%d", self.id, cols, rows)

    def send_signal(self, sig: int) -> bool:
        """Deliver ``sig`` to the shell's process group while RUNNING."""
        if self._state is not SessionState.RUNNING:
            raise InvalidStateError("signal", self._state)
        assert self._process is not None
        return self._process.signal_group(sig)

    def subscribe(self, max_pending: int | None = None) -> Subscription:
        """Open a new output stream, primed with the recent history."""
        return self.hub.subscribe(max_pending)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def add_state_listener(self, listener: StateListener) -> None:
        """Call ``listener(session, new_state)`` on every transition."""
        self._listeners.append(listener)

    def remove_state_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def alive(self) -> bool:
        return self._state is SessionState.RUNNING

    @property
    def pid(self) -> int | None:
        """Shell pid; None before spawn and after the child was reaped."""
        if self._process is None or self._process.returncode is not None:
            return None
        return self._process.pid

    @property
    def window_size(self) -> WindowSize:
        """Current window size as the PTY reports it."""
        if self._state is not SessionState.RUNNING or self._channel is None:
            raise InvalidStateError("query window size", self._state)
        return get_window_size(self._channel.fileno())

    @property
    def history(self) -> RollingBuffer:
        return self.hub.history

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        logger.debug("PTY session %s: %s -> %s", self.id, self._state, state)
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(self, state)
            except Exception:
                logger.exception("Error in state listener for session %s", self.id)

    def _fail(self, kind: ErrorKind, reason: str) -> None:
        self.failure = reason
        self.hub.publish(OutputEvent.failed(kind, reason))
        self._set_state(SessionState.FAILED)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _on_pump_done(self, task: asyncio.Task) -> None:
        if self._teardown is not None or task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            ending, reason = _Ending.IO, f"PTY reader crashed: {exc!r}"
        else:
            result = task.result()
            if result.outcome is PumpOutcome.EOF:
                ending, reason = _Ending.EXIT, ""
            else:
                ending, reason = _Ending.IO, f"PTY read failed: {result.error}"
        self._begin_teardown(ending, reason)

    def _begin_teardown(self, ending: _Ending, reason: str) -> None:
        if self._teardown is not None:
            return
        self._teardown = asyncio.get_running_loop().create_task(
            self._shutdown(ending, reason), name=f"pty-close-{self.id}"
        )

    async def _shutdown(self, ending: _Ending, reason: str = "") -> None:
        """Cancel the pump, end the child, close the master, publish the end."""
        if ending is _Ending.STOP:
            self._set_state(SessionState.STOPPING)
        code: int | None = None
        try:
            if self._pump is not None:
                await self._pump.cancel()
            if self._writer is not None:
                self._writer.close()
            code = await self._end_child(wait_first=ending is _Ending.EXIT)
        except Exception:
            logger.exception("Error tearing down PTY session %s", self.id)
        finally:
            self._release()

        self.exit_code = code
        if ending in (_Ending.IO, _Ending.ABORT):
            kind = ErrorKind.IO if ending is _Ending.IO else ErrorKind.START
            self._fail(kind, reason)
            logger.info("PTY session %s failed: %s", self.id, reason)
        else:
            self.hub.publish(OutputEvent.exited(code))
            self._set_state(SessionState.STOPPED)
            logger.info(
                "PTY session %s %s (code=%s)",
                self.id,
                "stopped" if ending is _Ending.STOP else "exited",
                code,
            )
        self._closed.set()

    async def _end_child(self, wait_first: bool) -> int | None:
        """Reap the shell, signalling and escalating as needed.

        Returns the exit status, or None if it could not be obtained.
        """
        proc = self._process
        if proc is None:
            return None
        loop = asyncio.get_running_loop()
        opts = self.options

        if wait_first:
            # EOF usually means the shell is on its way out already
            code = await loop.run_in_executor(None, proc.wait, opts.stop_grace)
            if code is not None:
                return code

        if proc.poll() is None:
            # Interactive shells ignore SIGTERM; SIGHUP is what a closed
            # terminal would deliver. SIGCONT wakes a stopped job.
            for sig in (signal.SIGHUP, signal.SIGCONT, signal.SIGTERM):
                proc.signal_group(sig)
            code = await loop.run_in_executor(None, proc.wait, opts.stop_grace)
            if code is None:
                logger.warning(
                    "PTY session %s ignored SIGTERM for %.1fs, sending SIGKILL",
                    self.id,
                    opts.stop_grace,
                )
                proc.signal_group(signal.SIGKILL)
                code = await loop.run_in_executor(None, proc.wait, opts.kill_timeout)
                if code is None:
                    logger.error(
                        "PTY session %s: pid %d survived SIGKILL; giving up",
                        self.id,
                        proc.pid,
                    )
        return proc.returncode

    def _release(self) -> None:
        if self._writer is not None:
            self._writer.close()
        if self._channel is not None:
            self._channel.revoke()
        if self._pair is not None:
            self._pair.close()

    def __repr__(self) -> str:
        return (
            f"SessionController(id={self.id!r}, state={self._state.value}, "
            f"pid={self.pid})"
        )
