"""Shell process spawning on a pseudo-terminal."""

from __future__ import annotations

import fcntl
import logging
import os
import shutil
import signal
import subprocess
import termios
from typing import Mapping, Sequence

from termbroker.pty.allocator import PTYPair
from termbroker.pty.errors import SpawnError

logger = logging.getLogger(__name__)

DEFAULT_SHELL = "/bin/sh"
DEFAULT_TERM = "xterm-256color"


def resolve_shell(shell: str | None = None) -> str:
    """Resolve the shell to an absolute executable path.

    Order: explicit argument, ``$SHELL``, then ``/bin/sh``.

    Raises:
        SpawnError: The shell binary does not exist or is not executable.
    """
    candidate = shell or os.environ.get("SHELL") or DEFAULT_SHELL
    if os.sep in candidate:
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate
        raise SpawnError(f"shell not found or not executable: {candidate}")
    found = shutil.which(candidate)
    if found is None:
        raise SpawnError(f"shell not found on PATH: {candidate}")
    return found


def check_cwd(cwd: str) -> str:
    """Validate the working directory and return its absolute path."""
    try:
        # Relative paths need the process cwd, which may have been deleted
        path = os.path.abspath(os.path.expanduser(cwd))
    except OSError as e:
        raise SpawnError(f"working directory is not accessible: {cwd}: {e}") from e
    if not os.path.isdir(path) or not os.access(path, os.X_OK):
        raise SpawnError(f"working directory is not accessible: {path}")
    return path


def build_env(
    overrides: Mapping[str, str] | None = None,
    term: str = DEFAULT_TERM,
    extra_paths: Sequence[str] = (),
) -> dict[str, str]:
    """Inherit the parent environment, then apply overrides.

    ``TERM`` defaults to ``term`` unless overridden; ``extra_paths`` are
    prepended to ``PATH`` (skipping entries already present).
    """
    env = {**os.environ, "TERM": term, **(overrides or {})}
    # Nested multiplexers refuse to start when they think they already own the tty
    env.pop("TMUX", None)

    if extra_paths:
        existing = [p for p in env.get("PATH", "").split(os.pathsep) if p]
        prefix = [p for p in extra_paths if p not in existing]
        env["PATH"] = os.pathsep.join(prefix + existing)
    return env


def _acquire_controlling_terminal() -> None:
    # Runs in the child after setsid(); fd 0 is already the subordinate
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class ShellProcess:
    """A shell running with a PTY subordinate as its controlling terminal.

    Launched via subprocess.Popen (not os.fork) so spawning from inside a
    running event loop is safe. ``start_new_session`` gives the shell its
    own session and process group, which lets us signal the whole job tree
    at once.
    """

    def __init__(self, proc: subprocess.Popen, argv: list[str]) -> None:
        self._proc = proc
        self.argv = argv
        self.pid: int = proc.pid
        try:
            self.pgid: int = os.getpgid(proc.pid)
        except ProcessLookupError:
            # Already gone; with a new session the group id equals the pid
            self.pgid = proc.pid

    @classmethod
    def spawn(
        cls,
        pair: PTYPair,
        shell: str | None = None,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        login: bool = False,
    ) -> ShellProcess:
        """Launch the shell attached to ``pair``'s subordinate side.

        The caller still owns ``pair`` and must release it if this raises.

        Raises:
            SpawnError: Shell missing, cwd inaccessible, argv or env not
                representable, or the OS refused to create the process.
        """
        shell_path = resolve_shell(shell)
        if cwd is None:
            try:
                cwd = os.getcwd()
            except OSError as e:
                raise SpawnError(f"current directory is not accessible: {e}") from e
        workdir = check_cwd(cwd)
        argv = [shell_path, "-l"] if login else [shell_path]

        try:
            proc = subprocess.Popen(
                argv,
                stdin=pair.subordinate_fd,
                stdout=pair.subordinate_fd,
                stderr=pair.subordinate_fd,
                cwd=workdir,
                env=dict(env) if env is not None else build_env(),
                start_new_session=True,
                preexec_fn=_acquire_controlling_terminal,
                close_fds=True,
            )
        except (OSError, subprocess.SubprocessError, ValueError, TypeError) as e:
            # ValueError/TypeError: NUL bytes or malformed names in argv or env
            raise SpawnError(f"could not launch {shell_path}: {e}") from e

        logger.debug("Spawned %s in %s (pid=%d)", " ".join(argv), workdir, proc.pid)
        return cls(proc, argv)

    def poll(self) -> int | None:
        return self._proc.poll()

    @property
    def alive(self) -> bool:
        return self._proc.poll() is None

    @property
    def returncode(self) -> int | None:
        """Exit status once reaped; negative values are ``-signal``."""
        return self._proc.returncode

    def signal_group(self, sig: int) -> bool:
        """Send ``sig`` to the shell's process group.

        Returns False if the group no longer exists.
        """
        if self._proc.returncode is not None:
            return False
        try:
            os.killpg(self.pgid, sig)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self.pgid)
            return False
        except PermissionError as e:
            # The group may have been reused; fall back to the shell itself
            logger.debug("killpg(%d) denied (%s), signalling pid", self.pgid, e)
            return self.send_signal(sig)
        logger.debug("Sent %s to pgid=%d", signal.Signals(sig).name, self.pgid)
        return True

    def send_signal(self, sig: int) -> bool:
        """Send ``sig`` to the shell process only."""
        if self._proc.returncode is not None:
            return False
        try:
            self._proc.send_signal(sig)
        except ProcessLookupError:
            return False
        return True

    def wait(self, timeout: float | None = None) -> int | None:
        """Wait for and reap the shell. Returns None if ``timeout`` elapsed."""
        try:
            return self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None
