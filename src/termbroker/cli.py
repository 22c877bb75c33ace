"""CLI entry point for termbroker."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys
import termios
import tty
from typing import TYPE_CHECKING, Callable

import typer

from termbroker.config import TermbrokerConfig

if TYPE_CHECKING:
    from termbroker.pty.session import SessionOptions

app = typer.Typer(
    name="termbroker",
    help="Run interactive shells on pseudo-terminals and stream their output.",
    no_args_is_help=True,
)

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


def _session_options(
    config: TermbrokerConfig,
    shell: str | None,
    cwd: str | None,
    cols: int | None = None,
    rows: int | None = None,
) -> SessionOptions:
    from termbroker.pty.allocator import WindowSize
    from termbroker.pty.session import SessionOptions

    size = None
    if cols or rows:
        size = WindowSize(
            cols=cols or config.terminal.cols, rows=rows or config.terminal.rows
        )
    return SessionOptions.from_config(config, shell=shell, cwd=cwd, size=size)


@app.command()
def run(
    commands: list[str] = typer.Argument(help="Commands to type into the shell."),
    shell: str | None = typer.Option(None, "--shell", "-s", help="Shell executable."),
    cwd: str | None = typer.Option(None, "--cwd", "-C", help="Working directory."),
    cols: int | None = typer.Option(None, "--cols", help="Terminal width."),
    rows: int | None = typer.Option(None, "--rows", help="Terminal height."),
    timeout: float = typer.Option(
        30.0, "--timeout", "-t", help="Seconds to wait for the shell to finish."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Type commands into a fresh shell, stream its output, then exit."""
    setup_logging(verbose)
    config = TermbrokerConfig.load(config_file)
    options = _session_options(config, shell, cwd, cols, rows)

    from termbroker.pty.errors import StartError

    try:
        code = asyncio.run(_run_commands(commands, options, timeout))
    except StartError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    raise typer.Exit(_exit_status(code))


async def _run_commands(
    commands: list[str], options: SessionOptions, timeout: float
) -> int | None:
    from termbroker.pty.errors import TerminalError
    from termbroker.pty.events import EventType
    from termbroker.pty.session import SessionController

    session = SessionController(options)
    subscription = session.subscribe()
    await session.start()

    async def _print_output() -> None:
        out = sys.stdout.buffer
        async for event in subscription:
            if event.type == EventType.DATA:
                out.write(event.data)
                out.flush()
            elif event.type == EventType.ERROR:
                typer.echo(f"\n[{event.error}] {event.message}", err=True)

    printer = asyncio.create_task(_print_output())
    try:
        try:
            for command in commands:
                await session.write(command + "\n")
            await session.write("exit\n")
        except TerminalError as e:
            logger.debug("Shell ended before all input was sent: %s", e)
        try:
            await session.wait_closed(timeout)
        except TimeoutError:
            typer.echo(f"\n[timed out after {timeout:.0f}s, stopping]", err=True)
    finally:
        await session.stop()
        await printer
    return session.exit_code


@app.command()
def attach(
    shell: str | None = typer.Option(None, "--shell", "-s", help="Shell executable."),
    cwd: str | None = typer.Option(None, "--cwd", "-C", help="Working directory."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Attach this terminal to a new shell session until the shell exits."""
    setup_logging(verbose)
    if not sys.stdin.isatty():
        typer.echo("Error: attach needs an interactive terminal on stdin.", err=True)
        raise typer.Exit(1)

    config = TermbrokerConfig.load(config_file)
    cols, rows = os.get_terminal_size(sys.stdin.fileno())
    options = _session_options(config, shell, cwd, cols, rows)

    from termbroker.pty.errors import StartError

    try:
        code = asyncio.run(_attach(options))
    except StartError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    raise typer.Exit(_exit_status(code))


async def _attach(options: SessionOptions) -> int | None:
    from termbroker.pty.errors import TerminalError
    from termbroker.pty.events import EventType
    from termbroker.pty.session import SessionController

    loop = asyncio.get_running_loop()
    stdin_fd = sys.stdin.fileno()
    session = SessionController(options)
    subscription = session.subscribe()
    await session.start()

    keystrokes: asyncio.Queue[bytes] = asyncio.Queue()

    async def _forward_input() -> None:
        while True:
            data = await keystrokes.get()
            try:
                await session.write(data)
            except TerminalError:
                return  # Shell is gone; the output loop is about to end

    def _on_winch() -> None:
        cols, rows = os.get_terminal_size(stdin_fd)
        with contextlib.suppress(TerminalError):
            session.resize(cols, rows)

    saved = termios.tcgetattr(stdin_fd)
    tty.setraw(stdin_fd)
    loop.add_reader(stdin_fd, _stdin_reader(loop, stdin_fd, keystrokes))
    loop.add_signal_handler(signal.SIGWINCH, _on_winch)
    forwarder = asyncio.create_task(_forward_input())
    try:
        out = sys.stdout.buffer
        async for event in subscription:
            if event.type == EventType.DATA:
                out.write(event.data)
                out.flush()
    finally:
        forwarder.cancel()
        loop.remove_signal_handler(signal.SIGWINCH)
        loop.remove_reader(stdin_fd)
        termios.tcsetattr(stdin_fd, termios.TCSADRAIN, saved)
        await session.stop()
    return session.exit_code


def _stdin_reader(
    loop: asyncio.AbstractEventLoop, fd: int, keystrokes: asyncio.Queue[bytes]
) -> Callable[[], None]:
    """Reader callback that queues local keystrokes for the shell.

    Unregisters itself on EOF or a hung-up terminal, since the selector is
    level-triggered and keeps reporting a dead descriptor as readable.
    """

    def _on_stdin() -> None:
        try:
            data = os.read(fd, 1024)
        except OSError as e:
            logger.debug("Local terminal read failed: %s", e)
            data = b""
        if not data:
            loop.remove_reader(fd)
            return
        keystrokes.put_nowait(data)

    return _on_stdin


@app.command("config")
def show_config(
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Print the effective configuration as JSON."""
    config = TermbrokerConfig.load(config_file)
    typer.echo(config.model_dump_json(indent=2))


def _exit_status(code: int | None) -> int:
    """Map a shell exit status onto a process exit status."""
    if code is None:
        return 1
    if code < 0:
        # Killed by a signal, as a shell would report it
        return 128 - code
    return code


def main() -> None:
    app()


if __name__ == "__main__":
    main()
