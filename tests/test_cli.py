"""Tests for the termbroker command line."""

from __future__ import annotations

import asyncio
import json
import os

import pytest
from typer.testing import CliRunner

from termbroker.cli import _exit_status, _stdin_reader, app

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated(monkeypatch, tmp_path):
    for var in ("TERMBROKER_SHELL", "TERMBROKER_TERM", "TERMBROKER_ENCODING"):
        monkeypatch.setenv(var, "")
        monkeypatch.delenv(var)
    monkeypatch.chdir(tmp_path)


def test_config_prints_json(tmp_path) -> None:
    path = tmp_path / "termbroker.json"
    path.write_text(json.dumps({"terminal": {"cols": 132}}))
    result = runner.invoke(app, ["config", "--config", str(path)])
    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["terminal"]["cols"] == 132
    assert data["limits"]["history_bytes"] == 65536


def test_run_streams_output() -> None:
    result = runner.invoke(
        app, ["run", "--shell", "/bin/sh", "--timeout", "10", "echo from-$((40+2))"]
    )
    assert result.exit_code == 0, result.output
    assert "from-42" in result.stdout


def test_run_propagates_exit_status() -> None:
    result = runner.invoke(app, ["run", "--shell", "/bin/sh", "exit 7"])
    assert result.exit_code == 7


def test_run_with_missing_shell() -> None:
    result = runner.invoke(app, ["run", "--shell", "/nonexistent/sh", "true"])
    assert result.exit_code == 1
    assert "Error" in result.output


def test_attach_requires_a_terminal() -> None:
    result = runner.invoke(app, ["attach", "--shell", "/bin/sh"])
    assert result.exit_code == 1


@pytest.mark.parametrize(
    "code,status", [(0, 0), (3, 3), (None, 1), (-9, 137), (-15, 143)]
)
def test_exit_status(code, status) -> None:
    assert _exit_status(code) == status


class TestStdinReader:
    @pytest.mark.asyncio
    async def test_keystrokes_are_queued(self) -> None:
        loop = asyncio.get_running_loop()
        read_fd, write_fd = os.pipe()
        keystrokes: asyncio.Queue[bytes] = asyncio.Queue()
        loop.add_reader(read_fd, _stdin_reader(loop, read_fd, keystrokes))
        try:
            os.write(write_fd, b"ls\r")
            assert await asyncio.wait_for(keystrokes.get(), 2) == b"ls\r"
        finally:
            loop.remove_reader(read_fd)
            os.close(read_fd)
            os.close(write_fd)

    @pytest.mark.asyncio
    async def test_eof_unregisters_reader(self) -> None:
        loop = asyncio.get_running_loop()
        read_fd, write_fd = os.pipe()
        keystrokes: asyncio.Queue[bytes] = asyncio.Queue()
        loop.add_reader(read_fd, _stdin_reader(loop, read_fd, keystrokes))
        os.close(write_fd)
        try:
            await asyncio.sleep(0.1)
            # Already removed by the callback itself
            assert loop.remove_reader(read_fd) is False
            assert keystrokes.empty()
        finally:
            os.close(read_fd)
