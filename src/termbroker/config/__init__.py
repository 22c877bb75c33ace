"""Configuration — Pydantic models for termbroker settings."""

from __future__ import annotations

import json
import os
from typing import Any

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field, field_validator


class TerminalConfig(BaseModel):
    """How shells are launched.

    ``shell`` falls back to ``$SHELL`` and then ``/bin/sh`` when unset.
    """

    shell: str | None = Field(default=None, description="Shell executable")
    login_shell: bool = Field(
        default=False, description="Start the shell as a login shell (-l)"
    )
    cwd: str | None = Field(
        default=None, description="Working directory. Defaults to the current one."
    )
    term: str = Field(default="xterm-256color", description="Value for $TERM")
    extra_paths: list[str] = Field(
        default_factory=list,
        description="Directories prepended to $PATH for the shell",
    )
    env: dict[str, str] = Field(
        default_factory=dict, description="Extra environment variables"
    )
    cols: int = Field(default=80, gt=0)
    rows: int = Field(default=24, gt=0)
    encoding: str | None = Field(
        default="utf-8",
        description=(
            "Text encoding of the shell's output. Chunks are aligned to whole "
            "characters in this encoding; None treats output as raw binary."
        ),
    )

    @field_validator("encoding")
    @classmethod
    def _known_encoding(cls, value: str | None) -> str | None:
        if value is None:
            return None
        import codecs

        try:
            codecs.getincrementaldecoder(value)
        except LookupError as e:
            raise ValueError(f"unknown encoding: {value}") from e
        return value


class LimitsConfig(BaseModel):
    """Resource bounds for sessions and subscribers."""

    history_bytes: int = Field(
        default=64 * 1024, ge=0, description="Output replayed to late subscribers"
    )
    subscriber_queue: int = Field(
        default=1024, ge=1, description="Max undelivered events per subscriber"
    )
    read_size: int = Field(default=4096, ge=1, description="Bytes per PTY read")
    stop_grace: float = Field(
        default=2.0, ge=0, description="Seconds to wait after SIGHUP/SIGTERM"
    )
    kill_timeout: float = Field(
        default=2.0, ge=0, description="Seconds to wait after SIGKILL"
    )
    max_sessions: int = Field(default=10, ge=1)


class TermbrokerConfig(BaseModel):
    """Top-level termbroker configuration."""

    terminal: TerminalConfig = Field(default_factory=TerminalConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)

    @classmethod
    def load(cls, config_path: str | None = None) -> TermbrokerConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            TERMBROKER_SHELL           - Shell executable
            TERMBROKER_TERM            - Value for $TERM inside sessions
            TERMBROKER_ENCODING        - Output encoding ("none" for raw bytes)
            TERMBROKER_HISTORY_BYTES   - Replay history size in bytes
            TERMBROKER_STOP_GRACE      - Seconds before escalating to SIGKILL
        """
        # Real environment variables win over .env entries
        load_dotenv(find_dotenv(usecwd=True))

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        terminal = config_data.setdefault("terminal", {})
        limits = config_data.setdefault("limits", {})

        env_shell = os.environ.get("TERMBROKER_SHELL")
        if env_shell:
            terminal["shell"] = env_shell

        env_term = os.environ.get("TERMBROKER_TERM")
        if env_term:
            terminal["term"] = env_term

        env_encoding = os.environ.get("TERMBROKER_ENCODING")
        if env_encoding:
            terminal["encoding"] = (
                None if env_encoding.lower() in ("none", "binary") else env_encoding
            )

        env_history = os.environ.get("TERMBROKER_HISTORY_BYTES")
        if env_history:
            limits["history_bytes"] = int(env_history)

        env_grace = os.environ.get("TERMBROKER_STOP_GRACE")
        if env_grace:
            limits["stop_grace"] = float(env_grace)

        return cls.model_validate(config_data)
