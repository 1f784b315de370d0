"""Pydantic v2 models for tether.yaml configuration."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tether.constants import DATA_DIR_ENV, DEFAULT_DATA_DIR, DEFAULT_HOST, DEFAULT_PORT


class ListenConfig(BaseModel):
    """Where the daemon accepts connections."""

    model_config = ConfigDict(extra="forbid")

    host: str = Field(default=DEFAULT_HOST, description="Bind address")
    port: int = Field(
        default=DEFAULT_PORT,
        ge=0,
        le=65_535,
        description="TCP port (0 picks a free port)",
    )


class AgentConfig(BaseModel):
    """How the daemon launches the Claude CLI for each session."""

    model_config = ConfigDict(extra="forbid")

    command: str | None = Field(
        default=None,
        description="Path to the claude executable; discovered when unset",
    )
    permission_mode: Literal["default", "acceptEdits", "bypassPermissions", "plan"] = (
        Field(
            default="acceptEdits",
            description="Permission mode used when a spawn request names none",
        )
    )
    model: str | None = Field(
        default=None,
        description="Model used when a spawn request names none",
    )
    max_turns: int | None = Field(
        default=None,
        ge=1,
        description="Passed to claude as --max-turns",
    )


class SessionsConfig(BaseModel):
    """Per-session resource limits."""

    model_config = ConfigDict(extra="forbid")

    output_buffer_cap: int = Field(
        default=1000,
        ge=2,
        description="Max buffered events per session; oldest half dropped on overflow",
    )


class ClientConfig(BaseModel):
    """Timeouts and reconnect schedule for RPC clients."""

    model_config = ConfigDict(extra="forbid")

    call_timeout: float = Field(default=30.0, gt=0, description="Seconds per call")
    connect_timeout: float = Field(default=10.0, gt=0, description="Seconds per connect")
    reconnect_base_delay: float = Field(default=1.0, gt=0)
    reconnect_max_delay: float = Field(default=30.0, gt=0)
    max_reconnect_attempts: int = Field(default=10, ge=0)
    poll_interval: float = Field(
        default=0.5,
        gt=0,
        description="Seconds between get-output polls in chat",
    )

    @model_validator(mode="after")
    def _delays_ordered(self) -> ClientConfig:
        if self.reconnect_max_delay < self.reconnect_base_delay:
            msg = "reconnect_max_delay must not be smaller than reconnect_base_delay"
            raise ValueError(msg)
        return self


class TetherConfig(BaseModel):
    """Top-level tether.yaml configuration."""

    model_config = ConfigDict(extra="forbid")

    version: str = Field(default="1", description="Config schema version")
    data_dir: str | None = Field(
        default=None,
        description="Keys, records and pidfile; defaults to $TETHER_DATA_DIR or ~/.tether",
    )
    root_dir: str | None = Field(
        default=None,
        description="Sessions may only be spawned inside this directory",
    )
    listen: ListenConfig = Field(default_factory=ListenConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)

    @field_validator("version", mode="before")
    @classmethod
    def _coerce_version(cls, value: object) -> object:
        return str(value) if isinstance(value, int) else value

    def with_overrides(
        self,
        *,
        root_dir: str | None = None,
        host: str | None = None,
        port: int | None = None,
        data_dir: str | None = None,
    ) -> TetherConfig:
        """Copy with command-line overrides applied (``None`` keeps the file value)."""
        listen = self.listen.model_copy(
            update={
                k: v for k, v in (("host", host), ("port", port)) if v is not None
            }
        )
        update: dict[str, object] = {"listen": listen}
        if root_dir is not None:
            update["root_dir"] = root_dir
        if data_dir is not None:
            update["data_dir"] = data_dir
        return self.model_copy(update=update)

    def resolved_data_dir(self) -> Path:
        """Data directory after applying the environment override and ``~``."""
        if self.data_dir:
            return Path(self.data_dir).expanduser()
        env = os.environ.get(DATA_DIR_ENV)
        if env:
            return Path(env).expanduser()
        return DEFAULT_DATA_DIR

    def resolved_root_dir(self) -> Path | None:
        if not self.root_dir:
            return None
        return Path(self.root_dir).expanduser().resolve()
