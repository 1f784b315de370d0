"""Configuration models and parser for tether.yaml."""

from tether.config.models import (
    AgentConfig,
    ClientConfig,
    ListenConfig,
    SessionsConfig,
    TetherConfig,
)
from tether.config.parser import DEFAULT_CONFIG_NAME, ConfigError, load_config

__all__ = [
    "DEFAULT_CONFIG_NAME",
    "AgentConfig",
    "ClientConfig",
    "ConfigError",
    "ListenConfig",
    "SessionsConfig",
    "TetherConfig",
    "load_config",
]
