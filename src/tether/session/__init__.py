"""Agent sessions: process adapter, registry and wire models."""

from tether.session.process import (
    AgentProcess,
    ClaudeProcess,
    ProcessInputClosed,
    build_claude_args,
    find_claude_path,
)
from tether.session.registry import (
    DEFAULT_BUFFER_CAP,
    OutputBuffer,
    ProcessSpawner,
    SessionRegistry,
    TrackedSession,
)

__all__ = [
    "DEFAULT_BUFFER_CAP",
    "AgentProcess",
    "ClaudeProcess",
    "OutputBuffer",
    "ProcessInputClosed",
    "ProcessSpawner",
    "SessionRegistry",
    "TrackedSession",
    "build_claude_args",
    "find_claude_path",
]
