"""Shared constants for the Tether runtime."""

from __future__ import annotations

from pathlib import Path

#: Default TCP port the daemon listens on.
DEFAULT_PORT = 7421

#: Default bind address for the daemon.
DEFAULT_HOST = "127.0.0.1"

#: Environment variable overriding the data directory.
DATA_DIR_ENV = "TETHER_DATA_DIR"

#: Environment variable that turns on debug logging.
DEBUG_ENV = "TETHER_DEBUG"

#: Default data directory (keys, records, pidfile).
DEFAULT_DATA_DIR = Path.home() / ".tether"

#: Pairing URL prefix produced by ``PairingDescriptor.to_url``.
PAIRING_PREFIX = "tether://connect?code="

#: Older pairing prefixes still accepted when parsing.
LEGACY_PAIRING_PREFIXES = (
    "p2p-claude://connect?code=",
    "happy://p2p-machine?code=",
)

#: Record-store key under which the daemon mirrors its session list.
SESSION_STATE_KEY = "sessions"
