"""Pidfile management so ``tether pair`` and ``tether stop`` can find the daemon."""

from __future__ import annotations

import json
import os
from pathlib import Path

PIDFILE_NAME = "daemon.pid"


def pidfile_path(data_dir: Path) -> Path:
    return data_dir / PIDFILE_NAME


def write_pidfile(data_dir: Path, peer_id: str, root_dir: str | None = None) -> Path:
    """Write pidfile with current PID, peer id and session root.
    Returns the pidfile path."""
    data_dir.mkdir(parents=True, exist_ok=True)
    pidfile = pidfile_path(data_dir)
    data = {
        "pid": os.getpid(),
        "peerId": peer_id,
        "rootDir": root_dir,
    }
    pidfile.write_text(json.dumps(data))
    return pidfile


def read_pidfile(data_dir: Path) -> dict[str, object] | None:
    """Read and return pidfile contents, or None if not found."""
    pidfile = pidfile_path(data_dir)
    if not pidfile.exists():
        return None
    try:
        result = json.loads(pidfile.read_text())
    except (json.JSONDecodeError, OSError):
        return None
    if not isinstance(result, dict):
        return None
    return result


def remove_pidfile(data_dir: Path) -> None:
    """Remove the pidfile if it exists."""
    pidfile_path(data_dir).unlink(missing_ok=True)


def is_process_running(pid: int) -> bool:
    """Check if a process with the given PID is still running."""
    try:
        os.kill(pid, 0)  # Signal 0 = check existence
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Process exists but we can't signal it
