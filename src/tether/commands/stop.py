"""tether stop: signal a running daemon to shut down gracefully."""

from __future__ import annotations

import contextlib
import os
import signal
import time
from pathlib import Path

import click

from tether.config.parser import ConfigError, load_config
from tether.pidfile import is_process_running, read_pidfile, remove_pidfile

#: Maximum valid PID on most systems (Linux default PID_MAX).
_PID_MAX = 4_194_304


@click.command()
@click.option(
    "-f", "--file", "config_file", type=click.Path(), help="Config file path."
)
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Data directory of the daemon.",
)
def stop(config_file: str | None, data_dir: str | None) -> None:
    """Signal a running daemon to shut down gracefully."""
    try:
        config = load_config(Path(config_file) if config_file else None)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    directory = config.with_overrides(data_dir=data_dir).resolved_data_dir()
    data = read_pidfile(directory)

    if data is None:
        click.echo(f"No running daemon found (no pidfile in {directory})")
        raise SystemExit(1)

    pid = data.get("pid")

    if not isinstance(pid, int) or pid <= 1 or pid > _PID_MAX:
        click.echo("Invalid pidfile: PID missing or out of range")
        remove_pidfile(directory)
        raise SystemExit(1)

    if not is_process_running(pid):
        click.echo(f"Daemon (PID {pid}) is no longer running. Cleaning up stale pidfile.")
        remove_pidfile(directory)
        raise SystemExit(0)

    click.echo(f"Stopping daemon (PID {pid})...")

    try:
        os.kill(pid, signal.SIGTERM)
    except PermissionError:
        click.echo(f"Permission denied: cannot signal PID {pid}")
        raise SystemExit(1) from None
    except ProcessLookupError:
        click.echo("Process already exited.")
        remove_pidfile(directory)
        raise SystemExit(0) from None

    # Wait for the process to exit
    for _ in range(100):  # 10 seconds, 100ms intervals
        time.sleep(0.1)
        if not is_process_running(pid):
            click.echo("Daemon stopped.")
            remove_pidfile(directory)
            return

    click.echo("Daemon didn't exit within 10s. Sending SIGKILL...")
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.kill(pid, signal.SIGKILL)

    remove_pidfile(directory)
    click.echo("Daemon killed.")
