"""tether daemon: serve Claude sessions over encrypted RPC."""

from __future__ import annotations

import asyncio
import contextlib
import signal
from pathlib import Path

import click

from tether.config.models import TetherConfig
from tether.config.parser import ConfigError, load_config
from tether.daemon import Daemon
from tether.errors import TetherError
from tether.pairing import describe_host
from tether.pidfile import remove_pidfile, write_pidfile


@click.command()
@click.option(
    "-f", "--file", "config_file", type=click.Path(), help="Config file path."
)
@click.option(
    "--root-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Only allow sessions inside this directory.",
)
@click.option("--host", default=None, help="Address to listen on.")
@click.option(
    "--port",
    type=click.IntRange(0, 65_535),
    default=None,
    help="TCP port to listen on (0 picks a free port).",
)
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Where keys, records and the pidfile live.",
)
def daemon(
    config_file: str | None,
    root_dir: str | None,
    host: str | None,
    port: int | None,
    data_dir: str | None,
) -> None:
    """Start the daemon and print its pairing URL."""
    try:
        config = load_config(Path(config_file) if config_file else None)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    config = config.with_overrides(
        root_dir=root_dir, host=host, port=port, data_dir=data_dir
    )
    asyncio.run(_run_daemon(config))


async def _run_daemon(config: TetherConfig) -> None:
    try:
        server = Daemon(config)
    except (OSError, ValueError) as exc:
        click.echo(f"Error: cannot initialise daemon: {exc}", err=True)
        raise SystemExit(1) from exc

    try:
        await server.start()
    except TetherError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    _print_banner(server)
    root = str(server.root_dir) if server.root_dir else None
    write_pidfile(server.data_dir, server.transport.peer_id, root)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on every platform (e.g. Windows event loops).
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, shutdown_event.set)

    try:
        await shutdown_event.wait()
    finally:
        click.echo("\nShutting down...")
        await server.stop()
        remove_pidfile(server.data_dir)


def _print_banner(server: Daemon) -> None:
    click.echo()
    click.echo(click.style("  Tether daemon", bold=True))
    click.echo(f"  Host:    {describe_host()}")
    click.echo(f"  Peer id: {server.transport.peer_id}")
    if server.root_dir:
        click.echo(f"  Root:    {server.root_dir} (sessions restricted)")
    click.echo()
    click.echo("  Pairing URL:")
    click.echo(f"    {server.pairing_url()}")
    click.echo()
    click.echo("  Waiting for connections... (Ctrl+C to stop)")
    click.echo()
