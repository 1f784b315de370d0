"""tether pair: print the pairing URL of the running daemon."""

from __future__ import annotations

from pathlib import Path

import click

from tether.codec import EnvelopeCodec
from tether.config.parser import ConfigError, load_config
from tether.daemon import KEY_FILE, load_or_create_key
from tether.pairing import PairingDescriptor, PairingMetadata
from tether.pidfile import is_process_running, read_pidfile


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
def pair(config_file: str | None, data_dir: str | None) -> None:
    """Show the pairing URL (the daemon must be running)."""
    try:
        config = load_config(Path(config_file) if config_file else None)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    directory = config.with_overrides(data_dir=data_dir).resolved_data_dir()
    data = read_pidfile(directory)
    if data is None:
        click.echo(
            f"No running daemon found (no pidfile in {directory}). "
            "Start one with `tether daemon`.",
            err=True,
        )
        raise SystemExit(1)

    pid = data.get("pid")
    peer_id = data.get("peerId")
    if not isinstance(pid, int) or not is_process_running(pid):
        click.echo("Daemon is not running (stale pidfile).", err=True)
        raise SystemExit(1)
    if not isinstance(peer_id, str) or not peer_id:
        click.echo("Invalid pidfile: peer id missing.", err=True)
        raise SystemExit(1)
    if not (directory / KEY_FILE).is_file():
        click.echo(f"No encryption key in {directory}.", err=True)
        raise SystemExit(1)

    key = load_or_create_key(directory)
    root_dir = data.get("rootDir")
    descriptor = PairingDescriptor(
        dht_public_key=peer_id,
        data_key=EnvelopeCodec.from_base64(key).key_base64,
        metadata=PairingMetadata(
            root_dir=root_dir if isinstance(root_dir, str) else None,
        ),
    )
    click.echo(descriptor.to_url())
