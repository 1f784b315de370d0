"""tether chat: interactive session with a remote daemon."""

from __future__ import annotations

from pathlib import Path

import click

from tether.client.chat import ChatController
from tether.client.tui import ChatApp
from tether.config.parser import ConfigError, load_config
from tether.pairing import PairingError, parse_pairing_url
from tether.rpc.client import RpcClient


@click.command()
@click.argument("pairing_url")
@click.option(
    "-d",
    "-c",
    "--directory",
    default=".",
    help="Directory the remote session works in.",
)
@click.option(
    "-f", "--file", "config_file", type=click.Path(), help="Config file path."
)
def chat(pairing_url: str, directory: str, config_file: str | None) -> None:
    """Chat with Claude on the daemon named by PAIRING_URL."""
    try:
        config = load_config(Path(config_file) if config_file else None)
        descriptor = parse_pairing_url(pairing_url)
    except (ConfigError, PairingError) as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    client = RpcClient.from_pairing(descriptor, config.client)
    target = str(Path(directory).expanduser().resolve())
    controller = ChatController(
        client,
        target,
        poll_interval=config.client.poll_interval,
    )
    app = ChatApp(controller, host=descriptor.metadata.host)
    app.run()

    if controller.status == "error" and controller.error:
        click.echo(f"Error: {controller.error}", err=True)
        raise SystemExit(1)
