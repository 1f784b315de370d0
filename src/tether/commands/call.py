"""tether call: invoke a single RPC method and print the result."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import click

from tether.config.models import ClientConfig
from tether.config.parser import ConfigError, load_config
from tether.errors import TetherError
from tether.pairing import PairingDescriptor, PairingError, parse_pairing_url
from tether.rpc.client import RpcClient


@click.command()
@click.argument("pairing_url")
@click.argument("method")
@click.option(
    "-p",
    "--params",
    "params_json",
    default="{}",
    show_default=True,
    help="Call parameters as a JSON document.",
)
@click.option(
    "-t",
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Seconds to wait for the response.",
)
@click.option(
    "-f", "--file", "config_file", type=click.Path(), help="Config file path."
)
def call(
    pairing_url: str,
    method: str,
    params_json: str,
    timeout: float | None,
    config_file: str | None,
) -> None:
    """Call METHOD on the daemon named by PAIRING_URL.

    \b
    Examples:
      tether call "$URL" ping
      tether call "$URL" list-sessions
      tether call "$URL" get-output -p '{"sessionId": "...", "clear": true}'
    """
    try:
        config = load_config(Path(config_file) if config_file else None)
        descriptor = parse_pairing_url(pairing_url)
    except (ConfigError, PairingError) as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    try:
        params = json.loads(params_json)
    except json.JSONDecodeError as exc:
        click.echo(f"Error: --params is not valid JSON: {exc}", err=True)
        raise SystemExit(1) from exc

    try:
        result = asyncio.run(_call(descriptor, config.client, method, params, timeout))
    except TetherError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    click.echo(json.dumps(result, indent=2))


async def _call(
    descriptor: PairingDescriptor,
    config: ClientConfig,
    method: str,
    params: Any,
    timeout: float | None,
) -> Any:
    async with RpcClient.from_pairing(descriptor, config) as client:
        return await client.call(method, params, timeout=timeout)
