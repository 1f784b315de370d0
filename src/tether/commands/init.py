"""tether init: write a starter tether.yaml."""

from __future__ import annotations

from pathlib import Path

import click

from tether.config.parser import DEFAULT_CONFIG_NAME

TEMPLATE_YAML = """\
# Tether configuration
version: "1"

# Where the encryption key, discovery records and pidfile live.
# Defaults to $TETHER_DATA_DIR, then ~/.tether
# data_dir: ~/.tether

# Restrict sessions to this directory (and everything below it).
# root_dir: ~/projects

listen:
  host: 127.0.0.1
  port: 7421

agent:
  # Path to the claude executable (found on PATH when unset)
  # command: /usr/local/bin/claude
  permission_mode: acceptEdits   # default | acceptEdits | bypassPermissions | plan
  # model: sonnet
  # max_turns: 50

sessions:
  output_buffer_cap: 1000

client:
  call_timeout: 30
  connect_timeout: 10
  reconnect_base_delay: 1
  reconnect_max_delay: 30
  max_reconnect_attempts: 10
  poll_interval: 0.5
"""


@click.command()
@click.option(
    "--force",
    is_flag=True,
    help=f"Overwrite existing {DEFAULT_CONFIG_NAME} if it exists.",
)
def init(force: bool) -> None:
    """Write a starter tether.yaml in the current directory."""
    config_path = Path.cwd() / DEFAULT_CONFIG_NAME

    # Guard against overwriting an existing config
    if config_path.exists() and not force:
        raise click.ClickException(
            f"{DEFAULT_CONFIG_NAME} already exists. Use --force to overwrite."
        )

    try:
        config_path.write_text(TEMPLATE_YAML, encoding="utf-8")
    except OSError as exc:
        raise click.ClickException(
            f"Cannot write {DEFAULT_CONFIG_NAME}: {exc}"
        ) from exc
    click.echo(f"  Created {DEFAULT_CONFIG_NAME}")

    # Next steps
    click.echo()
    click.echo("Next steps:")
    click.echo(f"  1. Edit {DEFAULT_CONFIG_NAME} (root_dir, agent settings)")
    click.echo("  2. Run `tether daemon` and copy the pairing URL")
    click.echo('  3. On the client: `tether chat "<pairing URL>" -d <directory>`')
