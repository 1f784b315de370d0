"""Root CLI group, version flag and logging setup."""

import logging
import os
import signal

import click

# Ensure SIGPIPE doesn't silently kill the process (e.g. when stdout
# pipe closes while click.echo is writing).
if hasattr(signal, "SIGPIPE"):
    signal.signal(signal.SIGPIPE, signal.SIG_IGN)

from tether import __version__
from tether.commands.call import call
from tether.commands.chat import chat
from tether.commands.daemon import daemon
from tether.commands.init import init
from tether.commands.pair import pair
from tether.commands.stop import stop
from tether.constants import DEBUG_ENV

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(verbose: bool) -> None:
    """DEBUG when asked for (flag or environment), WARNING otherwise."""
    debug = verbose or os.environ.get(DEBUG_ENV, "") not in ("", "0")
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format=_LOG_FORMAT,
    )


@click.group()
@click.version_option(version=__version__, prog_name="tether")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Tether: drive Claude CLI sessions on another machine over encrypted RPC."""
    configure_logging(verbose)


cli.add_command(daemon)
cli.add_command(pair)
cli.add_command(stop)
cli.add_command(chat)
cli.add_command(call)
cli.add_command(init)
