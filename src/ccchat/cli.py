"""Root CLI group and version flag."""

import signal

import click

# A closed stdout pipe (e.g. `ccchat chats | head`) must not kill the
# process mid-write.
if hasattr(signal, "SIGPIPE"):
    signal.signal(signal.SIGPIPE, signal.SIG_IGN)

from ccchat import __version__
from ccchat.commands.ask import ask
from ccchat.commands.chats import chats
from ccchat.commands.init import init
from ccchat.commands.serve import serve


@click.group()
@click.version_option(version=__version__, prog_name="ccchat")
def cli() -> None:
    """ccchat — streaming chat backend for the Claude Code CLI."""


cli.add_command(init)
cli.add_command(serve)
cli.add_command(ask)
cli.add_command(chats)
