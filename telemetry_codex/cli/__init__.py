"""CLI interface for Telemetry Codex.

Modular CLI structure with command groups split by functionality.
"""

import logging

import click
from dotenv import load_dotenv

from telemetry_codex import __version__

# Load credentials and overrides from a .env file
load_dotenv(override=True)

logger = logging.getLogger(__name__)


@click.group(invoke_without_command=True)
@click.option(
    "--version",
    is_flag=True,
    help="Show the telemetry-codex version and exit.",
)
@click.pass_context
def main(ctx: click.Context, version: bool) -> None:
    """Telemetry Codex - rate-limited discovery of remote telemetry stores.

    \b
      telemetry-codex discover run         Explore the account, resuming if possible
      telemetry-codex discover status      Show progress of the last checkpoint
      telemetry-codex discover snapshot    Keep a labelled copy of the checkpoint
      telemetry-codex discover snapshots   List snapshots
    """
    if version:
        click.echo(__version__)
        ctx.exit()

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


def register_commands() -> None:
    """Register all command groups with the main CLI."""
    from telemetry_codex.cli.discover import discover

    main.add_command(discover)


# Register commands at import time
register_commands()

__all__ = ["main"]
