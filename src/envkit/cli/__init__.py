"""
envkit CLI -- encrypted env-variable sync from the command line.

Each command group lives in its own module and is registered on the
main Click group via a register function.

Entry point: envkit.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="envkit")
@click.option("--verbose", "-v", is_flag=True, help="Log what envkit is doing.")
def main(verbose):
    """envkit -- share encrypted .env files with your team.

    Values are encrypted on your machine before they leave it.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Register all commands from modular files
# ---------------------------------------------------------------------------

from .project_cmd import register_project_commands
from .sync_cmd import register_sync_commands
from .vars_cmd import register_vars_commands

register_project_commands(main)
register_sync_commands(main)
register_vars_commands(main)
