"""Main CLI entry point.

Defines the Click group and shared utilities.
"""

from __future__ import annotations

import click

from difftree._version import __version__

BANNER = f"""
     _ _  __  __ _
  __| (_)/ _|/ _| |_ _ __ ___  ___
 / _` | | |_| |_| __| '__/ _ \\/ _ \\
| (_| | |  _|  _| |_| | |  __/  __/
 \\__,_|_|_| |_|  \\__|_|  \\___|\\___|

Version: {__version__}
""".strip("\n")


def print_banner() -> None:
    """Print the difftree banner."""
    click.echo(BANNER)


@click.group()
@click.version_option(version=__version__, prog_name="difftree")
def cli() -> None:
    """difftree: differentiable parameter trees on JAX/Equinox."""


# Import and register subcommands
from difftree.cli.train import train  # noqa: E402

cli.add_command(train)

from difftree.cli.inspect import inspect  # noqa: E402

cli.add_command(inspect)
