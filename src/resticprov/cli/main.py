"""CLI entry point for resticprov."""

import logging

import click

from resticprov import __version__
from resticprov.cli.volume_cmd import backup_cmd, locations_cmd, restore_cmd


@click.group()
@click.version_option(version=__version__, prog_name="resticprov")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="warning",
    show_default=True,
    help="Logging verbosity.",
)
def cli(log_level: str) -> None:
    """resticprov — volume backup and restore through restic."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


cli.add_command(backup_cmd)
cli.add_command(restore_cmd)
cli.add_command(locations_cmd)


if __name__ == "__main__":
    cli()
