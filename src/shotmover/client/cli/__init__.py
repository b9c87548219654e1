"""Command-line interface for shotmover.

This module provides the main CLI entry point and assembles all commands.

Commands:
- import: Import photos and videos from a card or folder
- sync: Download files sent to this account
- upload: Send files to one destination
- service test: Test the connection to a destination
- login / logout: Manage the relay session
- version: Show (and optionally check) the client version
- hwm: Show, advance or reset the sync high-water mark
- config: Show and edit the configuration

Exit codes: 0 success, 1 error, 2 invalid configuration, 3 authentication
failure, 4 some files failed, 5 cancelled.
"""

from __future__ import annotations

import click

from shotmover.client.cli.account import login, logout, version
from shotmover.client.cli.config import (
    get_config_dir,
    get_config_file,
    get_device_id,
    load_config,
    save_config,
)
from shotmover.client.cli.hwm import hwm
from shotmover.client.cli.ingest import import_cmd
from shotmover.client.cli.runtime import ExitCode, configure_logging
from shotmover.client.cli.service import service
from shotmover.client.cli.settings import config_group
from shotmover.client.cli.sync import sync
from shotmover.client.cli.upload import upload


@click.group()
@click.version_option(package_name="shotmover")
@click.option("-v", "--verbose", count=True, help="Log more (-v info, -vv debug).")
def cli(verbose: int) -> None:
    """shotmover - move photos and videos to local, relay and cloud destinations."""
    configure_logging(verbose)


# Transfer commands
cli.add_command(import_cmd)
cli.add_command(sync)
cli.add_command(upload)
cli.add_command(service)

# Account commands
cli.add_command(login)
cli.add_command(logout)
cli.add_command(version)

# State and configuration
cli.add_command(hwm)
cli.add_command(config_group)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    "ExitCode",
    "cli",
    "main",
    "get_config_dir",
    "get_config_file",
    "get_device_id",
    "load_config",
    "save_config",
]
