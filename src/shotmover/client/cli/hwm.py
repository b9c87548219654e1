"""High-water mark commands for the shotmover CLI.

Commands:
- hwm show: Print the stored sync high-water mark
- hwm set: Move the mark forward
- hwm reset: Move the mark to any instant (downloads newer files again)

The mark is read and written through SyncPoller, which owns it.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

import click

from shotmover.client.cli.runtime import Runtime, handle_errors
from shotmover.client.sync import SyncPoller
from shotmover.client.transfer import FileDownloader
from shotmover.core.clock import format_instant, parse_instant
from shotmover.core.config import DEFAULT_HWM
from shotmover.core.errors import ConfigInvalid


def _parse(value: str) -> datetime:
    try:
        return parse_instant(value)
    except ValueError as e:
        raise ConfigInvalid(f"Invalid instant {value!r}: {e}") from e


@contextmanager
def _poller() -> Iterator[SyncPoller]:
    with Runtime.load() as rt:
        downloader = FileDownloader()
        try:
            yield rt.sync_poller(downloader)
        finally:
            downloader.close()


@click.group()
def hwm() -> None:
    """Sync high-water mark commands.

    Files created on the server after the mark are downloaded by 'sync'.
    """


@hwm.command("show")
def show_cmd() -> None:
    """Print the stored high-water mark."""
    with handle_errors(), _poller() as poller:
        click.echo(format_instant(poller.hwm))


@hwm.command("set")
@click.argument("instant")
def set_cmd(instant: str) -> None:
    """Move the mark forward to INSTANT (ISO-8601).

    Earlier values are ignored; use 'hwm reset' to go back.
    """
    with handle_errors():
        requested = _parse(instant)
        with _poller() as poller:
            before = poller.hwm
            result = poller.set_hwm(requested)
        if result == before:
            click.echo(f"Unchanged: the mark is already at {format_instant(result)}.")
            return
        click.echo(format_instant(result))


@hwm.command("reset")
@click.argument("instant", required=False, default=DEFAULT_HWM)
def reset_cmd(instant: str) -> None:
    """Set the mark to INSTANT, even an earlier one.

    INSTANT defaults to 2025-01-01T00:00:00.000Z.
    """
    with handle_errors():
        requested = _parse(instant)
        with _poller() as poller:
            click.echo(format_instant(poller.reset_hwm(requested)))
