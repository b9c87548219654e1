"""Sync command for the shotmover CLI.

Commands:
- sync: Download new files from the relay server
"""

from __future__ import annotations

import sys
import threading
import time
from pathlib import Path

import click

from shotmover.client.cli.runtime import ExitCode, Runtime, handle_errors
from shotmover.client.events import AUTH_INVALID, DOWNLOAD_QUEUE, BusEvent
from shotmover.client.sync import SyncPoller
from shotmover.client.transfer import DownloadPool, FileDownloader
from shotmover.core.clock import format_instant
from shotmover.core.errors import ConfigInvalid


@click.command()
@click.option(
    "--dir",
    "target_dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Download folder (default: download_dir from the configuration).",
)
@click.option("--once", is_flag=True, help="Download the current backlog, then exit.")
@click.option("--since", default=None, help="Start from this instant instead of the stored HWM.")
def sync(target_dir: Path | None, once: bool, since: str | None) -> None:
    """Download files sent to this account.

    Polls the relay server for files newer than the stored high-water
    mark and downloads them. Runs until interrupted unless --once is given.
    """
    with handle_errors(), Runtime.load() as rt:
        target = target_dir or rt.settings.download_dir
        if target is None:
            raise ConfigInvalid("No download folder (pass --dir or set download_dir)")
        target = target.expanduser()
        target.mkdir(parents=True, exist_ok=True)
        rt.require_login()
        rt.tokens.start()

        downloader = FileDownloader()
        poller = rt.sync_poller(downloader)
        pool = poller.download_pool
        auth_lost = threading.Event()
        poll_errors: list[str] = []

        def on_auth_invalid(event: BusEvent) -> None:
            auth_lost.set()

        def on_queue(event: BusEvent) -> None:
            if event.data.get("action") == "error":
                poll_errors.append(str(event.data.get("error")))

        rt.bus.subscribe(AUTH_INVALID, on_auth_invalid)
        rt.bus.subscribe(DOWNLOAD_QUEUE, on_queue)

        if since is not None:
            try:
                poller.reset_hwm(since)
            except ValueError as e:
                raise ConfigInvalid(f"Invalid --since value {since!r}: {e}") from e

        try:
            if once:
                _drain_backlog(poller, pool, target, rt)
            else:
                click.echo(f"Syncing into {target} (Ctrl+C to stop)")
                poller.start(target, token_supplier=rt.tokens.bearer)
                while poller.is_monitoring:
                    time.sleep(0.5)
                poller.stop()
        except KeyboardInterrupt:
            click.echo("\nStopping sync...", err=True)
            poller.stop(drain=False)
            _report(pool, poller)
            sys.exit(int(ExitCode.CANCELLED))
        finally:
            pool.stop()
            downloader.close()

        rt.bus.flush()
        _report(pool, poller)
        if auth_lost.is_set():
            click.echo("Error: Session expired. Run 'shotmover login' again.", err=True)
            sys.exit(int(ExitCode.AUTH_FAILED))
        if pool.stats().failed_count or poll_errors:
            sys.exit(int(ExitCode.PARTIAL_FAILURE))


def _drain_backlog(poller: SyncPoller, pool: DownloadPool, target: Path, rt: Runtime) -> None:
    """Poll until the server reports no more items and downloads are idle.

    Stops early if a round did not move the HWM, so a backlog that keeps
    failing is not polled forever.
    """
    poller.prepare(target, token_supplier=rt.tokens.bearer)
    while True:
        before = poller.hwm
        result = poller.poll_once()
        pool.wait_idle()
        if not result.more_items or poller.hwm == before:
            break


def _report(pool: DownloadPool, poller: SyncPoller) -> None:
    stats = pool.stats()
    click.echo(
        f"Downloaded {stats.completed_count} files, {stats.failed_count} failed"
        f" (HWM {format_instant(poller.hwm)})"
    )
    for job in pool.failed_jobs:
        click.echo(f"  Error: {job['name']}: {job['error']}", err=True)
