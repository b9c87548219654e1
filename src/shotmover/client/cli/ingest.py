"""Import command for the shotmover CLI.

Commands:
- import: Copy photos and videos from a source to every enabled destination
"""

from __future__ import annotations

import sys
import threading
from pathlib import Path

import click

from shotmover.client.cli.runtime import ExitCode, Runtime, handle_errors
from shotmover.client.events import AUTH_INVALID, BusEvent
from shotmover.client.ingest import ImportEngine, ImportJob, ImportProgress
from shotmover.core.errors import ConfigInvalid
from shotmover.core.types import DestinationType, ImportPhase


def _status_line(progress: ImportProgress) -> str:
    line = (
        f"  [{progress.phase.value}] {progress.processed_files}/{progress.total_files} files"
        f" ({progress.failed_files} failed)"
    )
    if progress.current_file:
        line += f" - {progress.current_file}"
        if progress.current_destination:
            line += f" -> {progress.current_destination}"
    return line[:79]


@click.command("import")
@click.argument(
    "source",
    required=False,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
)
@click.option("--no-recurse", is_flag=True, help="Do not descend into sub-folders.")
@click.option("--all-files", "include_all", is_flag=True, help="Import every file, not only media.")
@click.option("--no-progress", is_flag=True, help="Disable the progress line.")
def import_cmd(source: Path | None, no_recurse: bool, include_all: bool, no_progress: bool) -> None:
    """Import photos and videos from SOURCE.

    Files are copied to the local and backup folders and uploaded to
    the relay and cloud services that are enabled in the configuration.
    SOURCE defaults to the configured source_dir.

    Exits with 4 if some files failed and 5 if interrupted.
    """
    with handle_errors(), Runtime.load() as rt:
        try:
            job = ImportJob.from_settings(
                rt.settings,
                source=source,
                recurse=not no_recurse,
                include_all=include_all,
            )
        except ValueError as e:
            raise ConfigInvalid(f"{e} (pass SOURCE or set source_dir)") from e
        if not job.source.is_dir():
            raise ConfigInvalid(f"Source directory does not exist: {job.source}")
        if not job.destinations:
            raise ConfigInvalid("No destination is enabled")
        if any(d.type == DestinationType.RELAY for d in job.destinations):
            rt.require_login()
            rt.tokens.start()

        pool = rt.upload_pool()
        engine = ImportEngine(pool, bus=rt.bus)
        auth_lost = threading.Event()

        def on_auth_invalid(event: BusEvent) -> None:
            auth_lost.set()

        rt.bus.subscribe(AUTH_INVALID, on_auth_invalid)

        names = ", ".join(d.display_name() for d in job.destinations)
        click.echo(f"Importing from {job.source} to {names}")

        run = engine.start(job)
        interrupted = False
        try:
            while not run.wait(0.5):
                if auth_lost.is_set():
                    engine.cancel(run)
                    run.wait()
                    break
                if not no_progress:
                    sys.stdout.write("\r" + _status_line(run.status()).ljust(79))
                    sys.stdout.flush()
        except KeyboardInterrupt:
            interrupted = True
            click.echo("\nCancelling import...", err=True)
            engine.cancel(run)
            run.wait()
        finally:
            engine.close()
            pool.close()

        if not no_progress:
            sys.stdout.write("\r" + " " * 79 + "\r")

        progress = run.status()
        click.echo(
            f"Import {progress.phase.value}: {progress.completed_files} completed"
            f" ({progress.skipped_files} skipped), {progress.failed_files} failed,"
            f" {progress.cancelled_files} cancelled of {progress.total_files} files"
        )
        for error in progress.errors:
            click.echo(f"  Error: {error}", err=True)

        if auth_lost.is_set():
            click.echo("Error: Session expired. Run 'shotmover login' again.", err=True)
            sys.exit(int(ExitCode.AUTH_FAILED))
        if interrupted or progress.phase == ImportPhase.CANCELLED:
            sys.exit(int(ExitCode.CANCELLED))
        if progress.phase == ImportPhase.FAILED:
            sys.exit(int(ExitCode.ERROR))
        if progress.failed_files:
            sys.exit(int(ExitCode.PARTIAL_FAILURE))
