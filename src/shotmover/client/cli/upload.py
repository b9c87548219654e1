"""Direct upload command for the shotmover CLI.

Commands:
- upload: Send files to one configured destination
"""

from __future__ import annotations

import sys
from concurrent.futures import Future, wait
from pathlib import Path

import click

from shotmover.client.cli.runtime import ExitCode, Runtime, handle_errors
from shotmover.client.transfer import FileEntry, UploadJob
from shotmover.core.errors import ConfigInvalid
from shotmover.core.paths import derive_key
from shotmover.core.types import DestinationType, JobStatus

DESTINATION_CHOICES = [t.value for t in DestinationType]


@click.command()
@click.argument(
    "files",
    nargs=-1,
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option(
    "--to",
    "destination_type",
    required=True,
    type=click.Choice(DESTINATION_CHOICES, case_sensitive=False),
    help="Destination to send the files to.",
)
@click.option("--overwrite", is_flag=True, help="Do not skip files already at a local destination.")
def upload(files: tuple[Path, ...], destination_type: str, overwrite: bool) -> None:
    """Upload FILES to one destination.

    The configured folder policy decides where each file lands. The
    destination only has to be configured, not enabled.

    Examples:

        shotmover upload a.jpg b.jpg --to s3

        shotmover upload clip.mp4 --to relay
    """
    with handle_errors(), Runtime.load() as rt:
        dest_type = DestinationType(destination_type.lower())
        destination = rt.settings.destination(dest_type)
        if destination is None:
            raise ConfigInvalid(f"Destination {dest_type.value} is not configured")
        destination.validate()
        if dest_type == DestinationType.RELAY:
            rt.require_login()

        pool = rt.upload_pool()
        pool.start()
        futures: list[Future[UploadJob]] = []
        try:
            for path in files:
                entry = FileEntry.from_path(path)
                futures.append(pool.submit(UploadJob(
                    file=entry,
                    destination=destination,
                    key=derive_key(rt.settings.folder_policy, entry.name, entry.modified),
                    skip_duplicates=rt.settings.skip_duplicates and not overwrite,
                )))
            wait(futures)
        except KeyboardInterrupt:
            click.echo("\nCancelling uploads...", err=True)
            pool.cancel_all()
            wait(futures, timeout=10.0)
            sys.exit(int(ExitCode.CANCELLED))
        finally:
            pool.close()

        failed = 0
        for future in futures:
            job = future.result()
            if job.status == JobStatus.DONE:
                verb = "skipped (already present)" if job.skipped else "->"
                click.echo(f"{job.file.name} {verb} {job.remote_ref}")
            else:
                failed += 1
                click.echo(f"{job.file.name}: {job.status.name.lower()}: {job.error}", err=True)

        click.echo(f"{len(futures) - failed} of {len(futures)} files sent to {destination.display_name()}")
        if failed:
            sys.exit(int(ExitCode.PARTIAL_FAILURE))
