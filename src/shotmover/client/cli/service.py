"""Service commands for the shotmover CLI.

Commands:
- service test: Check credentials and reachability of a destination
"""

from __future__ import annotations

import json
import sys

import click

from shotmover.client.cli.runtime import ExitCode, Runtime, handle_errors
from shotmover.client.events import SERVICE_TEST
from shotmover.client.sinks import SinkContext, create_sink
from shotmover.core.errors import ConfigInvalid, ErrorKind
from shotmover.core.types import DestinationType

_EXIT_CODES = {
    ErrorKind.CONFIG_INVALID: ExitCode.CONFIG_INVALID,
    ErrorKind.UNAUTHENTICATED: ExitCode.AUTH_FAILED,
}


@click.group()
def service() -> None:
    """Destination (service) commands."""


@service.command("test")
@click.argument(
    "destination_type",
    metavar="TYPE",
    type=click.Choice([t.value for t in DestinationType], case_sensitive=False),
)
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON.")
def test_cmd(destination_type: str, as_json: bool) -> None:
    """Test the connection to a configured destination.

    TYPE is one of local, backup, relay, s3, blob or obj. Nothing is
    uploaded; the check only proves the credentials and the target work.
    """
    with handle_errors(), Runtime.load() as rt:
        dest_type = DestinationType(destination_type.lower())
        destination = rt.settings.destination(dest_type)
        if destination is None:
            raise ConfigInvalid(f"Destination {dest_type.value} is not configured")

        sink = create_sink(destination, SinkContext(relay_client=rt.client, tokens=rt.tokens))
        try:
            check = sink.test_connection()
        finally:
            sink.close()
        rt.bus.publish(SERVICE_TEST, type=dest_type.value, **check.as_dict())

        if as_json:
            click.echo(json.dumps({"type": dest_type.value, **check.as_dict()}))
        elif check.ok:
            detail = f" ({check.reason})" if check.reason else ""
            click.echo(f"{destination.display_name()}: OK{detail}")
        else:
            click.echo(f"{destination.display_name()}: FAILED - {check.reason}", err=True)

        if not check.ok:
            code = _EXIT_CODES.get(check.kind, ExitCode.ERROR) if check.kind else ExitCode.ERROR
            sys.exit(int(code))
