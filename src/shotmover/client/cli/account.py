"""Account and version commands for the shotmover CLI.

Commands:
- login: Sign in with an email one-time password
- logout: Forget the stored session token
- version: Show the client version, optionally checking it with the server
"""

from __future__ import annotations

import sys

import click

from shotmover.client.api import RelayClient, VersionStatus
from shotmover.client.auth import token_email, token_expiry
from shotmover.client.cli.config import get_device_id, load_config, save_config
from shotmover.client.cli.runtime import ExitCode, handle_errors
from shotmover.core.config import PRODUCTION_SERVER_URL, RelayConfig, get_app_version


def _relay_client(server: str | None = None) -> RelayClient:
    config = load_config()
    return RelayClient(RelayConfig(server_url=server or config.get("server_url") or PRODUCTION_SERVER_URL))


@click.command()
@click.option("--email", prompt="Email", help="Account email.")
@click.option("--server", default=None, help="Relay server URL (saved for later commands).")
def login(email: str, server: str | None) -> None:
    """Sign in to the relay server.

    A one-time password is sent to EMAIL; enter it when prompted. The
    session token is stored in ~/.shotmover/config.json.
    """
    with handle_errors():
        device_id = get_device_id()
        with _relay_client(server) as client:
            session_id = client.login_initialize(email, device_id)
            click.echo(f"A one-time password was sent to {email}.")
            otp = click.prompt("One-time password").strip()
            token = client.login_finalize(session_id, otp)

        config = load_config()
        if server:
            config["server_url"] = server.rstrip("/")
        config["auth_token"] = token
        save_config(config)

        expires = token_expiry(token)
        click.echo(f"Logged in as {token_email(token) or email}.")
        if expires:
            click.echo(f"Session valid until {expires.isoformat()}")


@click.command()
def logout() -> None:
    """Forget the stored session token."""
    with handle_errors():
        config = load_config()
        if config.pop("auth_token", None) is None:
            click.echo("Not logged in.")
            return
        save_config(config)
        click.echo("Logged out.")


@click.command()
@click.option("--check", is_flag=True, help="Ask the server whether this version is supported.")
def version(check: bool) -> None:
    """Show the client version."""
    click.echo(f"shotmover {get_app_version()}")
    if not check:
        return

    with handle_errors(), _relay_client() as client:
        result = client.version_check()

    click.echo(f"Server verdict: {result.status.value}")
    if result.message:
        click.echo(result.message)
    if result.maintenance_until:
        click.echo(f"Maintenance until {result.maintenance_until.isoformat()}")
    if result.status == VersionStatus.REQUIRED:
        sys.exit(int(ExitCode.ERROR))
