"""Configuration commands for the shotmover CLI.

Commands:
- config show: Print the configuration with credentials redacted
- config set: Set one configuration key
- config unset: Remove one configuration key
- config check: Validate the configuration
"""

from __future__ import annotations

import json

import click

from shotmover.client.cli.config import get_config_file, load_config, parse_value, save_config
from shotmover.client.cli.runtime import handle_errors
from shotmover.core.config import EngineSettings, sanitize_settings


@click.group("config")
def config_group() -> None:
    """Show and edit ~/.shotmover/config.json."""


@config_group.command("show")
def show_cmd() -> None:
    """Print the configuration (credentials redacted)."""
    with handle_errors():
        click.echo(json.dumps(sanitize_settings(load_config()), indent=2, sort_keys=True))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
def set_cmd(key: str, value: str) -> None:
    """Set KEY to VALUE.

    VALUE is parsed as JSON when possible, so true, 3 and {"bucket": "b"}
    are stored as a boolean, a number and an object. Dotted keys address
    nested objects, e.g. services.s3.bucket.
    """
    with handle_errors():
        config = load_config()
        *parents, leaf = key.split(".")
        target = config
        for part in parents:
            child = target.get(part)
            if not isinstance(child, dict):
                child = {}
                target[part] = child
            target = child
        target[leaf] = parse_value(value)
        save_config(config)
        click.echo(f"{key} updated in {get_config_file()}")


@config_group.command("unset")
@click.argument("key")
def unset_cmd(key: str) -> None:
    """Remove KEY (dotted keys address nested objects)."""
    with handle_errors():
        config = load_config()
        *parents, leaf = key.split(".")
        target = config
        for part in parents:
            target = target.get(part) if isinstance(target.get(part), dict) else {}
        if leaf not in target:
            click.echo(f"{key} is not set")
            return
        del target[leaf]
        save_config(config)
        click.echo(f"{key} removed")


@config_group.command("check")
def check_cmd() -> None:
    """Validate the configuration (exit code 2 if invalid)."""
    with handle_errors():
        settings = EngineSettings.from_config(load_config())
        enabled = ", ".join(d.display_name() for d in settings.enabled_destinations) or "none"
        click.echo(f"Configuration OK. Enabled destinations: {enabled}")
