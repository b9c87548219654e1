"""Configuration utilities for the shotmover CLI.

This module provides shared configuration functions used across CLI commands.
"""

from __future__ import annotations

import json
import uuid
from pathlib import Path
from typing import Any

from shotmover.core.errors import ConfigInvalid


def get_config_dir() -> Path:
    """Get the configuration directory for shotmover.

    Returns:
        Path to ~/.shotmover or equivalent.
    """
    return Path.home() / ".shotmover"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def get_state_file() -> Path:
    """Get the path to the state database (sync HWM)."""
    return get_config_dir() / "state.db"


def load_config() -> dict[str, Any]:
    """Load configuration from config file.

    Raises:
        ConfigInvalid: If the file is not a JSON object.
    """
    config_file = get_config_file()
    if not config_file.exists():
        return {}
    try:
        data = json.loads(config_file.read_text())
    except ValueError as e:
        raise ConfigInvalid(f"{config_file} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigInvalid(f"{config_file} must contain a JSON object")
    return data


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def get_device_id() -> str:
    """Get the persistent id of this installation, creating it on first use."""
    config = load_config()
    if not config.get("device_id"):
        config["device_id"] = str(uuid.uuid4())
        save_config(config)
    return str(config["device_id"])


def parse_value(raw: str) -> Any:
    """Interpret a command-line value as JSON, falling back to a plain string.

    "true", "3" and '{"a": 1}' become a bool, an int and a dict; anything
    that is not JSON is kept as the string itself.
    """
    try:
        return json.loads(raw)
    except ValueError:
        return raw
