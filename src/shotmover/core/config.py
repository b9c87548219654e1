"""Configuration classes for shotmover.

This module provides:
- RelayConfig: Connection settings for the relay server
- EngineSettings: Parsed, validated settings for the engine
- sanitize_settings: Redact credentials before display or logging
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from platform import system as platform_system
from typing import Any

from shotmover.core.destinations import (
    BackupDestination,
    BlobDestination,
    Destination,
    LocalDestination,
    ObjDestination,
    RelayDestination,
    S3Destination,
)
from shotmover.core.errors import ConfigInvalid
from shotmover.core.paths import (
    DEFAULT_DATE_PATTERN,
    DEFAULT_FOLDER_NAME,
    FolderPolicy,
)
from shotmover.core.types import DestinationType, FolderPolicyKind, S3StorageClass

APP_NAME = "com.chph.zentransfer"
CLIENT_ID = "4a276465-fbc2-4874-833d-966bd48c3ace"
PRODUCTION_SERVER_URL = "https://zentransfer.io"
DEVELOPMENT_SERVER_URL = "https://tmp.chph.dev"

DEFAULT_HWM = "2025-01-01T00:00:00.000Z"
DEFAULT_WORKERS = 3
DEFAULT_MAX_FILE_SIZE = 100 * 1024 * 1024
DEFAULT_POLL_INTERVAL = 30.0

_SENSITIVE_KEY_RE = re.compile(
    r"password|secret|key|token|connection_?string|private_?key",
    re.IGNORECASE,
)
_ACCOUNT_KEY_RE = re.compile(r"(AccountKey=)[^;]*", re.IGNORECASE)
REDACTED = "[REDACTED]"


def get_app_version() -> str:
    """Get the installed package version."""
    try:
        return version("shotmover")
    except PackageNotFoundError:
        return "0.0.0"


@dataclass
class RelayConfig:
    """Configuration for talking to the relay server.

    Attributes:
        server_url: Base URL of the server (e.g., "https://zentransfer.io").
        timeout: Request/connection timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
        app_name: Application identifier sent with session requests.
        app_version: Application version sent with session requests.
        client_id: Registered client identifier.
        platform: Platform name sent with version checks.
    """

    server_url: str = PRODUCTION_SERVER_URL
    timeout: float = 30.0
    verify_ssl: bool = True
    app_name: str = APP_NAME
    app_version: str = field(default_factory=get_app_version)
    client_id: str = CLIENT_ID
    platform: str = field(default_factory=lambda: platform_system().lower())

    def __post_init__(self) -> None:
        """Normalize server URL."""
        self.server_url = self.server_url.rstrip("/")

    @property
    def app_info(self) -> dict[str, str]:
        """Identification fields shared by most request bodies."""
        return {
            "app_name": self.app_name,
            "app_version": self.app_version,
            "client_id": self.client_id,
        }


@dataclass
class EngineSettings:
    """Validated engine settings built from the persisted configuration.

    Attributes:
        source_dir: Default import source (e.g., a mounted card).
        destinations: Every configured destination, enabled or not.
        folder_policy: Folder policy applied to imported files.
        skip_duplicates: Skip files already present on filesystem sinks.
        upload_workers: Size of the upload worker pool.
        download_workers: Size of the download worker pool.
        max_file_size: Largest file accepted by remote sinks, in bytes.
        download_dir: Target directory of the sync poller.
        poll_interval: Seconds between sync polls.
        relay: Relay server connection settings.
    """

    source_dir: Path | None = None
    destinations: list[Destination] = field(default_factory=list)
    folder_policy: FolderPolicy = field(default_factory=FolderPolicy.none)
    skip_duplicates: bool = True
    upload_workers: int = DEFAULT_WORKERS
    download_workers: int = DEFAULT_WORKERS
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    download_dir: Path | None = None
    poll_interval: float = DEFAULT_POLL_INTERVAL
    relay: RelayConfig = field(default_factory=RelayConfig)

    def destination(self, destination_type: DestinationType) -> Destination | None:
        """Get the configured destination of a type, enabled or not."""
        for destination in self.destinations:
            if destination.type == destination_type:
                return destination
        return None

    @property
    def enabled_destinations(self) -> list[Destination]:
        """Enabled destinations in configuration order."""
        return [d for d in self.destinations if d.enabled]

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> EngineSettings:
        """Parse and validate a configuration dictionary.

        Args:
            config: Content of config.json.

        Returns:
            Validated settings.

        Raises:
            ConfigInvalid: Listing every problem found.
        """
        problems: list[str] = []

        def as_int(key: str, default: int, minimum: int = 1) -> int:
            try:
                value = int(config.get(key, default))
            except (TypeError, ValueError):
                problems.append(f"{key} must be an integer")
                return default
            if value < minimum:
                problems.append(f"{key} must be at least {minimum}")
                return default
            return value

        def as_path(key: str) -> Path | None:
            value = config.get(key)
            return Path(value).expanduser() if value else None

        try:
            folder_policy = _parse_folder_policy(config)
        except ConfigInvalid as e:
            problems.extend(e.problems)
            folder_policy = FolderPolicy.none()

        destinations = _parse_destinations(config, problems)

        try:
            poll_interval = float(config.get("poll_interval", DEFAULT_POLL_INTERVAL))
        except (TypeError, ValueError):
            problems.append("poll_interval must be a number")
            poll_interval = DEFAULT_POLL_INTERVAL

        settings = cls(
            source_dir=as_path("source_dir"),
            destinations=destinations,
            folder_policy=folder_policy,
            skip_duplicates=bool(config.get("skip_duplicates", True)),
            upload_workers=as_int("upload_workers", DEFAULT_WORKERS),
            download_workers=as_int("download_workers", DEFAULT_WORKERS),
            max_file_size=as_int("max_file_size", DEFAULT_MAX_FILE_SIZE, minimum=0),
            download_dir=as_path("download_dir"),
            poll_interval=poll_interval,
            relay=RelayConfig(
                server_url=config.get("server_url") or PRODUCTION_SERVER_URL,
            ),
        )

        if problems:
            raise ConfigInvalid("Invalid configuration: " + "; ".join(problems), problems)
        return settings


def _parse_folder_policy(config: dict[str, Any]) -> FolderPolicy:
    raw_kind = str(config.get("folder_policy", FolderPolicyKind.NONE.value)).lower()
    try:
        kind = FolderPolicyKind(raw_kind.replace("-", "_"))
    except ValueError:
        raise ConfigInvalid(f"Unknown folder policy: {raw_kind!r}") from None
    return FolderPolicy(
        kind=kind,
        name=config.get("folder_name") or DEFAULT_FOLDER_NAME,
        pattern=config.get("date_pattern") or DEFAULT_DATE_PATTERN,
    )


def _parse_destinations(config: dict[str, Any], problems: list[str]) -> list[Destination]:
    destinations: list[Destination] = []

    if config.get("local_root"):
        destinations.append(LocalDestination(
            root=Path(config["local_root"]).expanduser(),
            enabled=bool(config.get("local_enabled", True)),
        ))
    if config.get("backup_root"):
        destinations.append(BackupDestination(
            root=Path(config["backup_root"]).expanduser(),
            enabled=bool(config.get("backup_enabled", True)),
        ))
    destinations.append(RelayDestination(enabled=bool(config.get("relay_enabled", False))))

    services = config.get("services") or {}
    if not isinstance(services, dict):
        problems.append("services must be an object")
        return destinations

    for name, params in services.items():
        try:
            destinations.append(parse_service(name, params))
        except ConfigInvalid as e:
            problems.extend(f"{name}: {p}" for p in e.problems)

    for destination in destinations:
        if destination.enabled:
            problems.extend(f"{destination.type.value}: {p}" for p in destination.problems())
    return destinations


def parse_service(name: str, params: dict[str, Any]) -> Destination:
    """Build a cloud destination from its configuration block.

    Args:
        name: Service type name ("s3", "blob" or "obj").
        params: Service parameters and credentials.

    Returns:
        The destination (not yet validated).

    Raises:
        ConfigInvalid: If the type is unknown or parameters are missing.
    """
    try:
        destination_type = DestinationType(name)
    except ValueError:
        raise ConfigInvalid(f"unknown service type {name!r}") from None
    if not isinstance(params, dict):
        raise ConfigInvalid("service parameters must be an object")

    enabled = bool(params.get("enabled", True))
    if destination_type == DestinationType.S3:
        try:
            storage_class = S3StorageClass(params.get("storage_class", "STANDARD"))
        except ValueError:
            raise ConfigInvalid(
                f"unknown storage class {params.get('storage_class')!r}"
            ) from None
        return S3Destination(
            region=params.get("region", ""),
            bucket=params.get("bucket", ""),
            access_key_id=params.get("access_key_id", ""),
            secret_access_key=params.get("secret_access_key", ""),
            prefix=params.get("prefix", ""),
            storage_class=storage_class,
            enabled=enabled,
        )
    if destination_type == DestinationType.BLOB:
        return BlobDestination(
            connection_string=params.get("connection_string", ""),
            container=params.get("container", ""),
            enabled=enabled,
        )
    if destination_type == DestinationType.OBJ:
        return ObjDestination(
            bucket=params.get("bucket", ""),
            service_account_key=_load_service_account_key(params),
            prefix=params.get("prefix", ""),
            enabled=enabled,
        )
    raise ConfigInvalid(f"{name!r} is not a cloud service")


def _load_service_account_key(params: dict[str, Any]) -> Any:
    key = params.get("service_account_key")
    if key is None and params.get("service_account_key_file"):
        key_file = Path(params["service_account_key_file"]).expanduser()
        try:
            key = json.loads(key_file.read_text())
        except (OSError, ValueError) as e:
            raise ConfigInvalid(f"cannot read service account key: {e}") from e
    if isinstance(key, str):
        try:
            key = json.loads(key)
        except ValueError:
            raise ConfigInvalid("service account key is not valid JSON") from None
    return key if key is not None else {}


def sanitize_settings(value: Any) -> Any:
    """Return a copy of a configuration value with credentials redacted.

    Any key whose name looks like a password, secret, key, token or
    connection string is replaced by "[REDACTED]"; AccountKey fragments
    inside connection strings are masked as well.
    """
    if isinstance(value, dict):
        return {
            k: REDACTED if _SENSITIVE_KEY_RE.search(str(k)) and v else sanitize_settings(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [sanitize_settings(v) for v in value]
    if isinstance(value, str):
        return _ACCOUNT_KEY_RE.sub(rf"\1{REDACTED}", value)
    return value
