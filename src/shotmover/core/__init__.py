"""Core module - Shared types, errors, key derivation and configuration."""

from shotmover.core.clock import Clock, format_instant, parse_instant
from shotmover.core.config import EngineSettings, RelayConfig, sanitize_settings
from shotmover.core.destinations import (
    BackupDestination,
    BlobDestination,
    Destination,
    LocalDestination,
    ObjDestination,
    RelayDestination,
    S3Destination,
    order_destinations,
)
from shotmover.core.errors import (
    Cancelled,
    ConfigInvalid,
    ErrorKind,
    Internal,
    IOFailure,
    MoverError,
    Rejected,
    Unauthenticated,
    Unreachable,
)
from shotmover.core.paths import FolderPolicy, derive_key, sanitize_filename, unique_path
from shotmover.core.types import CancelToken, DestinationType, FolderPolicyKind, ImportPhase, JobStatus

__all__ = [
    # Clock
    "Clock",
    "format_instant",
    "parse_instant",
    # Config
    "EngineSettings",
    "RelayConfig",
    "sanitize_settings",
    # Destinations
    "BackupDestination",
    "BlobDestination",
    "Destination",
    "LocalDestination",
    "ObjDestination",
    "RelayDestination",
    "S3Destination",
    "order_destinations",
    # Errors
    "Cancelled",
    "ConfigInvalid",
    "ErrorKind",
    "IOFailure",
    "Internal",
    "MoverError",
    "Rejected",
    "Unauthenticated",
    "Unreachable",
    # Paths
    "FolderPolicy",
    "derive_key",
    "sanitize_filename",
    "unique_path",
    # Types
    "CancelToken",
    "DestinationType",
    "FolderPolicyKind",
    "ImportPhase",
    "JobStatus",
]
