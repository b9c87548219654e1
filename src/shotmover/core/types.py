"""Shared types for shotmover.

This module defines the enums and small primitives used by the sinks,
the worker pools, the import engine and the sync poller.
"""

from __future__ import annotations

import threading
from enum import Enum, IntEnum

from shotmover.core.errors import Cancelled


class DestinationType(str, Enum):
    """Kind of destination a file can be sent to."""

    LOCAL = "local"
    BACKUP = "backup"
    RELAY = "relay"
    S3 = "s3"
    BLOB = "blob"
    OBJ = "obj"

    @property
    def priority(self) -> int:
        """Submission order within a file (lower goes first)."""
        return DESTINATION_PRIORITIES[self]

    @property
    def is_filesystem(self) -> bool:
        """Check if this destination writes to a local directory."""
        return self in (DestinationType.LOCAL, DestinationType.BACKUP)


DESTINATION_PRIORITIES: dict[DestinationType, int] = {
    DestinationType.LOCAL: 100,
    DestinationType.BACKUP: 120,
    DestinationType.S3: 150,
    DestinationType.BLOB: 150,
    DestinationType.OBJ: 150,
    DestinationType.RELAY: 200,
}


class JobStatus(IntEnum):
    """Status of an upload or download job.

    Values are ordered: a job only moves to a higher value, except for the
    ACTIVE -> PENDING transition of a controlled retry.
    """

    PENDING = 1
    ACTIVE = 2
    DONE = 3
    FAILED = 4
    CANCELLED = 5

    @property
    def is_terminal(self) -> bool:
        """Check if no further transition is possible."""
        return self >= JobStatus.DONE


class FolderPolicyKind(str, Enum):
    """How the destination folder of a file is derived."""

    NONE = "none"
    CUSTOM = "custom"
    BY_DATE = "by_date"


class ImportPhase(str, Enum):
    """Phase of an import run."""

    PENDING = "pending"
    SCANNING = "scanning"
    COPYING = "copying"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Check if the run has finished."""
        return self in (
            ImportPhase.COMPLETED,
            ImportPhase.FAILED,
            ImportPhase.CANCELLED,
        )


class S3StorageClass(str, Enum):
    """Storage classes accepted by the S3 sink."""

    STANDARD = "STANDARD"
    REDUCED_REDUNDANCY = "REDUCED_REDUNDANCY"
    STANDARD_IA = "STANDARD_IA"
    ONEZONE_IA = "ONEZONE_IA"
    INTELLIGENT_TIERING = "INTELLIGENT_TIERING"
    GLACIER = "GLACIER"
    DEEP_ARCHIVE = "DEEP_ARCHIVE"
    GLACIER_IR = "GLACIER_IR"


class CancelToken:
    """Cooperative cancellation flag shared between a job and its workers.

    A token may be linked to a parent: cancelling the parent is observed by
    every child, which is how an import run reaches the jobs it submitted.
    """

    def __init__(self, parent: CancelToken | None = None) -> None:
        self._event = threading.Event()
        self._parent = parent

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Check if cancellation was requested here or on a parent."""
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def __call__(self) -> bool:
        return self.cancelled

    def raise_if_cancelled(self) -> None:
        """Raise Cancelled if cancellation was requested.

        Raises:
            Cancelled: If the token (or its parent) is cancelled.
        """
        if self.cancelled:
            raise Cancelled("Operation cancelled")

    def child(self) -> CancelToken:
        """Create a token that is cancelled together with this one."""
        return CancelToken(parent=self)
