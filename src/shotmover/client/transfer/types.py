"""Shared types and dataclasses for transfers.

This module provides:
- FileEntry: A file found in an import source
- TransferJob: Status, progress and error bookkeeping shared by jobs
- UploadJob: A file sent to one destination
- DownloadJob: An artifact fetched from the relay server
- PoolStats: Snapshot of a worker pool
- Type aliases for callbacks
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from shotmover.core.destinations import Destination
from shotmover.core.errors import ErrorKind, Internal, MoverError
from shotmover.core.paths import guess_mime_type
from shotmover.core.types import CancelToken, JobStatus


@dataclass(frozen=True)
class FileEntry:
    """A file found while walking an import source.

    Attributes:
        path: Absolute source path.
        name: Basename.
        size: Size in bytes.
        mime_type: MIME hint from the extension.
        modified: Modification instant (local time).
    """

    path: Path
    name: str
    size: int
    mime_type: str
    modified: datetime

    @classmethod
    def from_path(cls, path: Path) -> FileEntry:
        """Create from a file on disk.

        Raises:
            OSError: If the file cannot be stat'ed.
        """
        stat = path.stat()
        return cls(
            path=path.absolute(),
            name=path.name,
            size=stat.st_size,
            mime_type=guess_mime_type(path.name),
            modified=datetime.fromtimestamp(stat.st_mtime),
        )


# Type alias for progress callback (bytes_done, bytes_total)
ProgressCallback = Callable[[int, int], None]


@dataclass(kw_only=True)
class TransferJob:
    """Bookkeeping shared by upload and download jobs.

    A job only moves forward through PENDING -> ACTIVE -> terminal, except
    for ACTIVE -> PENDING when the pool retries it.

    Attributes:
        id: Unique job id.
        status: Current status.
        bytes_done: Bytes transferred so far.
        bytes_total: Expected size in bytes.
        error: Error message if failed.
        error_kind: Classification of the failure.
        attempts: Number of times the job went ACTIVE.
        max_attempts: Attempts allowed before an auth failure is final.
        cancel_token: Cooperative cancellation flag.
    """

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: JobStatus = JobStatus.PENDING
    bytes_done: int = 0
    bytes_total: int = 0
    error: str | None = None
    error_kind: ErrorKind | None = None
    attempts: int = 0
    max_attempts: int = 1
    cancel_token: CancelToken = field(default_factory=CancelToken, repr=False)
    submitted_at: float = field(default_factory=time.time)
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def progress(self) -> int | None:
        """Progress percent, or None when the total is unknown."""
        if self.status == JobStatus.DONE:
            return 100
        if self.bytes_total > 0:
            return (100 * self.bytes_done) // self.bytes_total
        return None

    @property
    def is_terminal(self) -> bool:
        """Check if the job reached DONE, FAILED or CANCELLED."""
        return self.status.is_terminal

    def update_progress(self, bytes_done: int) -> bool:
        """Record progress; regressions and overshoots are ignored.

        Returns:
            True if bytes_done increased.
        """
        if self.bytes_total > 0:
            bytes_done = min(bytes_done, self.bytes_total)
        if bytes_done <= self.bytes_done:
            return False
        self.bytes_done = bytes_done
        return True

    def mark_active(self) -> None:
        """PENDING -> ACTIVE."""
        self._transition(JobStatus.ACTIVE)
        self.attempts += 1
        self.started_at = time.time()

    def mark_pending(self) -> None:
        """ACTIVE -> PENDING (controlled retry).

        bytes_done is kept so progress never goes backwards; the next
        attempt reports nothing until it passes the previous mark.
        """
        if self.status != JobStatus.ACTIVE:
            raise Internal(f"Job {self.id} cannot be retried from {self.status.name}")
        self.status = JobStatus.PENDING

    def mark_done(self, transferred: bool = True) -> None:
        """ACTIVE -> DONE.

        Args:
            transferred: False when the job finished without moving bytes.
        """
        self._transition(JobStatus.DONE)
        if transferred and self.bytes_total > 0:
            self.bytes_done = self.bytes_total
        self.finished_at = time.time()

    def mark_failed(self, error: BaseException | str) -> None:
        """Move to FAILED, recording the error."""
        if isinstance(error, MoverError):
            self.error_kind = error.kind
        elif self.error_kind is None:
            self.error_kind = ErrorKind.INTERNAL
        self.error = str(error)
        self._transition(JobStatus.FAILED)
        self.finished_at = time.time()

    def mark_cancelled(self) -> None:
        """Move to CANCELLED."""
        self.error_kind = ErrorKind.CANCELLED
        self._transition(JobStatus.CANCELLED)
        self.finished_at = time.time()

    def _transition(self, status: JobStatus) -> None:
        if self.status.is_terminal or status < self.status:
            raise Internal(
                f"Job {self.id}: illegal transition {self.status.name} -> {status.name}"
            )
        if status == self.status:
            raise Internal(f"Job {self.id} is already {status.name}")
        self.status = status

    def snapshot(self) -> dict[str, Any]:
        """Plain dict view for events and history."""
        return {
            "job_id": self.id,
            "status": self.status.name,
            "bytes_done": self.bytes_done,
            "bytes_total": self.bytes_total,
            "progress": self.progress,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }


@dataclass(kw_only=True)
class UploadJob(TransferJob):
    """A file sent to one destination.

    Attributes:
        file: The source file.
        destination: Target destination.
        key: Logical key under the destination.
        source_path: Where the bytes are read from (the local copy for RELAY).
        skip_duplicates: Skip if the target already exists (filesystem only).
        skipped: Set when the job finished without transferring bytes.
        remote_ref: Where the file ended up (path, URL or object name).
        import_id: Id of the import run that created the job.
    """

    file: FileEntry
    destination: Destination
    key: str
    source_path: Path | None = None
    skip_duplicates: bool = False
    skipped: bool = False
    remote_ref: str | None = None
    import_id: str | None = None

    def __post_init__(self) -> None:
        if self.source_path is None:
            self.source_path = self.file.path
        if not self.bytes_total:
            self.bytes_total = self.file.size

    def snapshot(self) -> dict[str, Any]:
        data = super().snapshot()
        data.update(
            name=self.file.name,
            key=self.key,
            destination=self.destination.type.value,
            skipped=self.skipped,
            remote_ref=self.remote_ref,
        )
        return data


@dataclass(kw_only=True)
class DownloadJob(TransferJob):
    """An artifact fetched from the relay server into a directory.

    Attributes:
        artifact_id: Server-side id.
        name: File name as provided by the server.
        url: Source URL.
        mime_type: MIME hint.
        created_at: Creation instant on the server.
        target_dir: Directory the file is written to.
        thumbnail_url: Optional preview URL.
        local_path: Final path once DONE.
    """

    artifact_id: str
    name: str
    url: str
    mime_type: str = "application/octet-stream"
    created_at: datetime
    target_dir: Path
    thumbnail_url: str | None = None
    local_path: Path | None = None

    def snapshot(self) -> dict[str, Any]:
        data = super().snapshot()
        data.update(
            artifact_id=self.artifact_id,
            name=self.name,
            created_at=self.created_at.isoformat(),
            local_path=str(self.local_path) if self.local_path else None,
        )
        return data


@dataclass
class PoolStats:
    """Snapshot of a worker pool."""

    total_workers: int
    busy_workers: int
    queue_length: int
    active_jobs: list[str]
    completed_count: int
    failed_count: int
    cancelled_count: int
    is_processing: bool

    def as_dict(self) -> dict[str, Any]:
        """Plain dict view for events."""
        return {
            "total_workers": self.total_workers,
            "busy_workers": self.busy_workers,
            "queue_length": self.queue_length,
            "active_jobs": list(self.active_jobs),
            "completed_count": self.completed_count,
            "failed_count": self.failed_count,
            "cancelled_count": self.cancelled_count,
            "is_processing": self.is_processing,
        }
