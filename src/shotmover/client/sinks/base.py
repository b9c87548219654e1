"""Base classes for upload sinks.

This module provides:
- ConnectionCheck: Outcome of a sink connection test
- PutResult: Outcome of a successful put
- ProgressReader: File wrapper reporting progress and observing cancellation
- Sink: Abstract base class of every backend
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any

from shotmover.core.errors import ErrorKind, IOFailure, MoverError
from shotmover.core.types import CancelToken, DestinationType

if TYPE_CHECKING:
    from shotmover.client.transfer.types import ProgressCallback
    from shotmover.core.destinations import Destination

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024  # 1 MiB


@dataclass(frozen=True)
class ConnectionCheck:
    """Outcome of Sink.test_connection()."""

    ok: bool
    reason: str | None = None
    kind: ErrorKind | None = None

    @classmethod
    def success(cls, reason: str | None = None) -> ConnectionCheck:
        return cls(ok=True, reason=reason)

    @classmethod
    def failure(cls, error: MoverError) -> ConnectionCheck:
        return cls(ok=False, reason=str(error), kind=error.kind)

    def as_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "reason": self.reason,
            "kind": self.kind.value if self.kind else None,
        }


@dataclass(frozen=True)
class PutResult:
    """Outcome of Sink.put().

    Attributes:
        remote_ref: Where the bytes ended up (path, URL or object name).
        bytes_sent: Bytes transferred.
        skipped: True if nothing was transferred because the target existed.
    """

    remote_ref: str
    bytes_sent: int = 0
    skipped: bool = False


class ProgressReader:
    """Read-only file wrapper used as an upload body.

    Every read() checks the cancel token first and reports the running
    byte count afterwards. Seeking back (e.g., when an HTTP library
    rewinds the body) rewinds the count too.
    """

    def __init__(
        self,
        fileobj: IO[bytes],
        total: int,
        progress: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        self._file = fileobj
        self._total = total
        self._progress = progress
        self._cancel = cancel
        self._position = fileobj.tell()

    @property
    def bytes_read(self) -> int:
        return self._position

    def read(self, size: int = -1) -> bytes:
        if self._cancel is not None:
            self._cancel.raise_if_cancelled()
        data = self._file.read(size)
        if data:
            self._position += len(data)
            if self._progress is not None:
                self._progress(self._position, self._total)
        return data

    def seek(self, offset: int, whence: int = 0) -> int:
        self._position = self._file.seek(offset, whence)
        return self._position

    def tell(self) -> int:
        return self._file.tell()

    def fileno(self) -> int:
        return self._file.fileno()

    def seekable(self) -> bool:
        return True

    def readable(self) -> bool:
        return True

    def close(self) -> None:
        self._file.close()


class Sink(ABC):
    """Abstract base class for upload backends.

    A sink accepts the bytes of a local file under a logical key. Sinks
    never retry: failures are raised as MoverError subclasses and the pool
    decides what to do with them.
    """

    def __init__(self, destination: Destination) -> None:
        self._destination = destination

    @property
    def type(self) -> DestinationType:
        return self._destination.type

    @property
    def destination(self) -> Destination:
        return self._destination

    @property
    def priority(self) -> int:
        """Submission order within a file."""
        return self._destination.priority

    def display_name(self) -> str:
        return self._destination.display_name()

    def test_connection(self) -> ConnectionCheck:
        """Check configuration and reachability of the backend.

        Never raises; failures are returned as a ConnectionCheck.
        """
        try:
            self._destination.validate()
            reason = self._check_connection()
        except MoverError as e:
            logger.info(f"Connection test for {self.display_name()} failed: {e}")
            return ConnectionCheck.failure(e)
        except Exception as e:
            logger.exception(f"Connection test for {self.display_name()} crashed")
            return ConnectionCheck(ok=False, reason=str(e), kind=ErrorKind.INTERNAL)
        return ConnectionCheck.success(reason)

    @abstractmethod
    def _check_connection(self) -> str | None:
        """Check the backend; raise MoverError on failure.

        Returns:
            Optional detail for a successful check.
        """
        ...

    @abstractmethod
    def put(
        self,
        local_path: Path,
        key: str,
        progress: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
        mime_type: str | None = None,
    ) -> PutResult:
        """Upload a local file under a key.

        Args:
            local_path: File to read.
            key: Logical key ("folder/sub/name.ext").
            progress: Called with (bytes_done, bytes_total).
            cancel: Observed between chunks; raises Cancelled when set.
            mime_type: Content type hint.

        Raises:
            MoverError: On failure (Cancelled when cancelled).
        """
        ...

    def close(self) -> None:
        """Release clients held by the sink."""


def file_size(local_path: Path) -> int:
    """Size of a file to upload.

    Raises:
        IOFailure: If the file cannot be stat'ed.
    """
    try:
        return Path(local_path).stat().st_size
    except OSError as e:
        raise IOFailure(f"Cannot read {local_path}: {e}") from e


def open_source(local_path: Path) -> IO[bytes]:
    """Open a file for upload.

    Raises:
        IOFailure: If the file cannot be opened.
    """
    try:
        return open(local_path, "rb")
    except OSError as e:
        raise IOFailure(f"Cannot open {local_path}: {e}") from e
