"""Downloads of relay artifacts.

This module provides:
- FileDownloader: Streams an HTTP(S) GET into a file with atomic rename
- DownloadPool: Runs DownloadJobs with bounded concurrency
"""

from __future__ import annotations

import contextlib
import logging
import os
import tempfile
from pathlib import Path
from typing import IO, TYPE_CHECKING

import httpx

from shotmover.client.events import DOWNLOAD_PROGRESS, DOWNLOAD_QUEUE
from shotmover.client.transfer.pool import DEFAULT_MAX_WORKERS, PROGRESS_INTERVAL, WorkerPool
from shotmover.client.transfer.types import DownloadJob, ProgressCallback
from shotmover.core.errors import IOFailure, Rejected, Unreachable
from shotmover.core.paths import sanitize_filename, unique_path
from shotmover.core.types import CancelToken

if TYPE_CHECKING:
    from shotmover.client.events import EventBus

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 64 * 1024
CONNECT_TIMEOUT = 30.0
MAX_REDIRECTS = 5


class FileDownloader:
    """Streams a URL into a directory.

    Bytes are written to a hidden ``.part`` file next to the target and
    renamed once complete; the partial file is removed on any failure,
    including cancellation. The final name is the sanitised server name,
    with a " (n)" suffix if a file of that name already exists.
    """

    def __init__(
        self,
        client: httpx.Client | None = None,
        connect_timeout: float = CONNECT_TIMEOUT,
        verify_ssl: bool = True,
    ) -> None:
        """Initialize the downloader.

        Args:
            client: HTTP client to use (one is created otherwise).
            connect_timeout: Connect timeout in seconds; reads are unbounded.
            verify_ssl: Verify TLS certificates.
        """
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(None, connect=connect_timeout),
            follow_redirects=True,
            max_redirects=MAX_REDIRECTS,
            verify=verify_ssl,
        )

    def close(self) -> None:
        """Close the HTTP client if it was created here."""
        if self._owns_client:
            self._client.close()

    def download(
        self,
        url: str,
        target_dir: Path,
        name: str,
        progress: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
        expected_size: int = 0,
    ) -> Path:
        """Download a URL into target_dir.

        Args:
            url: Source URL.
            target_dir: Directory to write into (created if missing).
            name: File name suggested by the server.
            progress: Called with (bytes_done, bytes_total).
            cancel: Observed between chunks.
            expected_size: Size to report when the response has no length.

        Returns:
            Path of the downloaded file.

        Raises:
            Rejected: If the server does not answer 200.
            Unreachable: On transport errors.
            IOFailure: If the file cannot be written.
            Cancelled: If cancelled.
        """
        cancel = cancel or CancelToken()
        cancel.raise_if_cancelled()
        safe_name = sanitize_filename(name)

        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=target_dir, prefix=f".{safe_name}.", suffix=".part")
        except OSError as e:
            raise IOFailure(f"Cannot write to {target_dir}: {e}") from e

        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as f:
                self._stream_into(url, f, progress, cancel, expected_size)
            cancel.raise_if_cancelled()
            final = unique_path(target_dir / safe_name)
            os.replace(tmp_path, final)
        except OSError as e:
            with contextlib.suppress(OSError):
                tmp_path.unlink()
            raise IOFailure(f"Cannot write {safe_name}: {e}") from e
        except BaseException:
            with contextlib.suppress(OSError):
                tmp_path.unlink()
            raise

        logger.debug(f"Downloaded {url} -> {final}")
        return final

    def _stream_into(
        self,
        url: str,
        f: IO[bytes],
        progress: ProgressCallback | None,
        cancel: CancelToken,
        expected_size: int,
    ) -> None:
        try:
            with self._client.stream("GET", url) as response:
                if response.status_code != 200:
                    raise Rejected(
                        f"Download of {url} failed with HTTP {response.status_code}",
                        response.status_code,
                    )
                try:
                    total = int(response.headers.get("Content-Length", expected_size))
                except ValueError:
                    total = expected_size

                done = 0
                for chunk in response.iter_bytes(DOWNLOAD_CHUNK_SIZE):
                    cancel.raise_if_cancelled()
                    f.write(chunk)
                    done += len(chunk)
                    if progress:
                        progress(done, total)
        except httpx.TimeoutException as e:
            raise Unreachable(f"Timed out downloading {url}: {e}") from e
        except httpx.TransportError as e:
            raise Unreachable(f"Cannot download {url}: {e}") from e
        except httpx.TooManyRedirects as e:
            raise Rejected(f"Too many redirects for {url}") from e


class DownloadPool(WorkerPool[DownloadJob]):
    """Pool of workers downloading relay artifacts."""

    kind = "download"
    progress_topic = DOWNLOAD_PROGRESS
    queue_topic = DOWNLOAD_QUEUE

    def __init__(
        self,
        bus: EventBus | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        downloader: FileDownloader | None = None,
        progress_interval: float = PROGRESS_INTERVAL,
    ) -> None:
        """Initialize the download pool.

        Args:
            bus: Event bus for progress and queue events.
            max_workers: Maximum concurrent downloads.
            downloader: Performs the HTTP transfers.
            progress_interval: Minimum seconds between progress events of a job.
        """
        super().__init__(bus=bus, max_workers=max_workers, progress_interval=progress_interval)
        self._downloader = downloader or FileDownloader()

    def _run_job(self, job: DownloadJob, progress: ProgressCallback) -> bool:
        job.local_path = self._downloader.download(
            job.url,
            job.target_dir,
            job.name,
            progress=progress,
            cancel=job.cancel_token,
            expected_size=job.bytes_total,
        )
        logger.info(f"Downloaded {job.name} to {job.local_path}")
        return True
