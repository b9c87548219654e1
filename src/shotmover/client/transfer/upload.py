"""Upload worker pool.

This module provides:
- UploadPool: Runs UploadJobs against sinks with bounded concurrency
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from shotmover.client.events import (
    AUTH_INVALID,
    AUTH_REFRESHED,
    UPLOAD_PROGRESS,
    UPLOAD_QUEUE,
)
from shotmover.client.sinks.filesystem import FilesystemSink
from shotmover.client.transfer.pool import DEFAULT_MAX_WORKERS, PROGRESS_INTERVAL, WorkerPool
from shotmover.client.transfer.types import ProgressCallback, UploadJob
from shotmover.core.config import DEFAULT_MAX_FILE_SIZE
from shotmover.core.errors import Rejected
from shotmover.core.types import DestinationType

if TYPE_CHECKING:
    from collections.abc import Callable

    from shotmover.client.events import BusEvent, EventBus
    from shotmover.client.sinks.base import Sink
    from shotmover.client.sinks.registry import SinkFactory
    from shotmover.core.destinations import Destination

logger = logging.getLogger(__name__)


class UploadPool(WorkerPool[UploadJob]):
    """Pool of workers sending files to sinks.

    Sinks are created once per destination and shared by the workers.
    While the session is invalid (``auth.invalid`` seen, no
    ``auth.refreshed`` since) relay jobs stay PENDING; other jobs keep
    flowing.
    """

    kind = "upload"
    progress_topic = UPLOAD_PROGRESS
    queue_topic = UPLOAD_QUEUE

    def __init__(
        self,
        sink_factory: SinkFactory,
        bus: EventBus | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        max_file_size: int | None = DEFAULT_MAX_FILE_SIZE,
        progress_interval: float = PROGRESS_INTERVAL,
    ) -> None:
        """Initialize the upload pool.

        Args:
            sink_factory: Creates the sink of a destination.
            bus: Event bus for progress, queue and auth events.
            max_workers: Maximum concurrent uploads.
            max_file_size: Largest file accepted by remote sinks (None = no limit).
            progress_interval: Minimum seconds between progress events of a job.
        """
        super().__init__(bus=bus, max_workers=max_workers, progress_interval=progress_interval)
        self._sink_factory = sink_factory
        self._max_file_size = max_file_size
        self._sinks: dict[Destination, Sink] = {}
        self._sinks_lock = threading.Lock()
        self._auth_hold = False
        self._unsubscribers: list[Callable[[], None]] = []
        if bus is not None:
            self._unsubscribers.append(bus.subscribe(AUTH_INVALID, self._on_auth_invalid))
            self._unsubscribers.append(bus.subscribe(AUTH_REFRESHED, self._on_auth_refreshed))

    @property
    def auth_hold(self) -> bool:
        """Check if relay jobs are held back for lack of a valid session."""
        return self._auth_hold

    def sink_for(self, destination: Destination) -> Sink:
        """Get (or create) the shared sink of a destination."""
        with self._sinks_lock:
            sink = self._sinks.get(destination)
            if sink is None:
                sink = self._sink_factory(destination)
                self._sinks[destination] = sink
            return sink

    def stop(self, timeout: float = 10.0, cancel_active: bool = True) -> None:
        super().stop(timeout=timeout, cancel_active=cancel_active)
        with self._sinks_lock:
            for sink in self._sinks.values():
                try:
                    sink.close()
                except Exception:
                    logger.exception(f"Failed to close sink {sink.display_name()}")
            self._sinks.clear()

    def close(self) -> None:
        """Stop the pool and drop bus subscriptions."""
        self.stop()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    # === Auth hold ===

    def _on_auth_invalid(self, event: BusEvent) -> None:
        if not self._auth_hold:
            logger.warning("Session invalid: holding relay uploads")
        self._auth_hold = True

    def _on_auth_refreshed(self, event: BusEvent) -> None:
        if self._auth_hold:
            logger.info("Session refreshed: resuming relay uploads")
        self._auth_hold = False
        self._queue.wake()

    def _accept(self, job: UploadJob) -> bool:
        return not (self._auth_hold and job.destination.type == DestinationType.RELAY)

    # === Job execution ===

    def _validate(self, job: UploadJob) -> None:
        if job.destination.type.is_filesystem or self._max_file_size is None:
            return
        if job.file.size > self._max_file_size:
            raise Rejected(
                f"{job.file.name} is {job.file.size} bytes, "
                f"larger than the {self._max_file_size} byte limit",
                413,
            )

    def _run_job(self, job: UploadJob, progress: ProgressCallback) -> bool:
        sink = self.sink_for(job.destination)
        assert job.source_path is not None

        if job.skip_duplicates and isinstance(sink, FilesystemSink) and sink.has_duplicate(job.key):
            job.skipped = True
            job.remote_ref = str(sink.target_path(job.key))
            logger.debug(f"Skipping {job.key}: already present at {job.remote_ref}")
            return False

        result = sink.put(
            job.source_path,
            job.key,
            progress=progress,
            cancel=job.cancel_token,
            mime_type=job.file.mime_type,
        )
        job.remote_ref = result.remote_ref
        logger.info(f"Uploaded {job.file.name} to {sink.display_name()}")
        return True
