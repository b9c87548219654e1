"""Import engine.

This module provides:
- ImportJob: Immutable description of an import
- ImportProgress: Counters and phase of a run
- LogEntry: One line of the bounded import log
- ImportRun: Handle of a running import
- ImportEngine: Walks a source and fans files out to the upload pool

Flow:
    scan source → derive keys → one UploadJob per (file, destination)
    → UploadPool → counters/log → import.completed | import.cancelled | import.error

Within a file, jobs are submitted in destination priority order. The
relay job is held back until the LOCAL job of the same file is terminal,
and then reads the LOCAL copy.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from shotmover.client.events import (
    IMPORT_CANCELLED,
    IMPORT_COMPLETED,
    IMPORT_ERROR,
    IMPORT_LOG,
    IMPORT_PROGRESS,
)
from shotmover.client.ingest.scanner import scan_source
from shotmover.client.transfer.pool import PoolState
from shotmover.client.transfer.types import FileEntry, UploadJob
from shotmover.core.destinations import Destination, order_destinations
from shotmover.core.errors import Cancelled, MoverError
from shotmover.core.paths import FolderPolicy, derive_key
from shotmover.core.types import CancelToken, DestinationType, ImportPhase, JobStatus

if TYPE_CHECKING:
    from shotmover.client.events import EventBus
    from shotmover.client.transfer.upload import UploadPool
    from shotmover.core.config import EngineSettings

logger = logging.getLogger(__name__)

LOG_LIMIT = 200
_LOG_LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}


@dataclass(frozen=True)
class ImportJob:
    """Immutable description of an import.

    Attributes:
        source: Directory to import from.
        destinations: Enabled destinations, in priority order.
        folder_policy: How destination folders are derived.
        recurse: Descend into sub-directories of the source.
        skip_duplicates: Skip files already present on filesystem destinations.
        include_all: Import every file, not only photos and videos.
        id: Unique id of the import.
        cancel_token: Cancels the import and every job it submitted.
    """

    source: Path
    destinations: tuple[Destination, ...]
    folder_policy: FolderPolicy = field(default_factory=FolderPolicy.none)
    recurse: bool = True
    skip_duplicates: bool = True
    include_all: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    cancel_token: CancelToken = field(default_factory=CancelToken, compare=False, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "source", Path(self.source))
        object.__setattr__(self, "destinations", tuple(order_destinations(self.destinations)))

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        source: Path | None = None,
        recurse: bool = True,
        include_all: bool = False,
    ) -> ImportJob:
        """Build an import from persisted settings.

        Args:
            settings: Parsed settings.
            source: Overrides the configured source directory.
            recurse: Descend into sub-directories.
            include_all: Import every file, not only media.

        Raises:
            ValueError: If no source directory is known.
        """
        source = source or settings.source_dir
        if source is None:
            raise ValueError("No source directory given")
        return cls(
            source=source,
            destinations=tuple(settings.enabled_destinations),
            folder_policy=settings.folder_policy,
            recurse=recurse,
            skip_duplicates=settings.skip_duplicates,
            include_all=include_all,
        )


@dataclass
class ImportProgress:
    """Counters of an import run.

    File counters: a file is completed when every destination is DONE,
    failed when at least one destination FAILED, cancelled otherwise.
    Skipped files (all destinations already had them) count as completed
    and as skipped.
    """

    job_id: str
    phase: ImportPhase = ImportPhase.PENDING
    total_files: int = 0
    processed_files: int = 0
    completed_files: int = 0
    failed_files: int = 0
    skipped_files: int = 0
    cancelled_files: int = 0
    total_jobs: int = 0
    done_jobs: int = 0
    failed_jobs: int = 0
    cancelled_jobs: int = 0
    total_bytes: int = 0
    bytes_processed: int = 0
    current_file: str | None = None
    current_destination: str | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.total_files

    @property
    def completed(self) -> int:
        return self.completed_files

    @property
    def failed(self) -> int:
        return self.failed_files

    def copy(self) -> ImportProgress:
        data = dict(self.__dict__)
        data["errors"] = list(self.errors)
        return ImportProgress(**data)

    def as_dict(self) -> dict[str, Any]:
        data = dict(self.__dict__)
        data["phase"] = self.phase.value
        data["errors"] = list(self.errors)
        return data


@dataclass(frozen=True)
class LogEntry:
    """One line of the import log."""

    timestamp: datetime
    level: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level,
            "message": self.message,
        }


class _FilePlan:
    """Jobs of one file and how many of them are still running."""

    def __init__(self, entry: FileEntry, key: str) -> None:
        self.entry = entry
        self.key = key
        self.jobs: list[UploadJob] = []
        self.remaining = 0


class ImportRun:
    """Handle of a running import.

    Usage:
        run = engine.start(job)
        run.wait()
        print(run.status().completed_files)
    """

    def __init__(self, job: ImportJob) -> None:
        self.job = job
        self._lock = threading.Lock()
        self._progress = ImportProgress(job_id=job.id)
        self._log: deque[LogEntry] = deque(maxlen=LOG_LIMIT)
        self._jobs: list[UploadJob] = []
        self._outstanding = 0
        self._settled = threading.Event()
        self._done = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def id(self) -> str:
        return self.job.id

    @property
    def is_done(self) -> bool:
        """Check if the run reached a terminal phase."""
        return self._done.is_set()

    @property
    def jobs(self) -> list[UploadJob]:
        """Upload jobs submitted so far."""
        with self._lock:
            return list(self._jobs)

    @property
    def log(self) -> list[LogEntry]:
        """Most recent log entries, oldest first."""
        with self._lock:
            return list(self._log)

    def status(self) -> ImportProgress:
        """Snapshot of the counters."""
        with self._lock:
            return self._progress.copy()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the run is terminal.

        Returns:
            True if terminal, False on timeout.
        """
        return self._done.wait(timeout)


class ImportEngine:
    """Runs imports on a background thread, one at a time.

    Usage:
        engine = ImportEngine(upload_pool, bus=bus)
        run = engine.start(ImportJob(source=..., destinations=...))
        engine.cancel(run)
    """

    def __init__(self, upload_pool: UploadPool, bus: EventBus | None = None) -> None:
        """Initialize the engine.

        Args:
            upload_pool: Pool the upload jobs are submitted to.
            bus: Event bus for import events.
        """
        self._pool = upload_pool
        self._bus = bus
        self._lock = threading.Lock()
        self._runs: dict[str, ImportRun] = {}
        self._current: ImportRun | None = None

    @property
    def current_run(self) -> ImportRun | None:
        """The run in progress, if any."""
        with self._lock:
            return self._current

    def start(self, job: ImportJob) -> ImportRun:
        """Start an import.

        Returns:
            Handle of the run.

        Raises:
            RuntimeError: If an import is already running.
        """
        with self._lock:
            if self._current is not None and not self._current.is_done:
                raise RuntimeError("Import already in progress")
            run = ImportRun(job)
            self._runs[job.id] = run
            self._current = run

        if self._pool.state != PoolState.RUNNING:
            self._pool.start()

        run._thread = threading.Thread(
            target=self._run,
            args=(run,),
            name=f"Import-{job.id[:8]}",
            daemon=True,
        )
        run._thread.start()
        return run

    def _resolve(self, run: ImportRun | str) -> ImportRun:
        if isinstance(run, ImportRun):
            return run
        with self._lock:
            found = self._runs.get(run)
        if found is None:
            raise KeyError(f"Unknown import: {run}")
        return found

    def status(self, run: ImportRun | str) -> ImportProgress:
        """Snapshot of the counters of a run."""
        return self._resolve(run).status()

    def cancel(self, run: ImportRun | str) -> None:
        """Cancel a run.

        Stops enumeration, cancels PENDING jobs and asks ACTIVE jobs to stop.
        The run reports its terminal phase once every job is terminal.
        """
        run = self._resolve(run)
        if run.is_done:
            return
        self._log(run, "warning", "Import cancelled by user")
        run.job.cancel_token.cancel()
        for job in run.jobs:
            if not job.is_terminal:
                self._pool.cancel(job.id)

    # === Run ===

    def _run(self, run: ImportRun) -> None:
        job = run.job
        try:
            self._set_phase(run, ImportPhase.SCANNING)
            self._log(run, "info", f"Scanning {job.source}")
            entries = scan_source(
                job.source,
                recurse=job.recurse,
                include_all=job.include_all,
                cancel=job.cancel_token,
            )
            with run._lock:
                run._progress.total_files = len(entries)
                run._progress.total_bytes = sum(e.size for e in entries)
            self._log(run, "info", f"Found {len(entries)} files to import")

            if not job.destinations:
                self._log(run, "warning", "No destination is enabled")
            self._set_phase(run, ImportPhase.COPYING)
            self._submit_all(run, entries)

            if any(not d.type.is_filesystem for d in job.destinations):
                self._set_phase(run, ImportPhase.UPLOADING)
            run._settled.wait()

        except Cancelled:
            # Cancelled while scanning: nothing was submitted
            run._settled.set()
        except MoverError as e:
            self._fail(run, str(e))
            return
        except Exception as e:
            logger.exception(f"Import {job.id} crashed")
            self._fail(run, str(e))
            return

        if job.cancel_token.cancelled:
            # Jobs already handed to the pool still report their outcome
            run._settled.wait()
            self._finish(run, ImportPhase.CANCELLED)
        else:
            self._finish(run, ImportPhase.COMPLETED)

    def _submit_all(self, run: ImportRun, entries: list[FileEntry]) -> None:
        job = run.job
        plans = []
        for entry in entries:
            plan = _FilePlan(entry, derive_key(job.folder_policy, entry.name, entry.modified))
            for destination in job.destinations:
                plan.jobs.append(UploadJob(
                    file=entry,
                    destination=destination,
                    key=plan.key,
                    skip_duplicates=job.skip_duplicates,
                    import_id=job.id,
                    cancel_token=job.cancel_token.child(),
                ))
            plan.remaining = len(plan.jobs)
            plans.append(plan)

        with run._lock:
            run._outstanding = sum(p.remaining for p in plans)
            run._progress.total_jobs = run._outstanding
            if run._outstanding == 0:
                run._settled.set()

        for plan in plans:
            if job.cancel_token.cancelled:
                self._abandon(run, plan)
                continue
            with run._lock:
                run._progress.current_file = plan.entry.name
            self._publish_progress(run)

            local_job = next(
                (j for j in plan.jobs if j.destination.type == DestinationType.LOCAL), None
            )
            local_future: Future[UploadJob] | None = None
            for upload in plan.jobs:
                if upload.destination.type == DestinationType.RELAY and local_job is not None:
                    continue
                future = self._submit(run, plan, upload)
                if upload is local_job:
                    local_future = future

            relay_job = next(
                (j for j in plan.jobs if j.destination.type == DestinationType.RELAY), None
            )
            if relay_job is not None and local_future is not None:
                local_future.add_done_callback(
                    lambda f, plan=plan, relay=relay_job: self._submit_relay(
                        run, plan, relay, f.result()
                    )
                )

    def _submit(self, run: ImportRun, plan: _FilePlan, upload: UploadJob) -> Future[UploadJob]:
        with run._lock:
            run._jobs.append(upload)
        future = self._pool.submit(upload)
        future.add_done_callback(lambda f: self._on_job_done(run, plan, f.result()))
        return future

    def _submit_relay(
        self, run: ImportRun, plan: _FilePlan, relay: UploadJob, local: UploadJob
    ) -> None:
        if local.status == JobStatus.DONE and local.remote_ref:
            relay.source_path = Path(local.remote_ref)
        elif local.status == JobStatus.CANCELLED:
            relay.cancel_token.cancel()
        try:
            self._submit(run, plan, relay)
        except RuntimeError as e:
            # Pool stopped while the local copy was running
            relay.mark_failed(str(e))
            self._on_job_done(run, plan, relay)

    def _abandon(self, run: ImportRun, plan: _FilePlan) -> None:
        """Account for the jobs of a file never submitted because of cancellation."""
        for upload in plan.jobs:
            upload.mark_cancelled()
            self._on_job_done(run, plan, upload, quiet=True)

    def _on_job_done(
        self, run: ImportRun, plan: _FilePlan, upload: UploadJob, quiet: bool = False
    ) -> None:
        name = upload.destination.display_name()
        if upload.status == JobStatus.DONE:
            verb = "skipped (already present)" if upload.skipped else "done"
            if not quiet:
                self._log(run, "info", f"{name}: {plan.entry.name} {verb}")
        elif upload.status == JobStatus.FAILED and not quiet:
            self._log(run, "error", f"{name}: {plan.entry.name} failed: {upload.error}")

        with run._lock:
            progress = run._progress
            progress.current_file = plan.entry.name
            progress.current_destination = name
            if upload.status == JobStatus.DONE:
                progress.done_jobs += 1
            elif upload.status == JobStatus.FAILED:
                progress.failed_jobs += 1
                progress.errors.append(f"{plan.entry.name} ({name}): {upload.error}")
            else:
                progress.cancelled_jobs += 1

            plan.remaining -= 1
            if plan.remaining == 0:
                self._count_file(progress, plan)

            run._outstanding -= 1
            if run._outstanding <= 0:
                run._settled.set()
        self._publish_progress(run)

    @staticmethod
    def _count_file(progress: ImportProgress, plan: _FilePlan) -> None:
        statuses = [j.status for j in plan.jobs]
        progress.processed_files += 1
        progress.bytes_processed += plan.entry.size
        if JobStatus.FAILED in statuses:
            progress.failed_files += 1
        elif all(s == JobStatus.DONE for s in statuses):
            progress.completed_files += 1
            if all(j.skipped for j in plan.jobs):
                progress.skipped_files += 1
        else:
            progress.cancelled_files += 1

    # === Reporting ===

    def _set_phase(self, run: ImportRun, phase: ImportPhase) -> None:
        with run._lock:
            run._progress.phase = phase
        self._publish_progress(run)

    def _publish_progress(self, run: ImportRun) -> None:
        if self._bus is not None:
            self._bus.publish(IMPORT_PROGRESS, coalesce_key=run.id, **run.status().as_dict())

    def _log(self, run: ImportRun, level: str, message: str) -> None:
        entry = LogEntry(timestamp=datetime.now().astimezone(), level=level, message=message)
        with run._lock:
            run._log.append(entry)
        logger.log(_LOG_LEVELS.get(level, logging.INFO), f"[import {run.id[:8]}] {message}")
        if self._bus is not None:
            self._bus.publish(IMPORT_LOG, job_id=run.id, **entry.as_dict())

    def _fail(self, run: ImportRun, error: str) -> None:
        with run._lock:
            run._progress.errors.append(error)
        self._log(run, "error", f"Import failed: {error}")
        self._set_phase(run, ImportPhase.FAILED)
        if self._bus is not None:
            self._bus.publish(IMPORT_ERROR, job_id=run.id, error=error, progress=run.status().as_dict())
        run._done.set()

    def _finish(self, run: ImportRun, phase: ImportPhase) -> None:
        with run._lock:
            run._progress.current_file = None
            run._progress.current_destination = None
        self._set_phase(run, phase)
        status = run.status()
        if phase == ImportPhase.CANCELLED:
            self._log(run, "warning", "Import cancelled")
            topic = IMPORT_CANCELLED
        else:
            self._log(
                run,
                "info",
                f"Import finished: {status.completed_files} completed, "
                f"{status.failed_files} failed of {status.total_files}",
            )
            topic = IMPORT_COMPLETED
        if self._bus is not None:
            self._bus.publish(topic, job_id=run.id, progress=status.as_dict())
        run._done.set()

    def close(self) -> None:
        """Cancel the run in progress and wait for it."""
        run = self.current_run
        if run is not None and not run.is_done:
            self.cancel(run)
            run.wait(timeout=10.0)
