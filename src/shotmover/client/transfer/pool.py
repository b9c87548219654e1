"""Worker pool for concurrent transfer jobs.

This module provides:
- PoolState: Lifecycle of a pool
- WorkerPool: Bounded pool of worker threads drawing from a JobQueue

Subclasses implement _run_job() for one kind of job (upload, download).
The pool owns the job state machine: it moves jobs to ACTIVE, records
the outcome, keeps a bounded history and publishes progress and queue
events on the bus.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from concurrent.futures import Future
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from shotmover.client.transfer.queue import JobQueue, QueueClosed
from shotmover.client.transfer.types import PoolStats, ProgressCallback, TransferJob
from shotmover.core.errors import Cancelled, ErrorKind, Internal, MoverError
from shotmover.core.types import JobStatus

if TYPE_CHECKING:
    from collections.abc import Callable

    from shotmover.client.events import BusEvent, EventBus

logger = logging.getLogger(__name__)

J = TypeVar("J", bound=TransferJob)

DEFAULT_MAX_WORKERS = 3
HISTORY_SIZE = 20
PROGRESS_INTERVAL = 0.1  # at most 10 progress events per second per job


class PoolState(Enum):
    """State of the worker pool."""

    STOPPED = auto()
    RUNNING = auto()
    STOPPING = auto()


class WorkerPool(ABC, Generic[J]):
    """Pool of workers for concurrent transfer jobs.

    Manages worker threads that process jobs from a FIFO queue. At most
    ``max_workers`` jobs are ACTIVE at any time.

    Usage:
        pool = UploadPool(sink_factory, bus=bus)
        pool.start()

        future = pool.submit(job)
        job = future.result()  # terminal job

        pool.stop()
    """

    kind = "transfer"
    progress_topic = "transfer.progress"
    queue_topic = "transfer.queue"

    def __init__(
        self,
        bus: EventBus | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        history_size: int = HISTORY_SIZE,
        progress_interval: float = PROGRESS_INTERVAL,
    ) -> None:
        """Initialize the worker pool.

        Args:
            bus: Event bus for progress and queue events.
            max_workers: Maximum concurrent ACTIVE jobs.
            history_size: Completed/failed jobs kept per category.
            progress_interval: Minimum seconds between progress events of a job.
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._bus = bus
        self._max_workers = max_workers
        self._progress_interval = progress_interval

        # Pool state
        self._pool_state = PoolState.STOPPED
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)

        # Job queue and active jobs by id (for cancellation)
        self._queue: JobQueue[J] = JobQueue()
        self._active: dict[str, J] = {}
        self._futures: dict[str, Future[J]] = {}
        self._terminal_listeners: list[Callable[[J], None]] = []

        # Bumped by cancel_all(); a job submitted under an older generation
        # is cancelled even if a worker dequeued it before it became ACTIVE
        self._generation = 0
        self._job_generations: dict[str, int] = {}

        # Worker threads by index
        self._workers: dict[int, threading.Thread] = {}

        # Statistics
        self._completed_count = 0
        self._failed_count = 0
        self._cancelled_count = 0
        self._completed: deque[dict[str, Any]] = deque(maxlen=history_size)
        self._failed: deque[dict[str, Any]] = deque(maxlen=history_size)

    @property
    def state(self) -> PoolState:
        """Get current pool state."""
        return self._pool_state

    @property
    def max_workers(self) -> int:
        """Get the concurrency limit."""
        return self._max_workers

    @property
    def active_count(self) -> int:
        """Get number of ACTIVE jobs."""
        with self._lock:
            return len(self._active)

    @property
    def queue_size(self) -> int:
        """Get number of PENDING jobs."""
        return len(self._queue)

    @property
    def is_processing(self) -> bool:
        """Check if any job is pending or active."""
        with self._lock:
            return bool(self._active) or len(self._queue) > 0

    @property
    def completed_jobs(self) -> list[dict[str, Any]]:
        """Most recent DONE jobs, newest first."""
        with self._lock:
            return list(self._completed)

    @property
    def failed_jobs(self) -> list[dict[str, Any]]:
        """Most recent FAILED jobs, newest first."""
        with self._lock:
            return list(self._failed)

    def stats(self) -> PoolStats:
        """Get a snapshot of the pool."""
        with self._lock:
            return PoolStats(
                total_workers=self._max_workers,
                busy_workers=len(self._active),
                queue_length=len(self._queue),
                active_jobs=list(self._active),
                completed_count=self._completed_count,
                failed_count=self._failed_count,
                cancelled_count=self._cancelled_count,
                is_processing=bool(self._active) or len(self._queue) > 0,
            )

    def on_progress(self, callback: Callable[[BusEvent], None]) -> Callable[[], None]:
        """Subscribe to progress events of this pool.

        Returns:
            Function that removes the subscription.
        """
        if self._bus is None:
            raise RuntimeError("Pool has no event bus")
        return self._bus.subscribe(self.progress_topic, callback)

    def on_terminal(self, callback: Callable[[J], None]) -> Callable[[], None]:
        """Register a callback run once for every job that becomes terminal.

        The callback runs on the thread that finished the job, before the
        job's future is resolved.

        Returns:
            Function that removes the callback.
        """
        with self._lock:
            self._terminal_listeners.append(callback)

        def remove() -> None:
            with self._lock:
                if callback in self._terminal_listeners:
                    self._terminal_listeners.remove(callback)

        return remove

    # === Lifecycle ===

    def start(self) -> None:
        """Start the worker pool."""
        with self._lock:
            if self._pool_state != PoolState.STOPPED:
                logger.warning(f"{self.kind} pool already running")
                return

            self._queue.reopen()
            self._pool_state = PoolState.RUNNING
            self._spawn_workers()
            logger.info(f"{self.kind} pool started with {self._max_workers} workers")

    def stop(self, timeout: float = 10.0, cancel_active: bool = True) -> None:
        """Stop the worker pool.

        Pending jobs are cancelled. Active jobs are asked to cancel, or
        allowed to finish when cancel_active is False.

        Args:
            timeout: Maximum time to wait for workers to finish.
            cancel_active: Request cancellation of ACTIVE jobs.
        """
        with self._lock:
            if self._pool_state == PoolState.STOPPED:
                return
            self._pool_state = PoolState.STOPPING
            if cancel_active:
                self._generation += 1
            logger.info(f"{self.kind} pool stopping...")

        self._cancel_pending()
        if cancel_active:
            with self._lock:
                for job in self._active.values():
                    job.cancel_token.cancel()

        self._queue.close()
        with self._lock:
            workers = list(self._workers.values())
        deadline = time.monotonic() + timeout
        for worker in workers:
            worker.join(timeout=max(0.0, deadline - time.monotonic()))

        with self._lock:
            self._pool_state = PoolState.STOPPED
            self._workers.clear()
            logger.info(f"{self.kind} pool stopped")

    def set_concurrency(self, max_workers: int) -> None:
        """Change the number of workers.

        Extra workers exit after finishing their current job.

        Args:
            max_workers: New concurrency limit (at least 1).
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        with self._lock:
            self._max_workers = max_workers
            if self._pool_state == PoolState.RUNNING:
                self._spawn_workers()
        # Surplus workers re-check their index when woken
        self._queue.wake()
        logger.info(f"{self.kind} pool concurrency set to {max_workers}")

    def _spawn_workers(self) -> None:
        """Start missing worker threads (lock held)."""
        for index in range(self._max_workers):
            thread = self._workers.get(index)
            if thread is not None and thread.is_alive():
                continue
            thread = threading.Thread(
                target=self._worker_loop,
                args=(index,),
                name=f"{self.kind.capitalize()}Pool-{index}",
                daemon=True,
            )
            self._workers[index] = thread
            thread.start()

    # === Submission and cancellation ===

    def submit(self, job: J) -> Future[J]:
        """Submit a job to the pool.

        Args:
            job: A PENDING job.

        Returns:
            Future resolved with the job once it is terminal.

        Raises:
            RuntimeError: If the pool is not running.
        """
        if self._pool_state != PoolState.RUNNING:
            raise RuntimeError(f"Cannot submit job: {self.kind} pool not running")

        future: Future[J] = Future()
        with self._lock:
            self._futures[job.id] = future
            self._job_generations[job.id] = self._generation

        try:
            self._validate(job)
        except MoverError as e:
            logger.warning(f"Job {job.id} rejected at submit: {e}")
            job.mark_failed(e)
            self._finish(job)
            return future

        if job.cancel_token.cancelled:
            job.mark_cancelled()
            self._finish(job)
            return future

        self._queue.put(job)
        logger.debug(f"Job submitted: {self.kind} {job.id}")
        self._publish_queue("submitted", job)
        return future

    def cancel(self, job_id: str) -> bool:
        """Cancel a job by id.

        A PENDING job is cancelled immediately; an ACTIVE job is asked to
        stop at its next checkpoint.

        Returns:
            True if the job was found.
        """
        job = self._queue.remove(job_id)
        if job is not None:
            job.mark_cancelled()
            self._finish(job)
            return True
        with self._lock:
            active = self._active.get(job_id)
        if active is not None:
            active.cancel_token.cancel()
            logger.info(f"Cancellation requested for: {job_id}")
            return True
        return False

    def cancel_all(self) -> int:
        """Cancel every PENDING job and request cancellation of ACTIVE ones.

        Returns:
            Number of jobs affected.
        """
        with self._lock:
            self._generation += 1
        count = self._cancel_pending()
        with self._lock:
            for job in self._active.values():
                job.cancel_token.cancel()
            count += len(self._active)
        logger.info(f"{self.kind} pool: cancel requested for {count} jobs")
        return count

    def clear_pending(self) -> int:
        """Cancel every PENDING job, leaving ACTIVE jobs running.

        Returns:
            Number of jobs cleared.
        """
        return self._cancel_pending()

    def _cancel_pending(self) -> int:
        jobs = self._queue.drain()
        for job in jobs:
            job.mark_cancelled()
            self._finish(job, publish_queue=False)
        if jobs:
            self._publish_queue("cleared", None, cleared=len(jobs))
        return len(jobs)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no job is pending or active.

        Returns:
            True if idle, False on timeout.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._idle:
            while self._active or len(self._queue) > 0:
                if deadline is None:
                    self._idle.wait(timeout=0.5)
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._idle.wait(timeout=min(remaining, 0.5))
            return True

    # === Worker side ===

    def _worker_loop(self, index: int) -> None:
        """Main loop for worker threads."""
        while self._pool_state == PoolState.RUNNING and index < self._max_workers:
            try:
                job = self._queue.get(timeout=1.0, accept=self._accept)
                if job is None:
                    continue
                self._process_job(job)
            except QueueClosed:
                break
            except Exception:
                logger.exception(f"Unexpected error in {self.kind} worker loop")

    def _process_job(self, job: J) -> None:
        """Run a single job and record its outcome."""
        with self._lock:
            if self._job_generations.get(job.id, self._generation) != self._generation:
                job.cancel_token.cancel()
            if not job.cancel_token.cancelled:
                job.mark_active()
                self._active[job.id] = job

        if job.status == JobStatus.PENDING:
            job.mark_cancelled()
            self._finish(job)
            return

        self._publish_queue("started", job)
        self._publish_progress(job)

        last_publish = [0.0]  # Use list to allow mutation in closure

        def progress(bytes_done: int, bytes_total: int) -> None:
            if bytes_total > 0 and job.bytes_total != bytes_total:
                job.bytes_total = bytes_total
            if not job.update_progress(bytes_done):
                return
            now = time.monotonic()
            if now - last_publish[0] >= self._progress_interval:
                last_publish[0] = now
                self._publish_progress(job)

        try:
            transferred = self._run_job(job, progress)
            job.mark_done(transferred=transferred)
            logger.debug(f"{self.kind} job {job.id} done")

        except Cancelled:
            job.mark_cancelled()
            logger.info(f"{self.kind} job {job.id} cancelled")

        except MoverError as e:
            if self._should_retry(job, e):
                logger.info(f"Retrying {self.kind} job {job.id} after: {e}")
                with self._lock:
                    self._active.pop(job.id, None)
                    job.mark_pending()
                self._queue.put(job)
                return
            job.mark_failed(e)
            logger.warning(f"{self.kind} job {job.id} failed: {e}")

        except Exception as e:
            logger.exception(f"{self.kind} job {job.id} crashed")
            job.mark_failed(Internal(str(e) or type(e).__name__))

        self._finish(job)

    def _should_retry(self, job: J, error: MoverError) -> bool:
        """Decide whether a failed attempt goes back to PENDING.

        Only authentication failures are retried, and only while the job
        has attempts left; everything else is final.
        """
        return (
            error.kind == ErrorKind.UNAUTHENTICATED
            and job.attempts < job.max_attempts
            and not job.cancel_token.cancelled
            and self._pool_state == PoolState.RUNNING
        )

    def _finish(self, job: J, publish_queue: bool = True) -> None:
        """Record a terminal job and publish its final state exactly once."""
        with self._lock:
            future = self._futures.pop(job.id, None)
            self._job_generations.pop(job.id, None)
            if job.status == JobStatus.DONE:
                self._completed_count += 1
                self._completed.appendleft(job.snapshot())
            elif job.status == JobStatus.FAILED:
                self._failed_count += 1
                self._failed.appendleft(job.snapshot())
            elif job.status == JobStatus.CANCELLED:
                self._cancelled_count += 1

        with self._lock:
            listeners = list(self._terminal_listeners)
        for listener in listeners:
            try:
                listener(job)
            except Exception:
                logger.exception(f"Terminal listener failed for job {job.id}")
        self._publish_progress(job)
        if publish_queue:
            self._publish_queue("finished", job)

        # Stays in _active until listeners ran, so wait_idle() covers them
        with self._idle:
            self._active.pop(job.id, None)
            if not self._active and len(self._queue) == 0:
                self._idle.notify_all()

        if future is not None and not future.done():
            future.set_result(job)

    # === Events ===

    def _publish_progress(self, job: J) -> None:
        if self._bus is not None:
            self._bus.publish(self.progress_topic, coalesce_key=job.id, **job.snapshot())

    def _publish_queue(self, action: str, job: J | None, **extra: Any) -> None:
        if self._bus is None:
            return
        self._bus.publish(
            self.queue_topic,
            action=action,
            job_id=job.id if job else None,
            **self.stats().as_dict(),
            **extra,
        )

    # === Subclass hooks ===

    def _accept(self, job: J) -> bool:
        """Whether a worker may start this job now."""
        return True

    def _validate(self, job: J) -> None:
        """Reject a job at submit time by raising a MoverError."""

    @abstractmethod
    def _run_job(self, job: J, progress: ProgressCallback) -> bool:
        """Perform the transfer.

        Implementations report progress via progress(bytes_done, bytes_total),
        observe job.cancel_token at every I/O boundary (raising Cancelled)
        and raise a MoverError on failure.

        Returns:
            False if the job finished without moving any bytes.
        """
        ...
