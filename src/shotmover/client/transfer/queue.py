"""Job queue for the worker pools.

This module provides:
- JobQueue: Thread-safe FIFO queue of pending jobs

Workers draw the oldest job they are allowed to run. A worker may pass
an ``accept`` predicate to leave some jobs waiting (e.g., relay uploads
while the session is invalid); skipped jobs keep their place.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Iterator
from typing import Generic, TypeVar

from shotmover.client.transfer.types import TransferJob

logger = logging.getLogger(__name__)

J = TypeVar("J", bound=TransferJob)


class QueueClosed(Exception):
    """Raised by get() once the queue is closed and empty."""


class JobQueue(Generic[J]):
    """Thread-safe FIFO queue keyed by job id."""

    def __init__(self) -> None:
        """Initialize the queue."""
        self._lock = threading.RLock()
        self._not_empty = threading.Condition(self._lock)
        self._jobs: OrderedDict[str, J] = OrderedDict()
        self._closed = False

    def put(self, job: J) -> None:
        """Append a job.

        Raises:
            RuntimeError: If queue is closed.
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("Queue is closed")
            self._jobs[job.id] = job
            self._not_empty.notify()
            logger.debug("Queued job %s (queue size: %d)", job.id, len(self._jobs))

    def get(
        self,
        timeout: float | None = None,
        accept: Callable[[J], bool] | None = None,
    ) -> J | None:
        """Take the oldest acceptable job.

        Blocks until such a job is available or timeout expires.

        Args:
            timeout: Maximum seconds to wait (None = wait forever).
            accept: Optional predicate; rejected jobs stay queued.

        Returns:
            The job, or None if timeout expired.

        Raises:
            QueueClosed: If the queue is closed.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._not_empty:
            while True:
                if self._closed:
                    raise QueueClosed()
                job = self._first_acceptable(accept)
                if job is not None:
                    del self._jobs[job.id]
                    logger.debug("Dequeued job %s (queue size: %d)", job.id, len(self._jobs))
                    return job
                if deadline is None:
                    self._not_empty.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._not_empty.wait(timeout=remaining)

    def _first_acceptable(self, accept: Callable[[J], bool] | None) -> J | None:
        for job in self._jobs.values():
            if accept is None or accept(job):
                return job
        return None

    def remove(self, job_id: str) -> J | None:
        """Remove a job by id.

        Returns:
            The removed job, or None if not found.
        """
        with self._lock:
            return self._jobs.pop(job_id, None)

    def drain(self) -> list[J]:
        """Remove and return every queued job, oldest first."""
        with self._lock:
            jobs = list(self._jobs.values())
            self._jobs.clear()
            if jobs:
                logger.info("Cleared %d jobs from queue", len(jobs))
            return jobs

    def wake(self) -> None:
        """Wake waiting workers so they re-evaluate their predicate."""
        with self._lock:
            self._not_empty.notify_all()

    def close(self) -> None:
        """Close the queue and wake up waiting threads."""
        with self._lock:
            self._closed = True
            self._not_empty.notify_all()

    def reopen(self) -> None:
        """Accept jobs again after close()."""
        with self._lock:
            self._closed = False

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._jobs

    def __len__(self) -> int:
        """Get number of pending jobs."""
        with self._lock:
            return len(self._jobs)

    def __iter__(self) -> Iterator[J]:
        """Iterate over a snapshot of pending jobs, oldest first."""
        with self._lock:
            return iter(list(self._jobs.values()))

    @property
    def is_closed(self) -> bool:
        """Check if queue is closed."""
        return self._closed
