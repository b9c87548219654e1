"""Tests for the worker pool job queue."""

from __future__ import annotations

import threading
import time
from datetime import datetime
from pathlib import Path

import pytest

from shotmover.client.transfer.queue import JobQueue, QueueClosed
from shotmover.client.transfer.types import FileEntry, UploadJob
from shotmover.core.destinations import LocalDestination, RelayDestination


def make_job(name: str = "a.jpg", relay: bool = False) -> UploadJob:
    """Create an upload job without touching the disk."""
    entry = FileEntry(
        path=Path("/card") / name,
        name=name,
        size=10,
        mime_type="image/jpeg",
        modified=datetime(2025, 3, 4, 5, 6, 7),
    )
    destination = RelayDestination() if relay else LocalDestination(root=Path("/photos"))
    return UploadJob(file=entry, destination=destination, key=name)


class TestJobQueue:
    """Tests for JobQueue."""

    def test_fifo_order(self) -> None:
        """Jobs come out in submission order."""
        queue: JobQueue[UploadJob] = JobQueue()
        jobs = [make_job(f"{i}.jpg") for i in range(3)]
        for job in jobs:
            queue.put(job)

        assert [queue.get(timeout=0.1) for _ in jobs] == jobs
        assert len(queue) == 0

    def test_get_timeout(self) -> None:
        """get returns None when nothing arrives in time."""
        queue: JobQueue[UploadJob] = JobQueue()
        start = time.monotonic()

        assert queue.get(timeout=0.05) is None
        assert time.monotonic() - start >= 0.04

    def test_accept_predicate_keeps_place(self) -> None:
        """Rejected jobs stay queued, in order."""
        queue: JobQueue[UploadJob] = JobQueue()
        relay = make_job("r.jpg", relay=True)
        local = make_job("l.jpg")
        queue.put(relay)
        queue.put(local)

        got = queue.get(timeout=0.1, accept=lambda j: not isinstance(j.destination, RelayDestination))

        assert got is local
        assert list(queue) == [relay]

    def test_wake_reevaluates_predicate(self) -> None:
        """A waiting worker picks up a job once its predicate allows it."""
        queue: JobQueue[UploadJob] = JobQueue()
        allowed = threading.Event()
        job = make_job()
        queue.put(job)
        results: list[UploadJob | None] = []

        def worker() -> None:
            results.append(queue.get(timeout=2.0, accept=lambda _: allowed.is_set()))

        thread = threading.Thread(target=worker)
        thread.start()
        time.sleep(0.05)
        allowed.set()
        queue.wake()
        thread.join(timeout=2.0)

        assert results == [job]

    def test_remove_and_contains(self) -> None:
        """Jobs can be removed by id."""
        queue: JobQueue[UploadJob] = JobQueue()
        job = make_job()
        queue.put(job)

        assert job.id in queue
        assert queue.remove(job.id) is job
        assert queue.remove(job.id) is None
        assert job.id not in queue

    def test_drain(self) -> None:
        """drain empties the queue and returns the jobs oldest first."""
        queue: JobQueue[UploadJob] = JobQueue()
        jobs = [make_job(f"{i}.jpg") for i in range(4)]
        for job in jobs:
            queue.put(job)

        assert queue.drain() == jobs
        assert len(queue) == 0

    def test_close_wakes_waiters(self) -> None:
        """Closing raises QueueClosed in blocked getters."""
        queue: JobQueue[UploadJob] = JobQueue()
        raised = threading.Event()

        def worker() -> None:
            try:
                queue.get()
            except QueueClosed:
                raised.set()

        thread = threading.Thread(target=worker)
        thread.start()
        time.sleep(0.05)
        queue.close()
        thread.join(timeout=2.0)

        assert raised.is_set()
        assert queue.is_closed

    def test_put_after_close(self) -> None:
        """A closed queue refuses jobs until reopened."""
        queue: JobQueue[UploadJob] = JobQueue()
        queue.close()

        with pytest.raises(RuntimeError):
            queue.put(make_job())

        queue.reopen()
        queue.put(make_job())
        assert len(queue) == 1
