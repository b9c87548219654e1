"""Tests for the upload worker pool."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from shotmover.client.events import AUTH_INVALID, AUTH_REFRESHED, UPLOAD_PROGRESS, BusEvent, EventBus
from shotmover.client.sinks import PutResult, Sink, create_sink
from shotmover.client.transfer.pool import PROGRESS_INTERVAL, PoolState
from shotmover.client.transfer.types import FileEntry, ProgressCallback, UploadJob
from shotmover.client.transfer.upload import UploadPool
from shotmover.core.destinations import Destination, LocalDestination, ObjDestination, RelayDestination
from shotmover.core.errors import ErrorKind, Rejected, Unauthenticated
from shotmover.core.types import CancelToken, JobStatus


class FakeSink(Sink):
    """Sink that records puts and can block or fail on demand."""

    def __init__(self, destination: Destination) -> None:
        super().__init__(destination)
        self.gate = threading.Event()
        self.gate.set()
        self.errors: list[Exception] = []
        self.puts: list[str] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def _check_connection(self) -> str | None:
        return None

    def put(
        self,
        local_path: Path,
        key: str,
        progress: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
        mime_type: str | None = None,
    ) -> PutResult:
        cancel = cancel or CancelToken()
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            while not self.gate.wait(timeout=0.01):
                cancel.raise_if_cancelled()
            cancel.raise_if_cancelled()
            with self._lock:
                if self.errors:
                    raise self.errors.pop(0)
                self.puts.append(key)
            size = local_path.stat().st_size
            if progress:
                progress(size, size)
            return PutResult(remote_ref=f"fake://{key}", bytes_sent=size)
        finally:
            with self._lock:
                self.active -= 1


def make_entry(path: Path, size: int = 100) -> FileEntry:
    """Create a file on disk and describe it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x" * size)
    return FileEntry.from_path(path)


def wait_for(condition: Callable[[], bool], timeout: float = 2.0) -> bool:
    """Poll until condition() is true."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


class TestUploadPoolLifecycle:
    """Tests for starting and stopping the pool."""

    def test_submit_requires_running_pool(self, tmp_path: Path) -> None:
        """Jobs cannot be submitted to a stopped pool."""
        pool = UploadPool(create_sink)
        job = UploadJob(
            file=make_entry(tmp_path / "a.jpg"),
            destination=LocalDestination(root=tmp_path / "out"),
            key="a.jpg",
        )

        with pytest.raises(RuntimeError):
            pool.submit(job)

    def test_start_stop(self) -> None:
        """The pool moves between STOPPED and RUNNING."""
        pool = UploadPool(create_sink, max_workers=2)
        pool.start()
        assert pool.state == PoolState.RUNNING
        assert pool.stats().total_workers == 2

        pool.stop()
        assert pool.state == PoolState.STOPPED

    def test_invalid_concurrency(self) -> None:
        """At least one worker is required."""
        with pytest.raises(ValueError):
            UploadPool(create_sink, max_workers=0)

    def test_sinks_are_not_shared_across_keys(self) -> None:
        """Each service-account key gets its own sink for the same bucket."""
        pool = UploadPool(FakeSink)
        first = ObjDestination(bucket="archive", service_account_key={"client_id": "1"})
        second = ObjDestination(bucket="archive", service_account_key={"client_id": "2"})

        assert pool.sink_for(first) is not pool.sink_for(second)
        assert pool.sink_for(first).destination is first
        same = ObjDestination(bucket="archive", service_account_key={"client_id": "1"})
        assert pool.sink_for(same) is pool.sink_for(first)


class TestUploadPoolJobs:
    """Tests for running upload jobs."""

    @pytest.fixture
    def pool(self) -> Iterator[UploadPool]:
        pool = UploadPool(create_sink, bus=EventBus(synchronous=True))
        pool.start()
        yield pool
        pool.close()

    def test_local_copy(self, pool: UploadPool, tmp_path: Path) -> None:
        """A local job copies the file and reports 100%."""
        entry = make_entry(tmp_path / "card" / "a.jpg", 2048)
        job = UploadJob(
            file=entry,
            destination=LocalDestination(root=tmp_path / "out"),
            key="2025/a.jpg",
        )

        done = pool.submit(job).result(timeout=5)

        assert done.status == JobStatus.DONE
        assert done.progress == 100
        assert done.bytes_done == 2048
        assert (tmp_path / "out" / "2025" / "a.jpg").read_bytes() == entry.path.read_bytes()
        assert pool.completed_jobs[0]["key"] == "2025/a.jpg"

    def test_zero_size_file(self, pool: UploadPool, tmp_path: Path) -> None:
        """An empty file completes at 100%."""
        job = UploadJob(
            file=make_entry(tmp_path / "card" / "empty.jpg", 0),
            destination=LocalDestination(root=tmp_path / "out"),
            key="empty.jpg",
        )

        done = pool.submit(job).result(timeout=5)

        assert done.status == JobStatus.DONE
        assert done.progress == 100
        assert (tmp_path / "out" / "empty.jpg").stat().st_size == 0

    def test_skip_duplicate(self, pool: UploadPool, tmp_path: Path) -> None:
        """An existing target is skipped without transferring bytes."""
        out = tmp_path / "out"
        make_entry(out / "a.jpg", 10)
        job = UploadJob(
            file=make_entry(tmp_path / "card" / "a.jpg", 50),
            destination=LocalDestination(root=out),
            key="a.jpg",
            skip_duplicates=True,
        )

        done = pool.submit(job).result(timeout=5)

        assert done.status == JobStatus.DONE
        assert done.skipped
        assert done.bytes_done == 0
        assert done.progress == 100
        assert (out / "a.jpg").stat().st_size == 10
        assert not (out / "a (1).jpg").exists()

    def test_max_file_size_for_remote(self, tmp_path: Path) -> None:
        """Oversized files are rejected at submit for remote destinations only."""
        sinks: dict[Destination, FakeSink] = {}

        def factory(destination: Destination) -> Sink:
            return sinks.setdefault(destination, FakeSink(destination))

        pool = UploadPool(factory, max_file_size=50)
        pool.start()
        try:
            entry = make_entry(tmp_path / "card" / "big.mov", 100)
            relay_job = UploadJob(file=entry, destination=RelayDestination(), key="big.mov")
            local_job = UploadJob(
                file=entry,
                destination=LocalDestination(root=tmp_path / "out"),
                key="big.mov",
            )

            relay = pool.submit(relay_job).result(timeout=5)
            local = pool.submit(local_job).result(timeout=5)
        finally:
            pool.stop()

        assert relay.status == JobStatus.FAILED
        assert relay.error_kind == ErrorKind.REJECTED
        assert relay.attempts == 0
        assert local.status == JobStatus.DONE

    def test_failure_is_recorded(self, tmp_path: Path) -> None:
        """A sink error fails the job and lands in the failure history."""
        sink = FakeSink(RelayDestination())
        sink.errors.append(Rejected("quota exceeded", 507))
        pool = UploadPool(lambda _: sink)
        pool.start()
        try:
            job = UploadJob(
                file=make_entry(tmp_path / "a.jpg"), destination=RelayDestination(), key="a.jpg"
            )
            failed = pool.submit(job).result(timeout=5)
        finally:
            pool.stop()

        assert failed.status == JobStatus.FAILED
        assert failed.error == "quota exceeded"
        assert pool.failed_jobs[0]["error_kind"] == "rejected"
        assert pool.stats().failed_count == 1

    def test_progress_events(self, tmp_path: Path) -> None:
        """The last progress event of a job carries its terminal state."""
        bus = EventBus(synchronous=True)
        events: list[BusEvent] = []
        bus.subscribe(UPLOAD_PROGRESS, events.append)
        pool = UploadPool(create_sink, bus=bus)
        pool.start()
        try:
            job = UploadJob(
                file=make_entry(tmp_path / "card" / "a.jpg"),
                destination=LocalDestination(root=tmp_path / "out"),
                key="a.jpg",
            )
            pool.submit(job).result(timeout=5)
        finally:
            pool.close()

        assert events[0].data["status"] == "ACTIVE"
        assert events[-1].data["status"] == "DONE"
        assert events[-1].data["progress"] == 100
        assert all(e.data["job_id"] == job.id for e in events)


class HalfwayAuthFailureSink(FakeSink):
    """Sink that reports half the file, then refuses the token once."""

    def __init__(self, destination: Destination) -> None:
        super().__init__(destination)
        self.refused = False

    def put(
        self,
        local_path: Path,
        key: str,
        progress: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
        mime_type: str | None = None,
    ) -> PutResult:
        size = local_path.stat().st_size
        if progress:
            progress(size // 2, size)
        if not self.refused:
            self.refused = True
            raise Unauthenticated("Server refused credentials (401)")
        return super().put(local_path, key, progress, cancel, mime_type)


class SteadyProgressSink(FakeSink):
    """Sink that reports progress every few milliseconds."""

    def __init__(self, destination: Destination, steps: int = 50, delay: float = 0.005) -> None:
        super().__init__(destination)
        self.steps = steps
        self.delay = delay
        self.elapsed = 0.0

    def put(
        self,
        local_path: Path,
        key: str,
        progress: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
        mime_type: str | None = None,
    ) -> PutResult:
        size = local_path.stat().st_size
        started = time.monotonic()
        for step in range(1, self.steps + 1):
            if progress:
                progress(size * step // self.steps, size)
            time.sleep(self.delay)
        self.elapsed = time.monotonic() - started
        return PutResult(remote_ref=f"fake://{key}", bytes_sent=size)


class PausedStartPool(UploadPool):
    """Upload pool that pauses between taking a job and starting it."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.dequeued = threading.Event()
        self.resume = threading.Event()

    def _process_job(self, job: UploadJob) -> None:
        self.dequeued.set()
        self.resume.wait(timeout=5.0)
        super()._process_job(job)


class TestUploadPoolProgress:
    """Tests for progress events."""

    def test_progress_is_monotone_across_retry(self, tmp_path: Path) -> None:
        """A retried job never publishes fewer bytes than before."""
        bus = EventBus(synchronous=True)
        published: list[int] = []
        bus.subscribe(UPLOAD_PROGRESS, lambda e: published.append(e.data["bytes_done"]))
        sink = HalfwayAuthFailureSink(RelayDestination())
        pool = UploadPool(lambda _: sink, bus=bus, progress_interval=0.0)
        pool.start()
        try:
            job = UploadJob(
                file=make_entry(tmp_path / "a.jpg", 100),
                destination=RelayDestination(),
                key="a.jpg",
                max_attempts=2,
            )
            done = pool.submit(job).result(timeout=5)
        finally:
            pool.close()

        assert done.status == JobStatus.DONE
        assert done.attempts == 2
        assert 50 in published
        assert published == sorted(published)
        assert published[-1] == 100

    def test_progress_is_throttled(self, tmp_path: Path) -> None:
        """At most ten progress events per second are published for a job."""
        bus = EventBus(synchronous=True)
        events: list[BusEvent] = []
        bus.subscribe(UPLOAD_PROGRESS, events.append)
        sink = SteadyProgressSink(RelayDestination())
        pool = UploadPool(lambda _: sink, bus=bus)
        pool.start()
        try:
            job = UploadJob(
                file=make_entry(tmp_path / "a.jpg", 1000),
                destination=RelayDestination(),
                key="a.jpg",
            )
            pool.submit(job).result(timeout=10)
        finally:
            pool.close()

        reported = [e for e in events if e.data["status"] == "ACTIVE" and e.data["bytes_done"] > 0]
        assert 1 <= len(reported) <= int(sink.elapsed / PROGRESS_INTERVAL) + 1
        assert len(reported) < sink.steps
        assert events[-1].data["status"] == "DONE"

    def test_rejected_job_is_published(self, tmp_path: Path) -> None:
        """A job refused at submit is reported on the bus with its key."""
        bus = EventBus(synchronous=True)
        events: list[BusEvent] = []
        bus.subscribe(UPLOAD_PROGRESS, events.append)
        pool = UploadPool(lambda d: FakeSink(d), bus=bus, max_file_size=10)
        pool.start()
        try:
            job = UploadJob(
                file=make_entry(tmp_path / "big.mov", 100),
                destination=RelayDestination(),
                key="2025/big.mov",
            )
            failed = pool.submit(job).result(timeout=5)
        finally:
            pool.close()

        assert failed.status == JobStatus.FAILED
        assert [e.data["status"] for e in events] == ["FAILED"]
        assert events[0].data["key"] == "2025/big.mov"
        assert events[0].data["error_kind"] == "rejected"

    def test_threaded_bus_delivers_terminal_state(self, tmp_path: Path) -> None:
        """With the dispatcher thread the last event of a job is its terminal state."""
        bus = EventBus()
        events: list[BusEvent] = []
        bus.subscribe(UPLOAD_PROGRESS, events.append)
        pool = UploadPool(create_sink, bus=bus)
        pool.start()
        try:
            job = UploadJob(
                file=make_entry(tmp_path / "card" / "a.jpg"),
                destination=LocalDestination(root=tmp_path / "out"),
                key="a.jpg",
            )
            done = pool.submit(job).result(timeout=5)
            assert bus.flush(timeout=5.0)
        finally:
            pool.close()
            bus.close()

        assert done.status == JobStatus.DONE
        assert events[-1].data["status"] == "DONE"
        assert events[-1].data["key"] == "a.jpg"


class TestUploadPoolCancellation:
    """Tests for cancellation and concurrency bounds."""

    def test_cancel_all(self, tmp_path: Path) -> None:
        """cancel_all ends every job and never exceeds the worker bound."""
        sink = FakeSink(RelayDestination())
        sink.gate.clear()
        pool = UploadPool(lambda _: sink, max_workers=3)
        pool.start()
        try:
            futures = [
                pool.submit(UploadJob(
                    file=make_entry(tmp_path / f"{i}.jpg"),
                    destination=RelayDestination(),
                    key=f"{i}.jpg",
                ))
                for i in range(10)
            ]
            assert wait_for(lambda: pool.active_count == 3)

            assert pool.cancel_all() == 10
            jobs = [f.result(timeout=5) for f in futures]
            assert not pool.is_processing
        finally:
            pool.stop()

        assert all(j.status == JobStatus.CANCELLED for j in jobs)
        assert sink.max_active == 3
        assert sink.puts == []
        assert pool.stats().cancelled_count == 10

    def test_cancel_pending_job(self, tmp_path: Path) -> None:
        """A pending job is cancelled without running."""
        sink = FakeSink(RelayDestination())
        sink.gate.clear()
        pool = UploadPool(lambda _: sink, max_workers=1)
        pool.start()
        try:
            first = pool.submit(UploadJob(
                file=make_entry(tmp_path / "a.jpg"), destination=RelayDestination(), key="a.jpg"
            ))
            second_job = UploadJob(
                file=make_entry(tmp_path / "b.jpg"), destination=RelayDestination(), key="b.jpg"
            )
            second = pool.submit(second_job)
            assert wait_for(lambda: pool.active_count == 1)

            assert pool.cancel(second_job.id)
            assert second.result(timeout=5).status == JobStatus.CANCELLED

            sink.gate.set()
            assert first.result(timeout=5).status == JobStatus.DONE
        finally:
            pool.stop()

        assert sink.puts == ["a.jpg"]

    def test_cancel_all_reaches_dequeued_job(self, tmp_path: Path) -> None:
        """A job taken off the queue but not yet ACTIVE is cancelled too."""
        sink = FakeSink(RelayDestination())
        pool = PausedStartPool(lambda _: sink, max_workers=1)
        pool.start()
        try:
            future = pool.submit(UploadJob(
                file=make_entry(tmp_path / "a.jpg"), destination=RelayDestination(), key="a.jpg"
            ))
            assert pool.dequeued.wait(timeout=5.0)
            assert pool.queue_size == 0
            assert pool.active_count == 0

            pool.cancel_all()
            pool.resume.set()
            job = future.result(timeout=5)
        finally:
            pool.resume.set()
            pool.stop()

        assert job.status == JobStatus.CANCELLED
        assert job.attempts == 0
        assert sink.puts == []

    def test_cancel_all_spares_later_jobs(self, tmp_path: Path) -> None:
        """Jobs submitted after cancel_all run normally."""
        sink = FakeSink(RelayDestination())
        pool = UploadPool(lambda _: sink)
        pool.start()
        try:
            pool.cancel_all()
            job = pool.submit(UploadJob(
                file=make_entry(tmp_path / "a.jpg"), destination=RelayDestination(), key="a.jpg"
            )).result(timeout=5)
        finally:
            pool.stop()

        assert job.status == JobStatus.DONE


class TestUploadPoolAuth:
    """Tests for the relay auth hold and retries."""

    def test_auth_hold_keeps_relay_jobs_pending(self, tmp_path: Path) -> None:
        """Relay jobs wait for a refreshed session while local jobs continue."""
        bus = EventBus(synchronous=True)
        sinks: dict[Destination, Sink] = {}

        def factory(destination: Destination) -> Sink:
            if destination not in sinks:
                sinks[destination] = (
                    FakeSink(destination)
                    if isinstance(destination, RelayDestination)
                    else create_sink(destination)
                )
            return sinks[destination]

        pool = UploadPool(factory, bus=bus)
        pool.start()
        try:
            bus.publish(AUTH_INVALID, reason="expired")
            assert pool.auth_hold

            entry = make_entry(tmp_path / "card" / "a.jpg")
            relay = pool.submit(UploadJob(file=entry, destination=RelayDestination(), key="a.jpg"))
            local = pool.submit(UploadJob(
                file=entry, destination=LocalDestination(root=tmp_path / "out"), key="a.jpg"
            ))

            assert local.result(timeout=5).status == JobStatus.DONE
            time.sleep(0.1)
            assert not relay.done()
            assert pool.queue_size == 1

            bus.publish(AUTH_REFRESHED)
            assert relay.result(timeout=5).status == JobStatus.DONE
        finally:
            pool.close()

    def test_unauthenticated_is_retried(self, tmp_path: Path) -> None:
        """A refused token sends the job back to PENDING while attempts remain."""
        sink = FakeSink(RelayDestination())
        sink.errors.append(Unauthenticated("Server refused credentials (401)"))
        pool = UploadPool(lambda _: sink)
        pool.start()
        try:
            job = UploadJob(
                file=make_entry(tmp_path / "a.jpg"),
                destination=RelayDestination(),
                key="a.jpg",
                max_attempts=2,
            )
            done = pool.submit(job).result(timeout=5)
        finally:
            pool.stop()

        assert done.status == JobStatus.DONE
        assert done.attempts == 2
        assert sink.puts == ["a.jpg"]

    def test_other_errors_are_final(self, tmp_path: Path) -> None:
        """Only authentication failures are retried."""
        sink = FakeSink(RelayDestination())
        sink.errors.append(Rejected("bad request", 400))
        pool = UploadPool(lambda _: sink)
        pool.start()
        try:
            job = UploadJob(
                file=make_entry(tmp_path / "a.jpg"),
                destination=RelayDestination(),
                key="a.jpg",
                max_attempts=3,
            )
            failed = pool.submit(job).result(timeout=5)
        finally:
            pool.stop()

        assert failed.status == JobStatus.FAILED
        assert failed.attempts == 1
