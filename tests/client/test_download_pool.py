"""Tests for artifact downloads."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import httpx
import pytest

from shotmover.client.transfer.download import DownloadPool, FileDownloader
from shotmover.client.transfer.types import DownloadJob
from shotmover.core.errors import Cancelled, ErrorKind, Rejected, Unreachable
from shotmover.core.types import CancelToken, JobStatus

URL = "https://cdn.test/files/a.jpg"


class TestFileDownloader:
    """Tests for FileDownloader."""

    def test_download(self, tmp_path: Path, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """The body is written under the server name with progress."""
        httpx_mock.add_response(url=URL, content=b"x" * 1000)
        progress: list[tuple[int, int]] = []

        with httpx.Client() as client:
            path = FileDownloader(client).download(
                URL, tmp_path / "in", "a.jpg", progress=lambda d, t: progress.append((d, t))
            )

        assert path == tmp_path / "in" / "a.jpg"
        assert path.read_bytes() == b"x" * 1000
        assert progress[-1] == (1000, 1000)
        assert [p.name for p in (tmp_path / "in").iterdir()] == ["a.jpg"]

    def test_name_is_sanitized(self, tmp_path: Path, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Unsafe characters in the server name are replaced."""
        httpx_mock.add_response(url=URL, content=b"data")

        with httpx.Client() as client:
            path = FileDownloader(client).download(URL, tmp_path, 'a:b?.jpg')

        assert path.name == "a_b_.jpg"

    def test_existing_name_gets_suffix(self, tmp_path: Path, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """An existing file is never overwritten."""
        (tmp_path / "a.jpg").write_bytes(b"old")
        httpx_mock.add_response(url=URL, content=b"new")

        with httpx.Client() as client:
            path = FileDownloader(client).download(URL, tmp_path, "a.jpg")

        assert path.name == "a (1).jpg"
        assert (tmp_path / "a.jpg").read_bytes() == b"old"

    def test_http_error_leaves_nothing(self, tmp_path: Path, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """A non-200 answer raises Rejected and removes the partial file."""
        httpx_mock.add_response(url=URL, status_code=410)

        with httpx.Client() as client, pytest.raises(Rejected) as exc_info:
            FileDownloader(client).download(URL, tmp_path, "a.jpg")

        assert exc_info.value.status_code == 410
        assert list(tmp_path.iterdir()) == []

    def test_network_error(self, tmp_path: Path, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Transport errors raise Unreachable."""
        httpx_mock.add_exception(httpx.ReadTimeout("timed out"))

        with httpx.Client() as client, pytest.raises(Unreachable):
            FileDownloader(client).download(URL, tmp_path, "a.jpg")

        assert list(tmp_path.iterdir()) == []

    def test_cancelled_before_start(self, tmp_path: Path) -> None:
        """A cancelled token stops the download before any request."""
        cancel = CancelToken()
        cancel.cancel()

        with httpx.Client() as client, pytest.raises(Cancelled):
            FileDownloader(client).download(URL, tmp_path, "a.jpg", cancel=cancel)


class TestDownloadPool:
    """Tests for DownloadPool."""

    def test_download_job(self, tmp_path: Path, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """A job downloads into its target directory."""
        httpx_mock.add_response(url=URL, content=b"photo")
        client = httpx.Client()
        pool = DownloadPool(downloader=FileDownloader(client))
        pool.start()
        try:
            job = DownloadJob(
                artifact_id="7",
                name="a.jpg",
                url=URL,
                created_at=datetime(2025, 3, 4, tzinfo=UTC),
                target_dir=tmp_path,
            )
            done = pool.submit(job).result(timeout=5)
        finally:
            pool.stop()
            client.close()

        assert done.status == JobStatus.DONE
        assert done.local_path == tmp_path / "a.jpg"
        assert done.progress == 100
        assert pool.completed_jobs[0]["artifact_id"] == "7"

    def test_failed_job(self, tmp_path: Path, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """HTTP errors fail the job."""
        httpx_mock.add_response(url=URL, status_code=500)
        client = httpx.Client()
        pool = DownloadPool(downloader=FileDownloader(client))
        pool.start()
        try:
            job = DownloadJob(
                artifact_id="7",
                name="a.jpg",
                url=URL,
                created_at=datetime(2025, 3, 4, tzinfo=UTC),
                target_dir=tmp_path,
            )
            failed = pool.submit(job).result(timeout=5)
        finally:
            pool.stop()
            client.close()

        assert failed.status == JobStatus.FAILED
        assert failed.error_kind == ErrorKind.REJECTED
        assert pool.failed_jobs[0]["name"] == "a.jpg"
