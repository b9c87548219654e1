"""Tests for the relay HTTP client."""

from __future__ import annotations

import io
import json
from datetime import UTC, datetime

import httpx
import pytest

from shotmover.client.api import (
    Artifact,
    RelayClient,
    UploadSession,
    VersionCheck,
    VersionStatus,
)
from shotmover.core.config import RelayConfig
from shotmover.core.errors import Rejected, Unauthenticated, Unreachable

SERVER = "http://relay.test"


def make_config(server_url: str = SERVER) -> RelayConfig:
    """Create a RelayConfig for testing."""
    return RelayConfig(server_url=server_url, app_version="1.0.0", platform="linux")


def make_session() -> UploadSession:
    """Create an upload session for testing."""
    return UploadSession(
        parent_id="parent-1",
        upload_url=f"{SERVER}/api/upload/file",
        expires_at=datetime(2030, 1, 1, tzinfo=UTC),
    )


class TestModels:
    """Tests for response models."""

    def test_upload_session_from_dict(self) -> None:
        """Should parse an upload session."""
        session = UploadSession.from_dict({
            "parent_id": 12,
            "upload_url": "https://up.test/u",
            "expires_at": "2025-06-01T12:00:00.000Z",
        })
        assert session.parent_id == "12"
        assert session.expires_at == datetime(2025, 6, 1, 12, tzinfo=UTC)

    def test_artifact_from_dict(self) -> None:
        """Should parse an artifact with the server's camelCase keys."""
        artifact = Artifact.from_dict({
            "id": 7,
            "name": "a.jpg",
            "size": 1234,
            "type": "image/jpeg",
            "created": "2025-03-04T05:06:07.000Z",
            "downloadUrl": "https://cdn.test/a.jpg",
            "thumbnailUrl": "https://cdn.test/a_t.jpg",
        })
        assert artifact.id == "7"
        assert artifact.size == 1234
        assert artifact.mime_type == "image/jpeg"
        assert artifact.download_url == "https://cdn.test/a.jpg"
        assert artifact.thumbnail_url == "https://cdn.test/a_t.jpg"

    def test_artifact_without_url(self) -> None:
        """An artifact without a download URL is malformed."""
        with pytest.raises(KeyError):
            Artifact.from_dict({"id": 1, "name": "a.jpg", "created": "2025-01-01T00:00:00Z"})

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("OK", VersionStatus.OK),
            ("VersionCheckStatus.OUTDATED", VersionStatus.OUTDATED),
            ("required", VersionStatus.REQUIRED),
            ("something-else", VersionStatus.UNKNOWN),
        ],
    )
    def test_version_check_status(self, raw: str, expected: VersionStatus) -> None:
        """Both status spellings are accepted."""
        assert VersionCheck.from_dict({"status": raw}).status == expected


class TestLogin:
    """Tests for the login endpoints."""

    def test_initialize(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should send email and device id, and return the session id."""
        httpx_mock.add_response(
            method="POST",
            url=f"{SERVER}/login/initialize",
            json={"result": "ok", "session_id": "sess-1"},
        )

        with RelayClient(make_config()) as client:
            assert client.login_initialize("ana@example.com", "device-1") == "sess-1"

        body = json.loads(httpx_mock.get_request().content)
        assert body["email"] == "ana@example.com"
        assert body["cid"] == "device-1"
        assert body["app_version"] == "1.0.0"

    def test_finalize(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should exchange the one-time password for a token."""
        httpx_mock.add_response(
            method="POST",
            url=f"{SERVER}/login/finalize",
            json={"result": "ok", "token": "jwt-token"},
        )

        with RelayClient(make_config()) as client:
            assert client.login_finalize("sess-1", "123456") == "jwt-token"

    def test_failed_result(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """A result other than ok is an authentication failure."""
        httpx_mock.add_response(
            method="POST",
            url=f"{SERVER}/login/finalize",
            json={"result": "error", "message": "Invalid code"},
        )

        with RelayClient(make_config()) as client, pytest.raises(Unauthenticated, match="Invalid code"):
            client.login_finalize("sess-1", "000000")

    def test_refresh_refused(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """A 401 on refresh is an authentication failure."""
        httpx_mock.add_response(method="POST", url=f"{SERVER}/login/refresh", status_code=401)

        with RelayClient(make_config()) as client, pytest.raises(Unauthenticated):
            client.login_refresh("old-token")

    def test_verify(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """verify returns whether the server accepts the token."""
        httpx_mock.add_response(method="POST", url=f"{SERVER}/login/verify", status_code=200)

        with RelayClient(make_config()) as client:
            assert client.login_verify("token") is True


class TestErrors:
    """Tests for error mapping."""

    def test_server_error_is_rejected(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Non-2xx responses raise Rejected with the status code."""
        httpx_mock.add_response(
            method="POST",
            url=f"{SERVER}/api/upload/startsession",
            status_code=503,
            json={"detail": "Maintenance"},
        )

        with RelayClient(make_config()) as client, pytest.raises(Rejected) as exc_info:
            client.start_upload_session(token="t")
        assert exc_info.value.status_code == 503
        assert "Maintenance" in str(exc_info.value)

    def test_forbidden_is_unauthenticated(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """403 is treated like 401."""
        httpx_mock.add_response(method="POST", url=f"{SERVER}/api/upload/startsession", status_code=403)

        with RelayClient(make_config()) as client, pytest.raises(Unauthenticated):
            client.start_upload_session(token="t")

    def test_connection_error_is_unreachable(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Transport failures raise Unreachable."""
        httpx_mock.add_exception(httpx.ConnectError("connection refused"))

        with RelayClient(make_config()) as client, pytest.raises(Unreachable):
            client.start_upload_session(token="t")

    def test_health_check_down(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """health_check never raises."""
        httpx_mock.add_exception(httpx.ConnectError("connection refused"))

        with RelayClient(make_config()) as client:
            assert client.health_check() is False


class TestUpload:
    """Tests for upload sessions and file uploads."""

    def test_start_session_with_supplier(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """The token supplier provides the bearer header."""
        httpx_mock.add_response(
            method="POST",
            url=f"{SERVER}/api/upload/startsession",
            json={
                "parent_id": "p-1",
                "upload_url": f"{SERVER}/api/upload/file",
                "expires_at": "2030-01-01T00:00:00.000Z",
            },
        )

        with RelayClient(make_config(), token_supplier=lambda: "supplied") as client:
            session = client.start_upload_session()

        assert session.parent_id == "p-1"
        assert httpx_mock.get_request().headers["Authorization"] == "Bearer supplied"

    def test_upload_file_multipart(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """The file is posted as multipart form data with its metadata."""
        httpx_mock.add_response(
            method="POST",
            url=f"{SERVER}/api/upload/file",
            json={"id": "f-1", "url": "https://cdn.test/f-1"},
        )

        with RelayClient(make_config()) as client:
            result = client.upload_file(
                make_session(),
                io.BytesIO(b"JPEGDATA"),
                name="2025/03/04/a.jpg",
                mime_type="image/jpeg",
                size=8,
                token="explicit",
            )

        assert result == {"id": "f-1", "url": "https://cdn.test/f-1"}
        request = httpx_mock.get_request()
        assert request.headers["Authorization"] == "Bearer explicit"
        assert request.headers["Content-Type"].startswith("multipart/form-data")
        body = request.read()
        assert b"JPEGDATA" in body
        assert b"parent-1" in body
        assert b"2025/03/04/a.jpg" in body


class TestSync:
    """Tests for the sync listing."""

    def test_list_sync(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Items and the X-More-Items header are returned."""
        httpx_mock.add_response(
            method="GET",
            url=f"{SERVER}/api/sync?since=2025-01-01T00:00:00.000Z",
            json={"files": [{"id": "1"}, {"id": "2"}]},
            headers={"X-More-Items": "98"},
        )

        with RelayClient(make_config()) as client:
            page = client.list_sync("2025-01-01T00:00:00.000Z", token="t")

        assert [i["id"] for i in page.items] == ["1", "2"]
        assert page.more_items == 98

    def test_list_sync_plain_list(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """A bare JSON list is accepted and a missing header means no more items."""
        httpx_mock.add_response(method="GET", json=[{"id": "1"}])

        with RelayClient(make_config()) as client:
            page = client.list_sync("2025-01-01T00:00:00.000Z", token="t")

        assert len(page.items) == 1
        assert page.more_items == 0

    def test_list_sync_not_found_is_empty(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """404 means nothing new."""
        httpx_mock.add_response(method="GET", status_code=404)

        with RelayClient(make_config()) as client:
            page = client.list_sync("2025-01-01T00:00:00.000Z", token="t")

        assert page.items == []

    def test_list_sync_unauthorized(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """401 raises Unauthenticated."""
        httpx_mock.add_response(method="GET", status_code=401)

        with RelayClient(make_config()) as client, pytest.raises(Unauthenticated):
            client.list_sync("2025-01-01T00:00:00.000Z", token="t")


class TestVersionCheck:
    """Tests for the version check."""

    def test_version_check(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should send the version and parse the verdict."""
        httpx_mock.add_response(
            method="POST",
            url=f"{SERVER}/api/versioncheck",
            json={
                "status": "VersionCheckStatus.DOWN",
                "message": "Back soon",
                "maintenance_until": "2025-06-01T14:00:00Z",
            },
        )

        with RelayClient(make_config()) as client:
            result = client.version_check()

        assert result.status == VersionStatus.DOWN
        assert result.message == "Back soon"
        assert result.maintenance_until == datetime(2025, 6, 1, 14, tzinfo=UTC)
        body = json.loads(httpx_mock.get_request().content)
        assert body["version"] == "1.0.0"
        assert body["platform"] == "linux"
