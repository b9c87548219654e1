"""HTTP client for the relay server API.

This module provides:
- RelayClient: HTTP client for communicating with the relay server
- Login operations (initialize, finalize, verify, refresh)
- Upload session and multipart upload operations
- Sync listing and version check
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Generator
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import IO, Any

import httpx

from shotmover.core.clock import parse_instant
from shotmover.core.config import RelayConfig
from shotmover.core.errors import Rejected, Unauthenticated, Unreachable

logger = logging.getLogger(__name__)

TokenSupplier = Callable[[], str | None]


class BearerAuth(httpx.Auth):
    """Adds the current bearer token to every request."""

    def __init__(self, token_supplier: TokenSupplier) -> None:
        self._token_supplier = token_supplier

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        token = self._token_supplier()
        if token:
            request.headers["Authorization"] = f"Bearer {token}"
        yield request


@dataclass
class UploadSession:
    """Server-issued handle that authorises relay uploads."""

    parent_id: str
    upload_url: str
    expires_at: datetime

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UploadSession:
        """Create from API response dictionary."""
        return cls(
            parent_id=str(data["parent_id"]),
            upload_url=data["upload_url"],
            expires_at=parse_instant(data["expires_at"]),
        )


@dataclass
class Artifact:
    """A file made available by the server for download."""

    id: str
    name: str
    size: int
    mime_type: str
    created_at: datetime
    download_url: str
    thumbnail_url: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Artifact:
        """Create from API response dictionary.

        Raises:
            KeyError: If id, name, created or the download URL is missing.
            ValueError: If the creation instant cannot be parsed.
        """
        url = data.get("downloadUrl") or data.get("download_url") or data.get("url")
        if not url:
            raise KeyError("downloadUrl")
        return cls(
            id=str(data["id"]),
            name=data["name"],
            size=int(data.get("size") or 0),
            mime_type=data.get("type") or data.get("mime_type") or "application/octet-stream",
            created_at=parse_instant(data.get("created") or data["created_at"]),
            download_url=url,
            thumbnail_url=data.get("thumbnail_url") or data.get("thumbnailUrl"),
        )


@dataclass
class SyncPage:
    """Result of a sync listing call."""

    items: list[dict[str, Any]]
    more_items: int = 0


class VersionStatus(str, Enum):
    """Server verdict on the client version."""

    OK = "OK"
    OUTDATED = "OUTDATED"
    REQUIRED = "REQUIRED"
    DOWN = "DOWN"
    UNKNOWN = "UNKNOWN"


@dataclass
class VersionCheck:
    """Result of the version check call."""

    status: VersionStatus
    message: str | None = None
    maintenance_until: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VersionCheck:
        """Create from API response dictionary.

        Accepts both "OK" and "VersionCheckStatus.OK" spellings.
        """
        raw = str(data.get("status", "")).rsplit(".", 1)[-1].upper()
        try:
            status = VersionStatus(raw)
        except ValueError:
            status = VersionStatus.UNKNOWN
        maintenance = data.get("maintenance_until")
        return cls(
            status=status,
            message=data.get("message"),
            maintenance_until=parse_instant(maintenance) if maintenance else None,
        )


class RelayClient:
    """HTTP client for the relay server API."""

    def __init__(
        self,
        config: RelayConfig,
        token_supplier: TokenSupplier | None = None,
    ) -> None:
        """Initialize the relay client.

        Args:
            config: Server configuration (URL, timeout, identification).
            token_supplier: Returns the bearer token for each request.
        """
        self._config = config
        self._client = httpx.Client(
            base_url=config.server_url,
            timeout=config.timeout,
            verify=config.verify_ssl,
            auth=BearerAuth(token_supplier) if token_supplier else None,
        )

    @property
    def config(self) -> RelayConfig:
        """Get the server configuration."""
        return self._config

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> RelayClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        if response.status_code in (401, 403):
            raise Unauthenticated(f"Server refused credentials ({response.status_code})")
        if response.status_code >= 400:
            raise Rejected(_error_detail(response), response.status_code)
        return response

    def _request(
        self,
        method: str,
        url: str,
        token: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request, mapping transport failures to Unreachable.

        Args:
            method: HTTP method.
            url: Path relative to the server URL, or an absolute URL.
            token: Explicit bearer token, overriding the client's supplier.
            **kwargs: Passed to httpx.
        """
        if token is not None:
            kwargs["headers"] = {**kwargs.get("headers", {}), "Authorization": f"Bearer {token}"}
            kwargs["auth"] = None
        try:
            return self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise Unreachable(f"Timed out reaching {self._config.server_url}: {e}") from e
        except httpx.TransportError as e:
            raise Unreachable(f"Cannot reach {self._config.server_url}: {e}") from e

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the server answers at all.

        Returns:
            True if the server responded without a 5xx status.
        """
        try:
            response = self._client.get("/", auth=None)
            return response.status_code < 500
        except httpx.RequestError:
            return False

    # === Login operations ===

    def login_initialize(self, email: str, device_id: str) -> str:
        """Ask the server to send a one-time password to an email address.

        Args:
            email: Account email.
            device_id: Persistent id of this installation.

        Returns:
            Login session id to pass to login_finalize().
        """
        data = self._login_call(
            "/login/initialize",
            {"email": email, "cid": device_id, **self._config.app_info},
        )
        return str(data["session_id"])

    def login_finalize(self, session_id: str, otp: str) -> str:
        """Exchange a one-time password for a token.

        Returns:
            Signed JWT.
        """
        data = self._login_call("/login/finalize", {"session_id": session_id, "token": otp})
        return str(data["token"])

    def login_verify(self, token: str) -> bool:
        """Check whether the server still accepts a token."""
        response = self._request(
            "POST",
            "/login/verify",
            json={"token": token, **self._config.app_info},
            auth=None,
        )
        return response.status_code == 200

    def login_refresh(self, token: str) -> str:
        """Exchange a token for a fresh one.

        Raises:
            Unauthenticated: If the server refuses the token.
        """
        data = self._login_call("/login/refresh", {"token": token, **self._config.app_info})
        return str(data["token"])

    def _login_call(self, path: str, body: dict[str, str]) -> dict[str, Any]:
        response = self._handle_response(self._request("POST", path, json=body, auth=None))
        data: dict[str, Any] = response.json()
        if data.get("result") != "ok":
            raise Unauthenticated(data.get("message") or f"{path} failed")
        return data

    # === Upload operations ===

    def start_upload_session(self, token: str | None = None) -> UploadSession:
        """Open an upload session.

        Args:
            token: Bearer token (defaults to the client's supplier).

        Returns:
            Session with parent id, upload URL and expiry.
        """
        response = self._handle_response(
            self._request(
                "POST", "/api/upload/startsession", token=token, json=self._config.app_info
            )
        )
        session = UploadSession.from_dict(response.json())
        logger.debug(f"Upload session {session.parent_id} expires at {session.expires_at}")
        return session

    def upload_file(
        self,
        session: UploadSession,
        stream: IO[bytes],
        name: str,
        mime_type: str,
        size: int,
        token: str | None = None,
    ) -> dict[str, Any]:
        """Upload one file as multipart/form-data to the session URL.

        Args:
            session: Open upload session.
            stream: Binary stream with the file content.
            name: File name (may contain the key's folder part).
            mime_type: MIME type of the content.
            size: Size in bytes.
            token: Bearer token (defaults to the client's supplier).

        Returns:
            Decoded JSON response (empty dict if the body is not JSON).
        """
        response = self._handle_response(
            self._request(
                "POST",
                session.upload_url,
                token=token,
                data={
                    "parent_id": session.parent_id,
                    "name": name,
                    "mime_type": mime_type,
                    "size": str(size),
                },
                files={"file": (name.rsplit("/", 1)[-1], stream, mime_type)},
                timeout=httpx.Timeout(None, connect=self._config.timeout),
            )
        )
        try:
            result: dict[str, Any] = response.json()
        except ValueError:
            result = {}
        return result

    # === Sync operations ===

    def list_sync(self, since: str, token: str | None = None) -> SyncPage:
        """List artifacts created after an instant.

        Args:
            since: ISO-8601 instant (the high-water mark).
            token: Bearer token (defaults to the client's supplier).

        Returns:
            Page of raw artifact dictionaries; empty on 404.
        """
        response = self._request("GET", "/api/sync", token=token, params={"since": since})
        if response.status_code == 404:
            return SyncPage(items=[])
        self._handle_response(response)

        body = response.json()
        if isinstance(body, dict):
            items = body.get("files") or body.get("data") or []
        else:
            items = body or []
        try:
            more_items = int(response.headers.get("X-More-Items", "0"))
        except ValueError:
            more_items = 0
        return SyncPage(items=list(items), more_items=more_items)

    # === Version check ===

    def version_check(self) -> VersionCheck:
        """Ask the server whether this client version is supported."""
        response = self._handle_response(
            self._request(
                "POST",
                "/api/versioncheck",
                json={
                    "version": self._config.app_version,
                    "client_id": self._config.client_id,
                    "platform": self._config.platform,
                },
                auth=None,
            )
        )
        return VersionCheck.from_dict(response.json())


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("message") or f"HTTP {response.status_code}")
    return f"HTTP {response.status_code}"
