"""Relay sink: uploads files to the relay server."""

from __future__ import annotations

import logging
import threading
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING

from shotmover.client.sinks.base import ProgressReader, PutResult, Sink, file_size, open_source
from shotmover.core.clock import Clock
from shotmover.core.errors import Unauthenticated
from shotmover.core.paths import guess_mime_type
from shotmover.core.types import CancelToken

if TYPE_CHECKING:
    from shotmover.client.api import RelayClient, UploadSession
    from shotmover.client.auth import TokenAdapter
    from shotmover.client.transfer.types import ProgressCallback
    from shotmover.core.destinations import RelayDestination

logger = logging.getLogger(__name__)

SESSION_EXPIRY_SKEW = timedelta(minutes=5)


class RelaySink(Sink):
    """Uploads files through relay upload sessions.

    One session is opened lazily and shared by all puts until it is about
    to expire. A 401/403 drops the session and tells the token adapter the
    token was refused, so the next attempt starts with a fresh token.
    """

    def __init__(
        self,
        destination: RelayDestination,
        client: RelayClient,
        tokens: TokenAdapter | None = None,
        clock: Clock | None = None,
        session_skew: timedelta = SESSION_EXPIRY_SKEW,
    ) -> None:
        """Initialize the sink.

        Args:
            destination: The relay destination.
            client: Relay API client.
            tokens: Supplies bearer tokens (None to use the client's own auth).
            clock: Time source for session expiry.
            session_skew: Renew the session this long before it expires.
        """
        super().__init__(destination)
        self._client = client
        self._tokens = tokens
        self._clock = clock or Clock()
        self._session_skew = session_skew
        self._session: UploadSession | None = None
        self._session_lock = threading.Lock()

    def _token(self) -> str | None:
        if self._tokens is None:
            return None
        return self._tokens.bearer()

    def _get_session(self, token: str | None) -> UploadSession:
        with self._session_lock:
            session = self._session
            if session is None or session.expires_at - self._session_skew <= self._clock.now():
                session = self._client.start_upload_session(token=token)
                self._session = session
                logger.info(f"Opened relay upload session {session.parent_id}")
            return session

    def _drop_session(self) -> None:
        with self._session_lock:
            self._session = None

    def _rejected(self, token: str | None) -> None:
        self._drop_session()
        if self._tokens is not None and token is not None:
            self._tokens.report_rejected(token)

    def _check_connection(self) -> str | None:
        token = self._token()
        try:
            session = self._get_session(token)
        except Unauthenticated:
            self._rejected(token)
            raise
        return f"session {session.parent_id} valid until {session.expires_at.isoformat()}"

    def put(
        self,
        local_path: Path,
        key: str,
        progress: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
        mime_type: str | None = None,
    ) -> PutResult:
        cancel = cancel or CancelToken()
        cancel.raise_if_cancelled()
        total = file_size(local_path)
        mime_type = mime_type or guess_mime_type(key)

        token = self._token()
        try:
            session = self._get_session(token)
            with open_source(local_path) as f:
                reader = ProgressReader(f, total, progress, cancel)
                result = self._client.upload_file(
                    session,
                    reader,  # type: ignore[arg-type]
                    name=key,
                    mime_type=mime_type,
                    size=total,
                    token=token,
                )
        except Unauthenticated:
            self._rejected(token)
            raise

        remote_ref = str(result.get("url") or result.get("id") or f"{session.parent_id}/{key}")
        logger.debug(f"Uploaded {local_path} to relay as {remote_ref}")
        return PutResult(remote_ref=remote_ref, bytes_sent=total)

    def close(self) -> None:
        self._drop_session()
