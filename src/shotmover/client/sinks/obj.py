"""Google Cloud Storage sink.

Authenticates with a service-account key and streams files through a
resumable upload in fixed-size chunks; the upload body is wrapped in a
ProgressReader so progress and cancellation are observed per chunk.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any

from google.api_core.exceptions import Forbidden, GoogleAPICallError, NotFound, Unauthorized
from google.auth.exceptions import GoogleAuthError
from google.cloud import storage

from shotmover.client.sinks.base import ProgressReader, PutResult, Sink, file_size, open_source
from shotmover.core.errors import ConfigInvalid, MoverError, Rejected, Unauthenticated, Unreachable
from shotmover.core.paths import guess_mime_type, join_key
from shotmover.core.types import CancelToken

if TYPE_CHECKING:
    from shotmover.client.transfer.types import ProgressCallback
    from shotmover.core.destinations import ObjDestination

logger = logging.getLogger(__name__)

# Resumable upload chunks must be a multiple of 256 KiB
UPLOAD_CHUNK_SIZE = 8 * 1024 * 1024


def map_gcs_error(error: Exception) -> MoverError:
    """Translate a Google client exception to a MoverError."""
    if isinstance(error, Unauthorized | Forbidden):
        return Unauthenticated(f"Cloud Storage refused credentials: {error.message}")
    if isinstance(error, NotFound):
        return ConfigInvalid(f"Cloud Storage bucket not found: {error.message}")
    if isinstance(error, GoogleAPICallError):
        return Rejected(f"Cloud Storage error: {error.message}", error.code)
    if isinstance(error, GoogleAuthError):
        return Unauthenticated(f"Cloud Storage authentication failed: {error}")
    return Unreachable(str(error))


class GCSSink(Sink):
    """Uploads objects to a bucket under ``prefix/key``."""

    def __init__(self, destination: ObjDestination, client: Any = None) -> None:
        """Initialize the sink.

        Args:
            destination: Bucket and service-account key.
            client: Pre-built storage.Client (created lazily otherwise).
        """
        super().__init__(destination)
        self._obj = destination
        self._client = client
        self._lock = threading.Lock()

    def _bucket(self) -> Any:
        with self._lock:
            if self._client is None:
                try:
                    self._client = storage.Client.from_service_account_info(
                        dict(self._obj.service_account_key),
                        project=self._obj.project_id,
                    )
                except ValueError as e:
                    raise ConfigInvalid(f"Invalid service account key: {e}") from e
            return self._client.bucket(self._obj.bucket)

    def object_key(self, key: str) -> str:
        """Object name for a logical key."""
        return join_key(self._obj.prefix, key)

    def _check_connection(self) -> str | None:
        try:
            self._bucket().reload()
        except (GoogleAPICallError, GoogleAuthError) as e:
            raise map_gcs_error(e) from e
        return f"gs://{self._obj.bucket} ({self._obj.project_id})"

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
        object_key = self.object_key(key)

        try:
            blob = self._bucket().blob(object_key, chunk_size=UPLOAD_CHUNK_SIZE)
            with open_source(local_path) as f:
                reader = ProgressReader(f, total, progress, cancel)
                blob.upload_from_file(
                    reader,
                    size=total,
                    content_type=mime_type or guess_mime_type(key),
                    rewind=False,
                )
        except (GoogleAPICallError, GoogleAuthError) as e:
            raise map_gcs_error(e) from e

        logger.debug(f"Uploaded {local_path} to gs://{self._obj.bucket}/{object_key}")
        return PutResult(remote_ref=f"gs://{self._obj.bucket}/{object_key}", bytes_sent=total)

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None
