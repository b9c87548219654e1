"""Azure Blob Storage sink.

Files are written as block blobs: blocks are staged one by one (so
progress and cancellation are observed between blocks) and committed at
the end. Uncommitted blocks of a cancelled upload are discarded by the
service.
"""

from __future__ import annotations

import base64
import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
)
from azure.storage.blob import BlobBlock, BlobServiceClient, ContentSettings

from shotmover.client.sinks.base import PutResult, Sink, file_size, open_source
from shotmover.core.errors import ConfigInvalid, MoverError, Rejected, Unauthenticated, Unreachable
from shotmover.core.paths import guess_mime_type
from shotmover.core.types import CancelToken

if TYPE_CHECKING:
    from shotmover.client.transfer.types import ProgressCallback
    from shotmover.core.destinations import BlobDestination

logger = logging.getLogger(__name__)

BLOCK_SIZE = 4 * 1024 * 1024


def map_azure_error(error: Exception) -> MoverError:
    """Translate an azure-core exception to a MoverError."""
    if isinstance(error, ClientAuthenticationError):
        return Unauthenticated(f"Blob storage refused credentials: {error.message}")
    if isinstance(error, ResourceNotFoundError):
        return ConfigInvalid(f"Blob container not found: {error.message}")
    if isinstance(error, ServiceRequestError):
        return Unreachable(f"Cannot reach blob storage: {error.message}")
    if isinstance(error, HttpResponseError):
        if error.status_code in (401, 403):
            return Unauthenticated(f"Blob storage refused credentials: {error.message}")
        return Rejected(f"Blob storage error: {error.message}", error.status_code)
    if isinstance(error, AzureError):
        return Unreachable(f"Blob storage request failed: {error.message}")
    return Unreachable(str(error))


def _block_id(index: int) -> str:
    # All block ids of a blob must have the same length
    return base64.b64encode(f"block-{index:08d}".encode()).decode()


class AzureBlobSink(Sink):
    """Uploads block blobs to a container under ``key``."""

    def __init__(self, destination: BlobDestination, service_client: Any = None) -> None:
        """Initialize the sink.

        Args:
            destination: Connection string and container.
            service_client: Pre-built BlobServiceClient (created lazily otherwise).
        """
        super().__init__(destination)
        self._blob = destination
        self._service = service_client
        self._lock = threading.Lock()

    def _container(self) -> Any:
        with self._lock:
            if self._service is None:
                try:
                    self._service = BlobServiceClient.from_connection_string(
                        self._blob.connection_string
                    )
                except ValueError as e:
                    raise ConfigInvalid(f"Invalid connection string: {e}") from e
            return self._service.get_container_client(self._blob.container)

    def _check_connection(self) -> str | None:
        try:
            self._container().get_container_properties()
        except AzureError as e:
            raise map_azure_error(e) from e
        return f"{self._blob.account}/{self._blob.container}"

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
        content_settings = ContentSettings(content_type=mime_type or guess_mime_type(key))

        try:
            blob_client = self._container().get_blob_client(key)
            with open_source(local_path) as f:
                if total <= BLOCK_SIZE:
                    data = f.read()
                    cancel.raise_if_cancelled()
                    blob_client.upload_blob(data, overwrite=True, content_settings=content_settings)
                    if progress:
                        progress(total, total)
                else:
                    self._upload_blocks(blob_client, f, total, content_settings, progress, cancel)
        except AzureError as e:
            raise map_azure_error(e) from e

        logger.debug(f"Uploaded {local_path} to blob {self._blob.container}/{key}")
        return PutResult(remote_ref=blob_client.url, bytes_sent=total)

    def _upload_blocks(
        self,
        blob_client: Any,
        fileobj: Any,
        total: int,
        content_settings: ContentSettings,
        progress: ProgressCallback | None,
        cancel: CancelToken,
    ) -> None:
        blocks = []
        sent = 0
        index = 0
        while True:
            cancel.raise_if_cancelled()
            chunk = fileobj.read(BLOCK_SIZE)
            if not chunk:
                break
            block_id = _block_id(index)
            blob_client.stage_block(block_id=block_id, data=chunk, length=len(chunk))
            blocks.append(BlobBlock(block_id=block_id))
            sent += len(chunk)
            index += 1
            if progress:
                progress(sent, total)

        cancel.raise_if_cancelled()
        blob_client.commit_block_list(blocks, content_settings=content_settings)

    def close(self) -> None:
        with self._lock:
            if self._service is not None:
                self._service.close()
                self._service = None
