"""S3 sink.

Small files are sent with a single PutObject; larger ones use a
multipart upload so progress and cancellation are observed between
parts. A cancelled or failed multipart upload is aborted (best effort).
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    EndpointConnectionError,
    NoCredentialsError,
)

from shotmover.client.sinks.base import PutResult, Sink, file_size, open_source
from shotmover.core.errors import ConfigInvalid, MoverError, Rejected, Unauthenticated, Unreachable
from shotmover.core.paths import guess_mime_type, join_key
from shotmover.core.types import CancelToken

if TYPE_CHECKING:
    from shotmover.client.transfer.types import ProgressCallback
    from shotmover.core.destinations import S3Destination

logger = logging.getLogger(__name__)

# S3 parts must be at least 5 MiB (except the last one)
PART_SIZE = 8 * 1024 * 1024
MULTIPART_THRESHOLD = PART_SIZE

_AUTH_ERROR_CODES = frozenset({
    "AccessDenied",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "ExpiredToken",
    "InvalidToken",
    "403",
})


def map_s3_error(error: Exception) -> MoverError:
    """Translate a botocore exception to a MoverError."""
    if isinstance(error, NoCredentialsError):
        return Unauthenticated("S3 credentials are missing")
    if isinstance(error, EndpointConnectionError):
        return Unreachable(f"Cannot reach S3: {error}")
    if isinstance(error, ClientError):
        err = error.response.get("Error", {})
        code = str(err.get("Code", ""))
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        message = err.get("Message") or code or str(error)
        if code in _AUTH_ERROR_CODES or status in (401, 403):
            return Unauthenticated(f"S3 refused credentials: {message}")
        if code in ("NoSuchBucket", "404"):
            return ConfigInvalid(f"S3 bucket does not exist: {message}")
        return Rejected(f"S3 error {code}: {message}", status)
    if isinstance(error, BotoCoreError):
        return Unreachable(f"S3 request failed: {error}")
    return Unreachable(str(error))


class S3Sink(Sink):
    """Uploads objects to an S3 bucket under ``prefix/key``."""

    def __init__(self, destination: S3Destination, client: Any = None) -> None:
        """Initialize the sink.

        Args:
            destination: Bucket, region, credentials and storage class.
            client: Pre-built boto3 S3 client (created lazily otherwise).
        """
        super().__init__(destination)
        self._s3 = destination
        self._client = client
        self._client_lock = threading.Lock()

    def _get_client(self) -> Any:
        with self._client_lock:
            if self._client is None:
                session = boto3.Session(
                    aws_access_key_id=self._s3.access_key_id,
                    aws_secret_access_key=self._s3.secret_access_key,
                    region_name=self._s3.region,
                )
                config = Config(
                    retries={"max_attempts": 1, "mode": "standard"},
                    max_pool_connections=10,
                )
                self._client = session.client("s3", config=config)
            return self._client

    def object_key(self, key: str) -> str:
        """Object name for a logical key."""
        return join_key(self._s3.prefix, key)

    def _check_connection(self) -> str | None:
        try:
            self._get_client().head_bucket(Bucket=self._s3.bucket)
        except (BotoCoreError, ClientError) as e:
            raise map_s3_error(e) from e
        return f"s3://{self._s3.bucket} ({self._s3.region})"

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
        mime_type = mime_type or guess_mime_type(key)

        logger.debug(f"Uploading {local_path} to s3://{self._s3.bucket}/{object_key} ({total} bytes)")
        try:
            if total > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, object_key, total, mime_type, progress, cancel)
            else:
                self._simple_upload(local_path, object_key, total, mime_type, progress, cancel)
        except (BotoCoreError, ClientError) as e:
            raise map_s3_error(e) from e

        return PutResult(remote_ref=f"s3://{self._s3.bucket}/{object_key}", bytes_sent=total)

    def _simple_upload(
        self,
        local_path: Path,
        object_key: str,
        total: int,
        mime_type: str,
        progress: ProgressCallback | None,
        cancel: CancelToken,
    ) -> None:
        with open_source(local_path) as f:
            data = f.read()
        cancel.raise_if_cancelled()
        self._get_client().put_object(
            Bucket=self._s3.bucket,
            Key=object_key,
            Body=data,
            ContentType=mime_type,
            StorageClass=self._s3.storage_class.value,
        )
        if progress:
            progress(total, total)

    def _multipart_upload(
        self,
        local_path: Path,
        object_key: str,
        total: int,
        mime_type: str,
        progress: ProgressCallback | None,
        cancel: CancelToken,
    ) -> None:
        client = self._get_client()
        response = client.create_multipart_upload(
            Bucket=self._s3.bucket,
            Key=object_key,
            ContentType=mime_type,
            StorageClass=self._s3.storage_class.value,
        )
        upload_id = response["UploadId"]
        logger.debug(f"Started multipart upload {upload_id} for {local_path}")

        parts = []
        sent = 0
        try:
            with open_source(local_path) as f:
                part_number = 1
                while True:
                    cancel.raise_if_cancelled()
                    chunk = f.read(PART_SIZE)
                    if not chunk:
                        break
                    part = client.upload_part(
                        Bucket=self._s3.bucket,
                        Key=object_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=chunk,
                    )
                    parts.append({"ETag": part["ETag"], "PartNumber": part_number})
                    sent += len(chunk)
                    if progress:
                        progress(sent, total)
                    part_number += 1

            cancel.raise_if_cancelled()
            client.complete_multipart_upload(
                Bucket=self._s3.bucket,
                Key=object_key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
        except BaseException:
            logger.info(f"Aborting multipart upload {upload_id}")
            self._abort(upload_id, object_key)
            raise

    def _abort(self, upload_id: str, object_key: str) -> None:
        try:
            self._get_client().abort_multipart_upload(
                Bucket=self._s3.bucket,
                Key=object_key,
                UploadId=upload_id,
            )
        except (BotoCoreError, ClientError) as e:
            logger.warning(f"Could not abort multipart upload {upload_id}: {e}")

    def close(self) -> None:
        with self._client_lock:
            if self._client is not None:
                self._client.close()
                self._client = None
