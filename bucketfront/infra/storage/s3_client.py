"""S3-compatible storage client implementation.

This module provides an S3-compatible object store that works with
AWS S3, MinIO, and Google Cloud Storage through its S3 interoperability
endpoint (``https://storage.googleapis.com`` with HMAC keys).

Dependencies:
    - boto3
    - botocore
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any, Sequence

from bucketfront.infra.storage.client import (
    CompletedPart,
    MultipartUpload,
    NoSuchObjectError,
    ObjectPage,
    StorageError,
)

if TYPE_CHECKING:
    from bucketfront.common.config import Settings

# Error codes S3-compatible services return for an object the caller cannot read
MISSING_OBJECT_ERROR_CODES = frozenset(
    {"NoSuchKey", "NotFound", "404", "AccessDenied", "Forbidden", "403"}
)


def _error_code(exc: Exception) -> str | None:
    response = getattr(exc, "response", None)
    if not isinstance(response, dict):
        return None
    code = (response.get("Error") or {}).get("Code")
    return str(code) if code is not None else None


class S3ObjectWriter:
    """Buffered write stream for one S3 object.

    Payloads that fit in a single part are stored with one ``put_object``
    call on commit. Larger payloads switch to a multipart upload as soon as
    the first part fills up; the object only becomes visible when the
    multipart upload is completed.

    ``abort`` may run on another thread while a part upload or the commit
    request is still in flight. A multipart upload is aborted right away;
    a commit that lands after the abort deletes the object it just wrote.
    """

    def __init__(
        self,
        storage: "S3StorageClient",
        *,
        bucket: str,
        object_key: str,
        content_type: str | None,
        part_size: int,
    ) -> None:
        self._storage = storage
        self._bucket = bucket
        self._object_key = object_key
        self._content_type = content_type
        self._part_size = part_size
        self._buffer = bytearray()
        self._parts: list[CompletedPart] = []
        self._upload_id: str | None = None
        self._state = "open"
        self._lock = threading.Lock()

    @property
    def upload_id(self) -> str | None:
        return self._upload_id

    def write(self, data: bytes) -> None:
        if self._state != "open":
            raise StorageError("Write stream is already closed")
        self._buffer.extend(data)
        while len(self._buffer) >= self._part_size:
            body = bytes(self._buffer[: self._part_size])
            del self._buffer[: self._part_size]
            self._upload_part(body)

    def _upload_part(self, body: bytes) -> None:
        if self._upload_id is None:
            upload = self._storage.init_multipart_upload(
                bucket=self._bucket,
                object_key=self._object_key,
                content_type=self._content_type,
            )
            with self._lock:
                self._upload_id = upload.upload_id
                aborted = self._state == "aborted"
            if aborted:
                self._abort_upload(upload.upload_id)
                raise StorageError("Write stream was aborted")
        part = self._storage.upload_part(
            bucket=self._bucket,
            object_key=self._object_key,
            upload_id=self._upload_id,
            part_number=len(self._parts) + 1,
            body=body,
        )
        self._parts.append(part)

    def commit(self) -> None:
        with self._lock:
            if self._state != "open":
                raise StorageError("Write stream is already closed")
            self._state = "committing"
        try:
            if self._upload_id is None:
                self._storage.put_object(
                    bucket=self._bucket,
                    object_key=self._object_key,
                    body=bytes(self._buffer),
                    content_type=self._content_type,
                )
            else:
                if self._buffer:
                    self._upload_part(bytes(self._buffer))
                self._storage.complete_multipart_upload(
                    bucket=self._bucket,
                    object_key=self._object_key,
                    upload_id=self._upload_id,
                    parts=self._parts,
                )
        except StorageError:
            with self._lock:
                if self._state == "committing":
                    self._state = "failed"
            raise

        with self._lock:
            landed_after_abort = self._state == "aborted"
            if not landed_after_abort:
                self._state = "committed"
        self._buffer.clear()
        if landed_after_abort:
            self._storage.delete_object(bucket=self._bucket, object_key=self._object_key)
            raise StorageError("Commit finished after the write was aborted")

    def abort(self) -> None:
        with self._lock:
            previous, self._state = self._state, "aborted"
            upload_id = self._upload_id
        if previous == "aborted":
            return
        self._buffer.clear()
        if previous == "committed":
            self._storage.delete_object(bucket=self._bucket, object_key=self._object_key)
        elif upload_id is not None:
            self._abort_upload(upload_id)

    def _abort_upload(self, upload_id: str) -> None:
        self._storage.abort_multipart_upload(
            bucket=self._bucket,
            object_key=self._object_key,
            upload_id=upload_id,
        )


class S3ObjectReader:
    """Read stream over a ``get_object`` response body."""

    def __init__(
        self,
        body: Any,
        *,
        content_length: int | None,
        content_type: str | None,
    ) -> None:
        self._body = body
        self.content_length = content_length
        self.content_type = content_type

    def read(self, size: int) -> bytes:
        try:
            return self._body.read(size)
        except Exception as exc:
            raise StorageError(f"Failed to read object body: {exc}") from exc

    def close(self) -> None:
        try:
            self._body.close()
        except Exception as exc:
            raise StorageError(f"Failed to close object body: {exc}") from exc


class S3StorageClient:
    """S3-compatible object storage client.

    Supports AWS S3, MinIO, and other S3-compatible services.
    Uses boto3 for all storage operations; the underlying boto3 client is
    thread-safe and shared by all concurrent transfers.
    """

    def __init__(self, *, settings: "Settings") -> None:
        """Initialize the S3 client with configuration from settings.

        Args:
            settings: Application settings containing S3 configuration.

        Raises:
            StorageError: If boto3 is not installed.
        """
        self._settings = settings
        self._part_size = int(settings.STORAGE_PART_SIZE_BYTES)
        self._client = self._build_client(settings)

    @staticmethod
    def _build_client(settings: "Settings") -> Any:
        """Create a boto3 S3 client from settings."""
        try:
            import boto3
            from botocore.config import Config
        except ImportError as exc:
            raise StorageError(
                "boto3 and botocore are required for S3 storage backend. "
                "Install with: pip install boto3"
            ) from exc

        addressing_style = (settings.S3_ADDRESSING_STYLE or "path").strip().lower()
        config = Config(
            s3={"addressing_style": addressing_style},
            connect_timeout=settings.S3_CONNECT_TIMEOUT,
            read_timeout=settings.S3_READ_TIMEOUT,
            retries={"max_attempts": int(settings.S3_MAX_ATTEMPTS), "mode": "standard"},
        )

        return boto3.client(
            "s3",
            endpoint_url=settings.S3_ENDPOINT_URL,
            region_name=settings.S3_REGION,
            aws_access_key_id=settings.S3_ACCESS_KEY_ID,
            aws_secret_access_key=settings.S3_SECRET_ACCESS_KEY,
            use_ssl=bool(settings.S3_USE_SSL),
            config=config,
        )

    def open_write(
        self,
        *,
        bucket: str,
        object_key: str,
        content_type: str | None = None,
    ) -> S3ObjectWriter:
        """Open a buffered write stream; no request is sent until the first part fills."""
        return S3ObjectWriter(
            self,
            bucket=bucket,
            object_key=object_key,
            content_type=content_type,
            part_size=self._part_size,
        )

    def put_object(
        self,
        *,
        bucket: str,
        object_key: str,
        body: bytes,
        content_type: str | None = None,
    ) -> None:
        """Store a complete object in a single request."""
        params: dict[str, Any] = {"Bucket": bucket, "Key": object_key, "Body": body}
        if content_type:
            params["ContentType"] = content_type

        try:
            self._client.put_object(**params)
        except Exception as exc:
            raise StorageError(f"Failed to put object: {exc}") from exc

    def init_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        content_type: str | None = None,
    ) -> MultipartUpload:
        """Initialize a multipart upload session."""
        params: dict[str, Any] = {"Bucket": bucket, "Key": object_key}
        if content_type:
            params["ContentType"] = content_type

        try:
            response = self._client.create_multipart_upload(**params)
        except Exception as exc:
            raise StorageError(f"Failed to create multipart upload: {exc}") from exc

        upload_id = response.get("UploadId")
        if not upload_id:
            raise StorageError("S3 response missing UploadId")

        return MultipartUpload(
            upload_id=str(upload_id),
            bucket=bucket,
            object_key=object_key,
        )

    def upload_part(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
        part_number: int,
        body: bytes,
    ) -> CompletedPart:
        """Upload one part of a multipart upload."""
        try:
            response = self._client.upload_part(
                Bucket=bucket,
                Key=object_key,
                UploadId=upload_id,
                PartNumber=int(part_number),
                Body=body,
            )
        except Exception as exc:
            raise StorageError(f"Failed to upload part {part_number}: {exc}") from exc

        etag = response.get("ETag")
        if not etag:
            raise StorageError("S3 response missing ETag")

        return CompletedPart(part_number=int(part_number), etag=str(etag))

    def complete_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
        parts: Sequence[CompletedPart],
    ) -> None:
        """Complete a multipart upload by combining all parts."""
        multipart_payload = {
            "Parts": [
                {"ETag": part.etag, "PartNumber": int(part.part_number)}
                for part in sorted(parts, key=lambda p: p.part_number)
            ]
        }

        try:
            self._client.complete_multipart_upload(
                Bucket=bucket,
                Key=object_key,
                UploadId=upload_id,
                MultipartUpload=multipart_payload,
            )
        except Exception as exc:
            raise StorageError(f"Failed to complete multipart upload: {exc}") from exc

    def abort_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
    ) -> None:
        """Abort a multipart upload and clean up uploaded parts."""
        try:
            self._client.abort_multipart_upload(
                Bucket=bucket,
                Key=object_key,
                UploadId=upload_id,
            )
        except Exception as exc:
            raise StorageError(f"Failed to abort multipart upload: {exc}") from exc

    def delete_object(self, *, bucket: str, object_key: str) -> None:
        """Remove an object; deleting a missing key is not an error."""
        try:
            self._client.delete_object(Bucket=bucket, Key=object_key)
        except Exception as exc:
            raise StorageError(f"Failed to delete object: {exc}") from exc

    def open_read(self, *, bucket: str, object_key: str) -> S3ObjectReader:
        """Open a streaming read of an object."""
        try:
            response = self._client.get_object(Bucket=bucket, Key=object_key)
        except Exception as exc:
            if _error_code(exc) in MISSING_OBJECT_ERROR_CODES:
                raise NoSuchObjectError(
                    f"Object not found: {bucket}/{object_key}"
                ) from exc
            raise StorageError(f"Failed to open object: {exc}") from exc

        size = response.get("ContentLength")
        return S3ObjectReader(
            response["Body"],
            content_length=int(size) if size is not None else None,
            content_type=response.get("ContentType"),
        )

    def list_page(
        self,
        *,
        bucket: str,
        prefix: str | None = None,
        continuation_token: str | None = None,
        page_size: int = 1000,
    ) -> ObjectPage:
        """Fetch one ``list_objects_v2`` page."""
        params: dict[str, Any] = {"Bucket": bucket, "MaxKeys": int(page_size)}
        if prefix:
            params["Prefix"] = prefix
        if continuation_token:
            params["ContinuationToken"] = continuation_token

        try:
            response = self._client.list_objects_v2(**params)
        except Exception as exc:
            raise StorageError(f"Failed to list objects: {exc}") from exc

        keys = tuple(str(item["Key"]) for item in response.get("Contents") or [])
        if not response.get("IsTruncated"):
            return ObjectPage(keys=keys, next_token=None)

        next_token = response.get("NextContinuationToken")
        if not next_token:
            raise StorageError("S3 response missing NextContinuationToken")
        return ObjectPage(keys=keys, next_token=str(next_token))

    def check_bucket(self, *, bucket: str) -> None:
        """Verify the bucket exists and is reachable."""
        try:
            self._client.head_bucket(Bucket=bucket)
        except Exception as exc:
            raise StorageError(f"Bucket is not reachable: {exc}") from exc
