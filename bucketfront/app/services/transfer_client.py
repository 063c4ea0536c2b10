"""Object transfer client.

This module provides the application service that moves bytes between
callers and a single remote bucket: deadline-bounded streaming uploads,
paginated key listings and lazily streamed downloads. Every storage
failure is surfaced as a typed ``TransferError``.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import TYPE_CHECKING, BinaryIO, Callable, Iterator, TypeVar
from urllib.parse import quote

from bucketfront.app.services.base import ServiceError
from bucketfront.infra.observability.metrics import TRANSFER_BYTES, TRANSFER_OPERATIONS
from bucketfront.infra.storage.client import (
    NoSuchObjectError,
    ObjectReader,
    ObjectStore,
    ObjectWriter,
    StorageError,
)
from bucketfront.infra.storage.local_client import LocalStorageClient
from bucketfront.infra.storage.s3_client import S3StorageClient

if TYPE_CHECKING:
    from bucketfront.common.config import Settings

logger = logging.getLogger("bucketfront.transfer")

# S3 and GCS both cap object keys at 1024 bytes of UTF-8
MAX_KEY_BYTES = 1024
DEFAULT_OPERATION_TIMEOUT_SECONDS = 50.0
DEFAULT_PUBLIC_BASE_URL = "https://storage.googleapis.com"
DEFAULT_LIST_PAGE_SIZE = 1000
DEFAULT_CHUNK_SIZE = 64 * 1024

_PATH_SEPARATORS = re.compile(r"[\\/]")

T = TypeVar("T")


class TransferError(ServiceError):
    """Base class for object transfer failures."""


class InvalidObjectNameError(TransferError, ValueError):
    """Raised when an object name is empty or could escape the key prefix."""


class UploadError(TransferError):
    """Raised when an upload did not commit; the object must be treated as absent."""


class UploadDeadlineExceededError(UploadError):
    """Raised when an upload does not finish within the operation timeout."""


class UploadCopyError(UploadError):
    """Raised when bytes cannot be read from the source or written to the store."""


class UploadCommitError(UploadError):
    """Raised when the store refuses to finalize the written object."""


class DownloadError(TransferError):
    """Base class for download failures."""


class ObjectNotFoundError(DownloadError):
    """Raised when the requested object does not exist or is not accessible."""


class ObjectReadError(DownloadError):
    """Raised when an object exists but cannot be read."""


class ListingError(TransferError):
    """Raised when a bucket listing fails before reaching the last page."""


class OperationCancelledError(TransferError):
    """Raised when the caller's cancellation token is set mid-operation."""


class StorageBackendNotConfiguredError(ServiceError):
    """Raised when the storage backend is not properly configured."""


def _outcome(exc: TransferError) -> str:
    if isinstance(exc, UploadDeadlineExceededError):
        return "timeout"
    if isinstance(exc, ObjectNotFoundError):
        return "not_found"
    if isinstance(exc, OperationCancelledError):
        return "cancelled"
    return "error"


def validate_object_name(object_name: str | None) -> str:
    """Return ``object_name`` unchanged if it is safe to use as a key suffix.

    Names are rejected, never rewritten: an empty name, a leading slash,
    control characters, or a ``.``/``..`` path segment all raise
    ``InvalidObjectNameError``.
    """
    if not isinstance(object_name, str) or not object_name:
        raise InvalidObjectNameError("Object name must be a non-empty string")
    if object_name[0] in "/\\":
        raise InvalidObjectNameError("Object name must not start with a path separator")
    if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in object_name):
        raise InvalidObjectNameError("Object name must not contain control characters")
    if any(segment in {".", ".."} for segment in _PATH_SEPARATORS.split(object_name)):
        raise InvalidObjectNameError(
            "Object name must not contain '.' or '..' path segments"
        )
    return object_name


@dataclass(frozen=True, slots=True)
class TransferConfig:
    """Immutable settings of one transfer client."""

    bucket_name: str
    key_prefix: str = ""
    operation_timeout: float = DEFAULT_OPERATION_TIMEOUT_SECONDS
    public_base_url: str = DEFAULT_PUBLIC_BASE_URL
    list_page_size: int = DEFAULT_LIST_PAGE_SIZE
    chunk_size: int = DEFAULT_CHUNK_SIZE

    def __post_init__(self) -> None:
        if not isinstance(self.bucket_name, str) or not self.bucket_name.strip():
            raise ValueError("bucket_name must be a non-empty string")
        if self.operation_timeout <= 0:
            raise ValueError("operation_timeout must be positive")
        if self.list_page_size <= 0:
            raise ValueError("list_page_size must be positive")
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")

    @classmethod
    def from_settings(cls, settings: "Settings") -> "TransferConfig":
        return cls(
            bucket_name=settings.STORAGE_BUCKET,
            key_prefix=settings.STORAGE_KEY_PREFIX or "",
            operation_timeout=float(settings.STORAGE_UPLOAD_TIMEOUT_SECONDS),
            public_base_url=settings.STORAGE_PUBLIC_BASE_URL,
            list_page_size=int(settings.STORAGE_LIST_PAGE_SIZE),
            chunk_size=int(settings.STORAGE_CHUNK_SIZE_BYTES),
        )


@dataclass(frozen=True, slots=True)
class ObjectHandle:
    """Identifies one object in the remote store."""

    bucket_name: str
    key: str


@dataclass(frozen=True, slots=True)
class UploadResult:
    """Outcome of a committed upload."""

    handle: ObjectHandle
    size_bytes: int


class ObjectDownload:
    """Lazily streamed object body.

    The remote reader is released when the chunk iterator is exhausted,
    fails, is closed early, or when ``close`` is called directly; ``close``
    is idempotent so every exit path can call it.
    """

    def __init__(
        self,
        handle: ObjectHandle,
        reader: ObjectReader,
        *,
        chunk_size: int,
        cancel: threading.Event | None = None,
    ) -> None:
        self.handle = handle
        self._reader = reader
        self._chunk_size = chunk_size
        self._cancel = cancel
        self._bytes_read = 0
        self._closed = False

    @property
    def content_length(self) -> int | None:
        return self._reader.content_length

    @property
    def content_type(self) -> str | None:
        return self._reader.content_type

    @property
    def closed(self) -> bool:
        return self._closed

    def iter_chunks(self) -> Iterator[bytes]:
        if self._closed:
            raise ObjectReadError(f"Download of {self.handle.key} is already closed")
        try:
            while True:
                if self._cancel is not None and self._cancel.is_set():
                    raise OperationCancelledError(
                        f"Download of {self.handle.key} was cancelled"
                    )
                try:
                    chunk = self._reader.read(self._chunk_size)
                except StorageError as exc:
                    raise ObjectReadError(
                        f"Failed to read {self.handle.key}: {exc}"
                    ) from exc
                if not chunk:
                    return
                self._bytes_read += len(chunk)
                yield chunk
        finally:
            self.close()

    def __iter__(self) -> Iterator[bytes]:
        return self.iter_chunks()

    def read_all(self) -> bytes:
        return b"".join(self.iter_chunks())

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        TRANSFER_BYTES.labels("download").inc(self._bytes_read)
        try:
            self._reader.close()
        except StorageError as exc:
            logger.warning(
                "download_release_failed key=%s error=%s",
                self.handle.key,
                exc,
                extra={"extra": {"key": self.handle.key, "error": str(exc)}},
            )

    def __enter__(self) -> "ObjectDownload":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class ObjectTransferClient:
    """Moves objects in and out of one bucket under a fixed key prefix.

    The client keeps no per-call state, so one instance can serve
    concurrent requests as long as the store is thread-safe. Store calls
    made during an upload run on a private thread pool so that each one
    can be abandoned when the upload deadline passes.
    """

    def __init__(
        self,
        store: ObjectStore,
        config: TransferConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        max_workers: int | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._clock = clock
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="bucketfront-transfer"
        )

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ObjectTransferClient":
        store = cls._build_store(settings)
        return cls(store, TransferConfig.from_settings(settings))

    @staticmethod
    def _build_store(settings: "Settings") -> ObjectStore:
        """Build the appropriate object store based on configuration."""
        backend = (settings.STORAGE_BACKEND or "").strip().lower()
        if not settings.STORAGE_BUCKET:
            raise StorageBackendNotConfiguredError("STORAGE_BUCKET is required")
        if backend == "s3":
            return S3StorageClient(settings=settings)
        if backend == "local":
            return LocalStorageClient(settings.STORAGE_LOCAL_ROOT)
        raise StorageBackendNotConfiguredError(
            f"Unsupported storage backend: {backend}. Use 's3' or 'local'."
        )

    @property
    def config(self) -> TransferConfig:
        return self._config

    @property
    def store(self) -> ObjectStore:
        return self._store

    def handle_for(self, object_name: str) -> ObjectHandle:
        """Derive the handle of ``object_name`` under the configured prefix."""
        name = validate_object_name(object_name)
        key = f"{self._config.key_prefix}{name}"
        if len(key.encode("utf-8")) > MAX_KEY_BYTES:
            raise InvalidObjectNameError(
                f"Object key must not exceed {MAX_KEY_BYTES} bytes"
            )
        return ObjectHandle(bucket_name=self._config.bucket_name, key=key)

    def public_url(self, key: str) -> str:
        base = self._config.public_base_url.rstrip("/")
        return f"{base}/{self._config.bucket_name}/{quote(key, safe='/~')}"

    def check_bucket(self) -> None:
        self._store.check_bucket(bucket=self._config.bucket_name)

    def close(self, *, wait: bool = False) -> None:
        """Stop the worker pool.

        With ``wait=False`` calls already abandoned finish in the background.
        """
        self._executor.shutdown(wait=wait)

    # -- upload ---------------------------------------------------------------

    def upload(
        self,
        source: BinaryIO,
        object_name: str,
        *,
        content_type: str | None = None,
    ) -> UploadResult:
        """Stream ``source`` into ``key_prefix + object_name``.

        The whole transfer (open, every source read and store write, and
        the commit) runs under ``operation_timeout``. When the deadline
        passes the store call in flight is abandoned and the writer is
        aborted; a commit that still lands afterwards is removed again.

        Raises:
            InvalidObjectNameError: If the name is not acceptable.
            UploadDeadlineExceededError: If the deadline passed before the commit returned.
            UploadCopyError: If reading the source or writing to the store fails.
            UploadCommitError: If the store fails to finalize the object.
        """
        handle = self.handle_for(object_name)
        started = self._clock()
        deadline = started + self._config.operation_timeout

        try:
            size = self._write_object(source, handle, content_type, deadline)
        except UploadError as exc:
            TRANSFER_OPERATIONS.labels("upload", _outcome(exc)).inc()
            logger.warning(
                "upload_failed key=%s reason=%s error=%s",
                handle.key,
                type(exc).__name__,
                exc,
                extra={
                    "extra": {
                        "bucket": handle.bucket_name,
                        "key": handle.key,
                        "reason": type(exc).__name__,
                    }
                },
            )
            raise

        duration_ms = round((self._clock() - started) * 1000, 3)
        TRANSFER_OPERATIONS.labels("upload", "success").inc()
        TRANSFER_BYTES.labels("upload").inc(size)
        logger.info(
            "upload_committed key=%s size_bytes=%s duration_ms=%.3f",
            handle.key,
            size,
            duration_ms,
            extra={
                "extra": {
                    "bucket": handle.bucket_name,
                    "key": handle.key,
                    "size_bytes": size,
                    "duration_ms": duration_ms,
                }
            },
        )
        return UploadResult(handle=handle, size_bytes=size)

    def _write_object(
        self,
        source: BinaryIO,
        handle: ObjectHandle,
        content_type: str | None,
        deadline: float,
    ) -> int:
        try:
            writer = self._bounded(
                lambda: self._store.open_write(
                    bucket=handle.bucket_name,
                    object_key=handle.key,
                    content_type=content_type,
                ),
                deadline,
                handle,
                "open",
                on_abandon=lambda opened: self._abort(opened, handle),
            )
        except StorageError as exc:
            raise UploadCopyError(
                f"Failed to open write stream for {handle.key}: {exc}"
            ) from exc

        committed = False
        try:
            size = self._copy(source, writer, handle, deadline)
            try:
                self._bounded(writer.commit, deadline, handle, "commit")
            except StorageError as exc:
                raise UploadCommitError(
                    f"Failed to commit {handle.key}: {exc}"
                ) from exc
            # a commit that returns past the deadline is rolled back by abort
            self._check_deadline(deadline, handle, "commit", late=True)
            committed = True
            return size
        finally:
            if not committed:
                self._abort(writer, handle)

    def _copy(
        self,
        source: BinaryIO,
        writer: ObjectWriter,
        handle: ObjectHandle,
        deadline: float,
    ) -> int:
        size = 0
        chunk_size = self._config.chunk_size
        while True:
            try:
                chunk = self._bounded(
                    lambda: source.read(chunk_size), deadline, handle, "read"
                )
            except (OSError, ValueError) as exc:
                raise UploadCopyError(
                    f"Failed to read upload source for {handle.key}: {exc}"
                ) from exc
            if not chunk:
                return size
            try:
                self._bounded(lambda: writer.write(chunk), deadline, handle, "write")
            except StorageError as exc:
                raise UploadCopyError(
                    f"Failed to write {handle.key}: {exc}"
                ) from exc
            size += len(chunk)

    def _bounded(
        self,
        call: Callable[[], T],
        deadline: float,
        handle: ObjectHandle,
        stage: str,
        *,
        on_abandon: Callable[[T], None] | None = None,
    ) -> T:
        """Run ``call`` on the worker pool, waiting at most until ``deadline``.

        Exceptions raised by ``call`` propagate unchanged. When the wait
        times out the call keeps running in the background; ``on_abandon``
        then receives its result if it eventually succeeds.
        """
        self._check_deadline(deadline, handle, stage)
        future = self._executor.submit(call)
        try:
            return future.result(timeout=max(deadline - self._clock(), 0.0))
        except FutureTimeoutError as exc:
            if future.done():
                # the call itself raised TimeoutError
                raise
            if on_abandon is not None:
                future.add_done_callback(
                    lambda done: on_abandon(done.result())
                    if not done.cancelled() and done.exception() is None
                    else None
                )
            raise self._deadline_error(handle, f"during {stage}") from exc

    def _check_deadline(
        self,
        deadline: float,
        handle: ObjectHandle,
        stage: str,
        *,
        late: bool = False,
    ) -> None:
        if self._clock() >= deadline:
            raise self._deadline_error(handle, f"{'during' if late else 'before'} {stage}")

    def _deadline_error(self, handle: ObjectHandle, when: str) -> UploadDeadlineExceededError:
        return UploadDeadlineExceededError(
            f"Upload of {handle.key} exceeded {self._config.operation_timeout:g}s {when}"
        )

    def _abort(self, writer: ObjectWriter, handle: ObjectHandle) -> None:
        try:
            writer.abort()
        except StorageError as exc:
            logger.error(
                "upload_abort_failed key=%s error=%s",
                handle.key,
                exc,
                extra={"extra": {"key": handle.key, "error": str(exc)}},
            )
            return
        logger.info(
            "upload_aborted key=%s",
            handle.key,
            extra={"extra": {"key": handle.key}},
        )

    # -- listing --------------------------------------------------------------

    def iter_object_keys(
        self,
        prefix: str | None = None,
        *,
        cancel: threading.Event | None = None,
    ) -> Iterator[str]:
        """Yield every key in the bucket, page by page.

        Raises ``ListingError`` from the iterator as soon as a page fails;
        keys from earlier pages have already been yielded by then, so use
        ``list_object_keys`` when partial results must not leak.
        """
        bucket = self._config.bucket_name
        token: str | None = None
        seen_tokens: set[str] = set()
        while True:
            if cancel is not None and cancel.is_set():
                raise OperationCancelledError(f"Listing of {bucket} was cancelled")
            try:
                page = self._store.list_page(
                    bucket=bucket,
                    prefix=prefix,
                    continuation_token=token,
                    page_size=self._config.list_page_size,
                )
            except StorageError as exc:
                raise ListingError(f"Failed to list objects in {bucket}: {exc}") from exc

            yield from page.keys

            if page.next_token is None:
                return
            if page.next_token in seen_tokens:
                raise ListingError(
                    f"Listing of {bucket} repeated continuation token {page.next_token!r}"
                )
            seen_tokens.add(page.next_token)
            token = page.next_token

    def list_object_keys(
        self,
        prefix: str | None = None,
        *,
        cancel: threading.Event | None = None,
    ) -> list[str]:
        """Return the complete listing, or raise without partial results."""
        started = self._clock()
        try:
            keys = list(self.iter_object_keys(prefix, cancel=cancel))
        except TransferError as exc:
            TRANSFER_OPERATIONS.labels("list", _outcome(exc)).inc()
            logger.error(
                "listing_failed bucket=%s prefix=%s error=%s",
                self._config.bucket_name,
                prefix,
                exc,
                extra={
                    "extra": {
                        "bucket": self._config.bucket_name,
                        "prefix": prefix,
                        "error": str(exc),
                    }
                },
            )
            raise

        duration_ms = round((self._clock() - started) * 1000, 3)
        TRANSFER_OPERATIONS.labels("list", "success").inc()
        logger.info(
            "listing_completed bucket=%s prefix=%s count=%s duration_ms=%.3f",
            self._config.bucket_name,
            prefix,
            len(keys),
            duration_ms,
            extra={
                "extra": {
                    "bucket": self._config.bucket_name,
                    "prefix": prefix,
                    "count": len(keys),
                    "duration_ms": duration_ms,
                }
            },
        )
        return keys

    def live_urls(
        self,
        prefix: str | None = None,
        *,
        cancel: threading.Event | None = None,
    ) -> list[str]:
        """Public URLs of every listed object; assumes the bucket is publicly readable."""
        return [
            self.public_url(key)
            for key in self.list_object_keys(prefix, cancel=cancel)
        ]

    # -- download -------------------------------------------------------------

    def download(
        self,
        object_name: str,
        *,
        cancel: threading.Event | None = None,
    ) -> ObjectDownload:
        """Open ``key_prefix + object_name`` for streaming.

        Raises:
            InvalidObjectNameError: If the name is not acceptable.
            ObjectNotFoundError: If the object is absent or inaccessible.
            ObjectReadError: If the store fails for any other reason.
            OperationCancelledError: If ``cancel`` is already set.
        """
        handle = self.handle_for(object_name)
        if cancel is not None and cancel.is_set():
            raise OperationCancelledError(f"Download of {handle.key} was cancelled")

        try:
            reader = self._store.open_read(
                bucket=handle.bucket_name,
                object_key=handle.key,
            )
        except NoSuchObjectError as exc:
            TRANSFER_OPERATIONS.labels("download", "not_found").inc()
            logger.info(
                "download_not_found key=%s",
                handle.key,
                extra={"extra": {"bucket": handle.bucket_name, "key": handle.key}},
            )
            raise ObjectNotFoundError(f"Object not found: {handle.key}") from exc
        except StorageError as exc:
            TRANSFER_OPERATIONS.labels("download", "error").inc()
            logger.error(
                "download_open_failed key=%s error=%s",
                handle.key,
                exc,
                extra={
                    "extra": {
                        "bucket": handle.bucket_name,
                        "key": handle.key,
                        "error": str(exc),
                    }
                },
            )
            raise ObjectReadError(f"Failed to open {handle.key}: {exc}") from exc

        TRANSFER_OPERATIONS.labels("download", "success").inc()
        logger.info(
            "download_opened key=%s content_length=%s",
            handle.key,
            reader.content_length,
            extra={
                "extra": {
                    "bucket": handle.bucket_name,
                    "key": handle.key,
                    "content_length": reader.content_length,
                }
            },
        )
        return ObjectDownload(
            handle,
            reader,
            chunk_size=self._config.chunk_size,
            cancel=cancel,
        )
