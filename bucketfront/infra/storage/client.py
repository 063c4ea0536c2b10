"""Object store protocol and data types.

This module defines the minimal capability interface the transfer client
needs from an object storage backend: a committable write stream, a
closable read stream and a paginated key listing.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


class StorageError(RuntimeError):
    """Raised when object storage operations fail."""


class NoSuchObjectError(StorageError):
    """Raised when an object is absent or not readable with the current credentials."""


@dataclass(frozen=True, slots=True)
class CompletedPart:
    """Represents a completed part in a multipart upload."""

    part_number: int
    etag: str


@dataclass(frozen=True, slots=True)
class MultipartUpload:
    """Result of initiating a multipart upload."""

    upload_id: str
    bucket: str
    object_key: str


@dataclass(frozen=True, slots=True)
class ObjectPage:
    """One page of a bucket listing.

    ``next_token`` is ``None`` once the store has no further pages.
    """

    keys: tuple[str, ...]
    next_token: str | None = None


class ObjectWriter(Protocol):
    """Write stream for a single object.

    Nothing written is visible to readers until ``commit`` returns.
    ``abort`` discards the pending object and is safe to call at any point,
    including after a failed commit and from another thread while a
    ``write`` or ``commit`` call is still running. Aborting after a commit
    (or during one that then succeeds) removes the committed object.
    """

    def write(self, data: bytes) -> None:
        ...

    def commit(self) -> None:
        ...

    def abort(self) -> None:
        ...


class ObjectReader(Protocol):
    """Forward-only read stream for a single object."""

    content_length: int | None
    content_type: str | None

    def read(self, size: int) -> bytes:
        """Return up to ``size`` bytes; an empty result means end of object."""
        ...

    def close(self) -> None:
        ...


class ObjectStore(Protocol):
    """Protocol defining the interface for object storage backends.

    Implementations must be safe to share between threads: the transfer
    client issues concurrent calls against one instance.
    """

    def open_write(
        self,
        *,
        bucket: str,
        object_key: str,
        content_type: str | None = None,
    ) -> ObjectWriter:
        """Open a write stream for an object.

        Args:
            bucket: Target bucket name.
            object_key: Object key (path) in the bucket.
            content_type: MIME type recorded with the object.

        Raises:
            StorageError: If the stream cannot be opened.
        """
        ...

    def open_read(self, *, bucket: str, object_key: str) -> ObjectReader:
        """Open a read stream for an object.

        Raises:
            NoSuchObjectError: If the object does not exist or is not accessible.
            StorageError: If the operation fails for any other reason.
        """
        ...

    def list_page(
        self,
        *,
        bucket: str,
        prefix: str | None = None,
        continuation_token: str | None = None,
        page_size: int = 1000,
    ) -> ObjectPage:
        """Fetch one page of object keys.

        Args:
            bucket: Bucket to enumerate.
            prefix: Only return keys starting with this prefix.
            continuation_token: Token from the previous page, ``None`` for the first.
            page_size: Upper bound on the number of keys returned.

        Raises:
            StorageError: If the page cannot be fetched.
        """
        ...

    def check_bucket(self, *, bucket: str) -> None:
        """Verify the bucket is reachable.

        Raises:
            StorageError: If the bucket is missing or unreachable.
        """
        ...
