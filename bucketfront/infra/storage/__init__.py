"""Object storage abstraction layer.

This module provides a protocol-based abstraction for object storage backends,
enabling support for S3, MinIO, Google Cloud Storage (S3 interoperability)
and a local filesystem store.
"""

from .client import (
    CompletedPart,
    MultipartUpload,
    NoSuchObjectError,
    ObjectPage,
    ObjectReader,
    ObjectStore,
    ObjectWriter,
    StorageError,
)

__all__ = [
    "CompletedPart",
    "MultipartUpload",
    "NoSuchObjectError",
    "ObjectPage",
    "ObjectReader",
    "ObjectStore",
    "ObjectWriter",
    "StorageError",
]
