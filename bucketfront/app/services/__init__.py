from .base import ServiceError
from .transfer_client import (
    DownloadError,
    InvalidObjectNameError,
    ListingError,
    ObjectDownload,
    ObjectHandle,
    ObjectNotFoundError,
    ObjectReadError,
    ObjectTransferClient,
    OperationCancelledError,
    StorageBackendNotConfiguredError,
    TransferConfig,
    TransferError,
    UploadCommitError,
    UploadCopyError,
    UploadDeadlineExceededError,
    UploadError,
    UploadResult,
    validate_object_name,
)

__all__ = [
    "ServiceError",
    "ObjectTransferClient",
    "TransferConfig",
    "ObjectHandle",
    "ObjectDownload",
    "UploadResult",
    "TransferError",
    "InvalidObjectNameError",
    "UploadError",
    "UploadDeadlineExceededError",
    "UploadCopyError",
    "UploadCommitError",
    "DownloadError",
    "ObjectNotFoundError",
    "ObjectReadError",
    "ListingError",
    "OperationCancelledError",
    "StorageBackendNotConfiguredError",
    "validate_object_name",
]
