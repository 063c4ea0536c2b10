"""File transfer API router.

This module exposes the object transfer client over HTTP: multipart
uploads, bucket listings, public URL listings and streamed downloads.
"""

from __future__ import annotations

from urllib.parse import quote

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from bucketfront.api.v1.deps import get_transfer_client
from bucketfront.api.v1.schemas.files import BucketFilesOut, LiveUrlsOut, UploadOut
from bucketfront.app.services.transfer_client import (
    InvalidObjectNameError,
    ListingError,
    ObjectNotFoundError,
    ObjectReadError,
    ObjectTransferClient,
    UploadCommitError,
    UploadCopyError,
    UploadDeadlineExceededError,
)

router = APIRouter()


def _content_disposition(filename: str) -> str:
    """Build an attachment header that survives non-ASCII filenames."""
    fallback = filename.encode("ascii", "replace").decode("ascii").replace("?", "_")
    # Escape quotes in filename for Content-Disposition header
    fallback = fallback.replace("\\", "_").replace('"', '\\"')
    header = f'attachment; filename="{fallback}"'
    if fallback != filename:
        header += f"; filename*=UTF-8''{quote(filename, safe='')}"
    return header


@router.post(
    "/images",
    response_model=UploadOut,
    summary="Upload file",
    description="Stream a multipart file field named `upload` into the bucket.",
)
def upload_file(
    upload: UploadFile = File(...),
    client: ObjectTransferClient = Depends(get_transfer_client),
) -> UploadOut:
    try:
        result = client.upload(
            upload.file,
            upload.filename or "",
            content_type=upload.content_type,
        )
    except InvalidObjectNameError as exc:
        raise HTTPException(
            status_code=400,
            detail={"message": str(exc), "error_code": "invalid_object_name"},
        ) from exc
    except UploadDeadlineExceededError as exc:
        raise HTTPException(
            status_code=504,
            detail={"message": str(exc), "error_code": "upload_timeout"},
        ) from exc
    except (UploadCopyError, UploadCommitError) as exc:
        raise HTTPException(
            status_code=500,
            detail={"message": str(exc), "error_code": "upload_failed"},
        ) from exc

    return UploadOut(key=result.handle.key, size_bytes=result.size_bytes)


@router.get(
    "/bucket-files",
    response_model=BucketFilesOut,
    summary="List bucket files",
    description="List every object key in the bucket, optionally filtered by prefix.",
)
def list_bucket_files(
    prefix: str | None = Query(default=None),
    client: ObjectTransferClient = Depends(get_transfer_client),
) -> BucketFilesOut:
    try:
        keys = client.list_object_keys(prefix)
    except ListingError as exc:
        raise HTTPException(
            status_code=500,
            detail={"message": str(exc), "error_code": "listing_failed"},
        ) from exc
    return BucketFilesOut(files=keys)


@router.get(
    "/live-image-urls",
    response_model=LiveUrlsOut,
    summary="List public URLs",
    description="Public URLs of every object in the bucket, optionally filtered by prefix.",
)
def list_live_urls(
    prefix: str | None = Query(default=None),
    client: ObjectTransferClient = Depends(get_transfer_client),
) -> LiveUrlsOut:
    try:
        urls = client.live_urls(prefix)
    except ListingError as exc:
        raise HTTPException(
            status_code=500,
            detail={"message": str(exc), "error_code": "listing_failed"},
        ) from exc
    return LiveUrlsOut(image_urls=urls)


@router.get(
    "/download/{filename:path}",
    summary="Download file",
    description="Stream an uploaded object back as an attachment. Names may contain `/`.",
    response_class=StreamingResponse,
)
def download_file(
    filename: str,
    client: ObjectTransferClient = Depends(get_transfer_client),
) -> StreamingResponse:
    try:
        download = client.download(filename)
    except InvalidObjectNameError as exc:
        raise HTTPException(
            status_code=400,
            detail={"message": str(exc), "error_code": "invalid_object_name"},
        ) from exc
    except ObjectNotFoundError as exc:
        raise HTTPException(status_code=404, detail="File not found") from exc
    except ObjectReadError as exc:
        raise HTTPException(
            status_code=500,
            detail={"message": str(exc), "error_code": "download_failed"},
        ) from exc

    headers = {"Content-Disposition": _content_disposition(filename.rsplit("/", 1)[-1])}
    if download.content_length is not None:
        headers["Content-Length"] = str(download.content_length)

    return StreamingResponse(
        download.iter_chunks(),
        media_type=download.content_type or "application/octet-stream",
        headers=headers,
        background=BackgroundTask(download.close),
    )
