from __future__ import annotations

import logging

from fastapi import HTTPException, Request

from bucketfront.app.services.transfer_client import ObjectTransferClient

logger = logging.getLogger("http")


def get_transfer_client(request: Request) -> ObjectTransferClient:
    client = getattr(request.app.state, "transfer_client", None)
    if client is None:
        logger.error("transfer_client_missing path=%s", request.url.path)
        raise HTTPException(
            status_code=503,
            detail={
                "message": "Object storage is not configured",
                "error_code": "storage_not_configured",
            },
        )
    return client
