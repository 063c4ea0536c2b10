import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bucketfront.api.v1.deps import get_transfer_client
from bucketfront.api.v1.routers.files import router as files_router
from bucketfront.app.services.transfer_client import ObjectTransferClient
from bucketfront.common.config import Settings, get_settings
from bucketfront.common.logging import setup_logging
from bucketfront.infra.observability.metrics import metrics_app
from bucketfront.infra.observability.middleware import MetricsMiddleware
from bucketfront.infra.storage.client import StorageError

ERROR_CODE_BY_STATUS = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    413: "payload_too_large",
    415: "unsupported_media_type",
    500: "internal_error",
    502: "bad_gateway",
    503: "service_unavailable",
    504: "gateway_timeout",
}


def _normalize_detail(detail):
    if isinstance(detail, dict):
        maybe_code = detail.get("error_code")
        cleaned = {k: v for k, v in detail.items() if k != "error_code"}
        if len(cleaned) == 1 and "message" in cleaned:
            cleaned = cleaned["message"]
        if not cleaned:
            cleaned = None
        return cleaned, maybe_code if isinstance(maybe_code, str) else None
    return detail, None


def _resolve_error_code(status_code: int, override: str | None = None) -> str:
    if override:
        return override
    if status_code == 422:
        return "validation_error"
    return ERROR_CODE_BY_STATUS.get(status_code, "unknown_error")


def _describe_storage_target(settings: Settings) -> str:
    parts = [
        f"backend={settings.STORAGE_BACKEND}",
        f"bucket={settings.STORAGE_BUCKET or '<missing>'}",
        f"key_prefix={settings.STORAGE_KEY_PREFIX!r}",
        f"upload_timeout={settings.STORAGE_UPLOAD_TIMEOUT_SECONDS:g}s",
    ]
    if settings.STORAGE_BACKEND == "s3":
        parts.append(f"endpoint={settings.S3_ENDPOINT_URL or '<aws-default>'}")
    else:
        parts.append(f"root={settings.STORAGE_LOCAL_ROOT}")
    return ", ".join(parts)


def create_app(transfer_client: ObjectTransferClient | None = None) -> FastAPI:
    settings = get_settings()
    setup_logging()
    startup_logger = logging.getLogger("bucketfront.startup")

    owns_client = transfer_client is None
    if transfer_client is None:
        storage_context = _describe_storage_target(settings)
        try:
            transfer_client = ObjectTransferClient.from_settings(settings)
        except Exception as exc:
            startup_logger.error(
                "无法初始化对象存储客户端，请检查 STORAGE_* / S3_* 配置。"
                " [event=storage_client_init_failed] (%s，error=%s)",
                storage_context,
                exc,
            )
            raise
        startup_logger.info(
            "对象存储客户端已就绪。[event=storage_client_ready] (%s)",
            storage_context,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_client:
            app.state.transfer_client.close()
            startup_logger.info("对象存储客户端已关闭。[event=storage_client_closed]")

    app = FastAPI(
        title="Bucketfront Service",
        version="v1.0",
        description="Upload, list and download files stored in an object storage bucket",
        lifespan=lifespan,
    )
    app.state.transfer_client = transfer_client

    # Optional CORS
    if settings.CORS_ENABLED:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.CORS_ORIGINS or ["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(files_router, prefix="/api/v1", tags=["files"])

    # Metrics
    if settings.ENABLE_METRICS:
        app.add_middleware(MetricsMiddleware)
        app.mount("/metrics", metrics_app)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        logger = logging.getLogger("http")
        normalized_detail, code_override = _normalize_detail(exc.detail)
        logger.log(
            logging.WARNING if exc.status_code < 500 else logging.ERROR,
            "http_exception status=%s detail=%s method=%s path=%s request_id=%s",
            exc.status_code,
            normalized_detail,
            request.method,
            request.url.path,
            request.headers.get("X-Request-Id"),
            extra={
                "extra": {
                    "status": exc.status_code,
                    "detail": normalized_detail,
                    "method": request.method,
                    "route": request.url.path,
                    "request_id": request.headers.get("X-Request-Id"),
                }
            },
        )
        return JSONResponse(
            status_code=exc.status_code,
            media_type="application/problem+json",
            content={
                "type": "about:blank",
                "title": "HTTP Error",
                "status": exc.status_code,
                "detail": normalized_detail,
                "error_code": _resolve_error_code(exc.status_code, code_override),
                "instance": str(request.url),
                "request_id": request.headers.get("X-Request-Id"),
            },
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(
        request: Request, exc: RequestValidationError
    ):
        return JSONResponse(
            status_code=422,
            media_type="application/problem+json",
            content={
                "type": "about:blank",
                "title": "Validation Error",
                "status": 422,
                # 确保可序列化
                "detail": jsonable_encoder(exc.errors()),
                "error_code": _resolve_error_code(422),
                "instance": str(request.url),
                "request_id": request.headers.get("X-Request-Id"),
            },
        )

    @app.get("/ping")
    async def ping():
        return {"message": "pong"}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/ready")
    def ready(client: ObjectTransferClient = Depends(get_transfer_client)):
        try:
            client.check_bucket()
        except StorageError as exc:
            return {"status": "not_ready", "detail": {"storage": str(exc)}}
        return {"status": "ready"}

    return app


if __name__ == "__main__":
    uvicorn.run("bucketfront.main:create_app", factory=True, host="0.0.0.0", port=8000)
