import json
import logging
import re
import time
import uuid
from typing import Any

from fastapi import Request
from starlette.concurrency import iterate_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from bucketfront.common.config import get_settings
from bucketfront.infra.observability.metrics import LATENCY, REQUESTS

MAX_TRACE_BODY_CHARS = 2048
TRACEABLE_CONTENT_TYPES = ("application/json", "application/problem+json", "text/")

_TEXT_SECRET_PATTERNS = (
    re.compile(
        r"(?i)(token|secret|api_key|x-api-key|password|authorization)\s*[:=]\s*[^\s]+"
    ),
    re.compile(r"(?i)authorization\s*:\s*bearer\s+[A-Za-z0-9\-_.]+"),
)


def _is_traceable(content_type: str | None) -> bool:
    # 上传的 multipart 表单与下载流不做缓冲，避免整文件读入内存
    if not content_type:
        return False
    return content_type.lower().startswith(TRACEABLE_CONTENT_TYPES)


def _truncate(text: str) -> str:
    if len(text) > MAX_TRACE_BODY_CHARS:
        return text[:MAX_TRACE_BODY_CHARS] + "...<truncated>"
    return text


class MetricsMiddleware(BaseHTTPMiddleware):
    SENSITIVE_KEYS = {
        "password",
        "passwd",
        "pwd",
        "secret",
        "token",
        "access_token",
        "refresh_token",
        "api_key",
        "x-api-key",
        "authorization",
        "aws_secret_access_key",
        "s3_secret_access_key",
    }

    def _mask_mapping(self, obj: Any) -> Any:
        if isinstance(obj, dict):
            masked: dict[str, Any] = {}
            for k, v in obj.items():
                if isinstance(k, str) and k.lower() in self.SENSITIVE_KEYS:
                    masked[k] = "***"
                else:
                    masked[k] = self._mask_mapping(v)
            return masked
        if isinstance(obj, list):
            return [self._mask_mapping(x) for x in obj]
        return obj

    def _mask_text(self, text: str) -> str:
        masked = text
        for pattern in _TEXT_SECRET_PATTERNS:
            masked = pattern.sub(
                lambda m: m.group(0).split(":")[0].split("=")[0] + ": ***",
                masked,
            )
        return masked

    def _mask_body(self, raw_body: bytes) -> str:
        decoded_body = raw_body.decode("utf-8", errors="replace")
        try:
            parsed = json.loads(decoded_body)
        except ValueError:
            return _truncate(self._mask_text(decoded_body))
        masked_obj = self._mask_mapping(parsed)
        return _truncate(json.dumps(masked_obj, ensure_ascii=False))

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        client_ip = request.headers.get("X-Forwarded-For")
        if client_ip:
            client_ip = client_ip.split(",")[0].strip()
        elif request.client:
            client_ip = request.client.host
        else:
            client_ip = None

        trace_http = get_settings().TRACE_HTTP
        request_body: str | None = None
        if trace_http and _is_traceable(request.headers.get("Content-Type")):
            raw_body = await request.body()
            if raw_body:
                request_body = self._mask_body(raw_body)

                async def receive():
                    return {
                        "type": "http.request",
                        "body": raw_body,
                        "more_body": False,
                    }

                request._receive = receive

        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed = time.perf_counter() - start
            logger = logging.getLogger("http")
            logger.exception(
                "request_error method=%s route=%s status=%s duration_ms=%.3f "
                "request_id=%s client_ip=%s query=%s",
                request.method,
                request.url.path,
                500,
                round(elapsed * 1000, 3),
                request_id,
                client_ip or "-",
                request.url.query or "-",
                extra={
                    "extra": {
                        "method": request.method,
                        "route": request.url.path,
                        "query": request.url.query,
                        "status": 500,
                        "duration_ms": round(elapsed * 1000, 3),
                        "request_id": request_id,
                        "client_ip": client_ip,
                        "exception": repr(exc),
                    }
                },
            )
            raise

        status_code = response.status_code
        elapsed = time.perf_counter() - start

        route_template = request.scope.get("route", None)
        if route_template and hasattr(route_template, "path"):
            route = route_template.path
        else:
            route = request.url.path

        REQUESTS.labels(request.method, route, str(status_code)).inc()
        LATENCY.labels(request.method, route).observe(elapsed)

        # ensure request-id propagation
        if "X-Request-Id" not in response.headers:
            response.headers["X-Request-Id"] = request_id

        response_body: str | None = None
        if trace_http and _is_traceable(response.headers.get("Content-Type")):
            response_body_bytes = b""
            async for chunk in response.body_iterator:
                response_body_bytes += chunk
            response.body_iterator = iterate_in_threadpool(iter([response_body_bytes]))
            if response_body_bytes:
                response_body = self._mask_body(response_body_bytes)

        level = logging.INFO
        if status_code >= 500:
            level = logging.ERROR
        elif status_code >= 400:
            level = logging.WARNING

        duration_ms = round(elapsed * 1000, 3)
        extra_payload = {
            "method": request.method,
            "route": route,
            "query": request.url.query,
            "status": status_code,
            "duration_ms": duration_ms,
            "request_id": request_id,
            "client_ip": client_ip,
            "user_agent": request.headers.get("User-Agent"),
        }
        if trace_http:
            extra_payload["request_body"] = request_body
            extra_payload["response_body"] = response_body

        logging.getLogger("http").log(
            level,
            "request method=%s route=%s status=%s duration_ms=%.3f "
            "request_id=%s client_ip=%s query=%s user_agent=%s",
            request.method,
            route,
            status_code,
            duration_ms,
            request_id,
            client_ip or "-",
            request.url.query or "-",
            request.headers.get("User-Agent") or "-",
            extra={"extra": extra_payload},
        )
        return response
