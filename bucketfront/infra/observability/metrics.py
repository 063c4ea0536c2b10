from prometheus_client import Counter, Histogram, make_asgi_app

# 低基数标签：使用路由模板（如 /api/v1/download/{filename}），避免文件名导致高基数
REQUESTS = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "route", "status"],
)

LATENCY = Histogram(
    "http_request_duration_seconds",
    "Request latency in seconds",
    ["method", "route"],
)

TRANSFER_OPERATIONS = Counter(
    "object_transfer_operations_total",
    "Object transfer operations by outcome",
    ["operation", "outcome"],
)

TRANSFER_BYTES = Counter(
    "object_transfer_bytes_total",
    "Bytes moved to or from the object store",
    ["direction"],
)

# /metrics 端点 ASGI 应用
metrics_app = make_asgi_app()
