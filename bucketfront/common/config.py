from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

ENV_FILE = Path(".env")

SUPPORTED_STORAGE_BACKENDS: tuple[str, ...] = ("s3", "local")
# S3 rejects multipart parts below 5 MiB (except the last one)
MIN_PART_SIZE_BYTES = 5 * 1024 * 1024


def _load_env_file() -> None:
    if not ENV_FILE.exists():
        return
    for raw_line in ENV_FILE.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.lower() in {"1", "true", "t", "yes", "y", "on"}


def _as_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _as_optional(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


@dataclass
class Settings:
    STORAGE_BACKEND: str = "s3"
    STORAGE_BUCKET: str = ""
    STORAGE_KEY_PREFIX: str = "test-files/"
    STORAGE_UPLOAD_TIMEOUT_SECONDS: float = 50.0
    STORAGE_PUBLIC_BASE_URL: str = "https://storage.googleapis.com"
    STORAGE_LIST_PAGE_SIZE: int = 1000
    STORAGE_CHUNK_SIZE_BYTES: int = 64 * 1024
    STORAGE_PART_SIZE_BYTES: int = 8 * 1024 * 1024
    STORAGE_LOCAL_ROOT: str = "./data/objects"
    S3_ENDPOINT_URL: str | None = None
    S3_REGION: str | None = None
    S3_ACCESS_KEY_ID: str | None = None
    S3_SECRET_ACCESS_KEY: str | None = None
    S3_USE_SSL: bool = True
    S3_ADDRESSING_STYLE: str = "path"
    S3_CONNECT_TIMEOUT: float = 10.0
    S3_READ_TIMEOUT: float = 30.0
    S3_MAX_ATTEMPTS: int = 3
    ENABLE_METRICS: bool = True
    TRACE_HTTP: bool = False
    CORS_ENABLED: bool = False
    CORS_ORIGINS: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        backend = (self.STORAGE_BACKEND or "").strip().lower()
        if backend not in SUPPORTED_STORAGE_BACKENDS:
            raise ValueError(
                f"STORAGE_BACKEND must be one of {', '.join(SUPPORTED_STORAGE_BACKENDS)}"
                f" (got {self.STORAGE_BACKEND!r})."
            )
        self.STORAGE_BACKEND = backend
        if self.STORAGE_UPLOAD_TIMEOUT_SECONDS <= 0:
            raise ValueError("STORAGE_UPLOAD_TIMEOUT_SECONDS must be positive.")
        if self.STORAGE_LIST_PAGE_SIZE <= 0:
            raise ValueError("STORAGE_LIST_PAGE_SIZE must be positive.")
        if self.STORAGE_CHUNK_SIZE_BYTES <= 0:
            raise ValueError("STORAGE_CHUNK_SIZE_BYTES must be positive.")
        if self.STORAGE_PART_SIZE_BYTES < MIN_PART_SIZE_BYTES:
            raise ValueError(
                f"STORAGE_PART_SIZE_BYTES must be at least {MIN_PART_SIZE_BYTES}."
            )
        if self.S3_MAX_ATTEMPTS < 1:
            raise ValueError("S3_MAX_ATTEMPTS must be at least 1.")

    @classmethod
    def from_environment(cls) -> "Settings":
        _load_env_file()
        return cls(
            STORAGE_BACKEND=os.environ.get("STORAGE_BACKEND", cls.STORAGE_BACKEND),
            STORAGE_BUCKET=os.environ.get("STORAGE_BUCKET", cls.STORAGE_BUCKET),
            STORAGE_KEY_PREFIX=os.environ.get(
                "STORAGE_KEY_PREFIX", cls.STORAGE_KEY_PREFIX
            ),
            STORAGE_UPLOAD_TIMEOUT_SECONDS=float(
                os.environ.get(
                    "STORAGE_UPLOAD_TIMEOUT_SECONDS", cls.STORAGE_UPLOAD_TIMEOUT_SECONDS
                )
            ),
            STORAGE_PUBLIC_BASE_URL=os.environ.get(
                "STORAGE_PUBLIC_BASE_URL", cls.STORAGE_PUBLIC_BASE_URL
            ),
            STORAGE_LIST_PAGE_SIZE=int(
                os.environ.get("STORAGE_LIST_PAGE_SIZE", cls.STORAGE_LIST_PAGE_SIZE)
            ),
            STORAGE_CHUNK_SIZE_BYTES=int(
                os.environ.get("STORAGE_CHUNK_SIZE_BYTES", cls.STORAGE_CHUNK_SIZE_BYTES)
            ),
            STORAGE_PART_SIZE_BYTES=int(
                os.environ.get("STORAGE_PART_SIZE_BYTES", cls.STORAGE_PART_SIZE_BYTES)
            ),
            STORAGE_LOCAL_ROOT=os.environ.get(
                "STORAGE_LOCAL_ROOT", cls.STORAGE_LOCAL_ROOT
            ),
            S3_ENDPOINT_URL=_as_optional(os.environ.get("S3_ENDPOINT_URL")),
            S3_REGION=_as_optional(os.environ.get("S3_REGION")),
            S3_ACCESS_KEY_ID=_as_optional(os.environ.get("S3_ACCESS_KEY_ID")),
            S3_SECRET_ACCESS_KEY=_as_optional(os.environ.get("S3_SECRET_ACCESS_KEY")),
            S3_USE_SSL=_as_bool(os.environ.get("S3_USE_SSL"), cls.S3_USE_SSL),
            S3_ADDRESSING_STYLE=os.environ.get(
                "S3_ADDRESSING_STYLE", cls.S3_ADDRESSING_STYLE
            ),
            S3_CONNECT_TIMEOUT=float(
                os.environ.get("S3_CONNECT_TIMEOUT", cls.S3_CONNECT_TIMEOUT)
            ),
            S3_READ_TIMEOUT=float(
                os.environ.get("S3_READ_TIMEOUT", cls.S3_READ_TIMEOUT)
            ),
            S3_MAX_ATTEMPTS=int(
                os.environ.get("S3_MAX_ATTEMPTS", cls.S3_MAX_ATTEMPTS)
            ),
            ENABLE_METRICS=_as_bool(
                os.environ.get("ENABLE_METRICS"), cls.ENABLE_METRICS
            ),
            TRACE_HTTP=_as_bool(os.environ.get("TRACE_HTTP"), cls.TRACE_HTTP),
            CORS_ENABLED=_as_bool(os.environ.get("CORS_ENABLED"), cls.CORS_ENABLED),
            CORS_ORIGINS=_as_list(os.environ.get("CORS_ORIGINS")),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_environment()
