"""Pydantic schemas for file transfer API endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field


class UploadOut(BaseModel):
    """Response body of a committed upload."""

    message: str = "success"
    key: str
    size_bytes: int = Field(ge=0)


class BucketFilesOut(BaseModel):
    """Keys currently stored in the bucket."""

    files: list[str] = Field(default_factory=list)


class LiveUrlsOut(BaseModel):
    """Public URLs of the stored objects."""

    image_urls: list[str] = Field(default_factory=list)
