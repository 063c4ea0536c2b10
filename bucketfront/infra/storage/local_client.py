"""Filesystem-backed object store.

Buckets are directories under a root path and object keys are relative
file paths inside them. Writes land in a temporary file that is renamed
over the target on commit, so readers never observe a partial object.
"""

from __future__ import annotations

import mimetypes
import os
import tempfile
import threading
from pathlib import Path
from typing import BinaryIO

from bucketfront.infra.storage.client import NoSuchObjectError, ObjectPage, StorageError

TMP_DIR_NAME = ".incoming"


class LocalObjectWriter:
    def __init__(self, target: Path, tmp_dir: Path) -> None:
        self._target = target
        fd, tmp_name = tempfile.mkstemp(dir=tmp_dir, prefix="upload-")
        self._tmp_path = Path(tmp_name)
        self._fp: BinaryIO | None = os.fdopen(fd, "wb")
        self._state = "open"
        self._lock = threading.Lock()

    def write(self, data: bytes) -> None:
        if self._fp is None or self._state != "open":
            raise StorageError("Write stream is already closed")
        try:
            self._fp.write(data)
        except OSError as exc:
            raise StorageError(f"Failed to write object data: {exc}") from exc

    def commit(self) -> None:
        with self._lock:
            if self._fp is None or self._state != "open":
                raise StorageError("Write stream is already closed")
            self._state = "committing"
            fp = self._fp
        try:
            fp.close()
            self._target.parent.mkdir(parents=True, exist_ok=True)
            os.replace(self._tmp_path, self._target)
        except OSError as exc:
            with self._lock:
                aborted = self._state == "aborted"
                if not aborted:
                    self._state = "failed"
            if aborted:
                self._tmp_path.unlink(missing_ok=True)
            raise StorageError(f"Failed to commit object: {exc}") from exc

        with self._lock:
            landed_after_abort = self._state == "aborted"
            if not landed_after_abort:
                self._state = "committed"
        self._fp = None
        if landed_after_abort:
            self._target.unlink(missing_ok=True)
            raise StorageError("Commit finished after the write was aborted")

    def abort(self) -> None:
        with self._lock:
            previous, self._state = self._state, "aborted"
        if previous == "aborted":
            return
        if previous == "committed":
            self._target.unlink(missing_ok=True)
            return
        if previous == "committing":
            # the running commit removes whatever it lands
            return
        fp, self._fp = self._fp, None
        if fp is not None:
            fp.close()
        self._tmp_path.unlink(missing_ok=True)


class LocalObjectReader:
    def __init__(self, path: Path) -> None:
        self._fp = path.open("rb")
        self.content_length: int | None = os.fstat(self._fp.fileno()).st_size
        self.content_type: str | None = mimetypes.guess_type(path.name)[0]

    def read(self, size: int) -> bytes:
        try:
            return self._fp.read(size)
        except OSError as exc:
            raise StorageError(f"Failed to read object data: {exc}") from exc

    def close(self) -> None:
        self._fp.close()


class LocalStorageClient:
    """Object store keeping every bucket as a directory under ``root``."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).resolve()
        self._tmp_dir = self._root / TMP_DIR_NAME
        self._tmp_dir.mkdir(parents=True, exist_ok=True)

    def _bucket_dir(self, bucket: str) -> Path:
        if not bucket or bucket in {".", "..", TMP_DIR_NAME} or "/" in bucket:
            raise StorageError(f"Invalid bucket name: {bucket!r}")
        return self._root / bucket

    def _object_path(self, bucket: str, object_key: str) -> Path:
        bucket_dir = self._bucket_dir(bucket)
        path = (bucket_dir / object_key).resolve()
        if bucket_dir.resolve() not in path.parents:
            raise StorageError(f"Object key escapes bucket: {object_key!r}")
        return path

    def open_write(
        self,
        *,
        bucket: str,
        object_key: str,
        content_type: str | None = None,
    ) -> LocalObjectWriter:
        target = self._object_path(bucket, object_key)
        try:
            return LocalObjectWriter(target, self._tmp_dir)
        except OSError as exc:
            raise StorageError(f"Failed to open write stream: {exc}") from exc

    def open_read(self, *, bucket: str, object_key: str) -> LocalObjectReader:
        path = self._object_path(bucket, object_key)
        if not path.is_file():
            raise NoSuchObjectError(f"Object not found: {bucket}/{object_key}")
        try:
            return LocalObjectReader(path)
        except FileNotFoundError as exc:
            raise NoSuchObjectError(f"Object not found: {bucket}/{object_key}") from exc
        except OSError as exc:
            raise StorageError(f"Failed to open object: {exc}") from exc

    def list_page(
        self,
        *,
        bucket: str,
        prefix: str | None = None,
        continuation_token: str | None = None,
        page_size: int = 1000,
    ) -> ObjectPage:
        bucket_dir = self._bucket_dir(bucket)
        if not bucket_dir.is_dir():
            raise StorageError(f"Bucket not found: {bucket}")

        # The continuation token is the last key of the previous page.
        keys = sorted(
            path.relative_to(bucket_dir).as_posix()
            for path in bucket_dir.rglob("*")
            if path.is_file()
        )
        if prefix:
            keys = [key for key in keys if key.startswith(prefix)]
        if continuation_token:
            keys = [key for key in keys if key > continuation_token]

        page = tuple(keys[:page_size])
        next_token = page[-1] if len(keys) > page_size else None
        return ObjectPage(keys=page, next_token=next_token)

    def check_bucket(self, *, bucket: str) -> None:
        if not self._bucket_dir(bucket).is_dir():
            raise StorageError(f"Bucket not found: {bucket}")
