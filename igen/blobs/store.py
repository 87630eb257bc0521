"""Artifact blob storage: put/get/delete bytes by key."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Protocol

from igen.config import Settings, get_settings
from igen.errors import NotFound, StorageError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class Blob:
    data: bytes
    content_type: str = "application/octet-stream"


class BlobStore(Protocol):
    def put(self, key: str, data: bytes, content_type: str) -> None: ...
    def get(self, key: str) -> Blob: ...
    def delete(self, key: str) -> None: ...


class FileBlobStore:
    """Blobs as files under a root directory; content type kept in a sidecar."""

    def __init__(self, root: Path):
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        parts = PurePosixPath(key).parts
        if not parts or key.startswith("/") or any(p in ("..", ".") for p in parts):
            raise ValidationError(f"Invalid blob key: {key!r}")
        return self._root.joinpath(*parts)

    @staticmethod
    def _meta_path(path: Path) -> Path:
        return path.with_name(path.name + ".meta.json")

    def put(self, key: str, data: bytes, content_type: str) -> None:
        path = self._path(key)
        tmp = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
            with open(self._meta_path(path), "w", encoding="utf-8") as f:
                json.dump({"content_type": content_type, "size": len(data)}, f)
        except OSError as e:
            raise StorageError(f"Blob put failed for {key}: {e}") from e

    def get(self, key: str) -> Blob:
        path = self._path(key)
        if not path.exists():
            raise NotFound(f"Blob not found: {key}")
        try:
            data = path.read_bytes()
            content_type = "application/octet-stream"
            meta_path = self._meta_path(path)
            if meta_path.exists():
                with open(meta_path, "r", encoding="utf-8") as f:
                    content_type = json.load(f).get("content_type", content_type)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Blob get failed for {key}: {e}") from e
        return Blob(data=data, content_type=content_type)

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
            self._meta_path(path).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Blob delete failed for {key}: {e}") from e


_blobs: BlobStore | None = None


def get_blob_store(settings: Settings | None = None) -> BlobStore:
    """Return singleton blob store rooted at IGEN_DATA_DIR/blobs."""
    global _blobs
    if _blobs is None:
        settings = settings or get_settings()
        _blobs = FileBlobStore(settings.blobs_dir)
        logger.info("Using file blob store (%s)", settings.blobs_dir)
    return _blobs
