"""Move provider outputs into the blob store before a generation is marked ready."""

from __future__ import annotations

import logging
import uuid

import httpx

from igen.blobs.store import BlobStore
from igen.errors import IgenError, StorageError
from igen.generations.models import ArtifactRef
from igen.providers.base import ArtifactSource
from igen.providers.outputs import parse_data_uri

logger = logging.getLogger(__name__)

INVALID_OUTPUT = "invalid_output"
FETCH_FAILED = "fetch_failed"
STORAGE_FAILED = "storage_failed"

_DEFAULT_CONTENT_TYPE = "application/octet-stream"


class MaterializationError(IgenError):
    """Output could not be turned into a stored artifact. ``failure_kind`` is recorded on the generation."""

    def __init__(self, failure_kind: str, message: str):
        super().__init__(message)
        self.failure_kind = failure_kind


def artifact_key(gen_id: str) -> str:
    return f"artifacts/{gen_id}/{uuid.uuid4().hex}"


class ArtifactMaterializer:
    def __init__(self, blobs: BlobStore, timeout: float = 30.0, client: httpx.Client | None = None):
        self._blobs = blobs
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)

    def _fetch(self, url: str) -> tuple[bytes, str | None]:
        try:
            response = self._client.get(url)
        except httpx.HTTPError as e:
            raise MaterializationError(FETCH_FAILED, f"Artifact fetch failed: {e.__class__.__name__}") from e
        if response.status_code >= 400:
            raise MaterializationError(FETCH_FAILED, f"Artifact fetch returned HTTP {response.status_code}")
        return response.content, response.headers.get("content-type")

    def _read(self, source: ArtifactSource) -> tuple[bytes, str | None]:
        if source.data is not None:
            return source.data, source.content_type
        url = source.url or ""
        if url.startswith("data:"):
            parsed = parse_data_uri(url)
            if parsed is None:
                raise MaterializationError(INVALID_OUTPUT, "Output data URI is malformed")
            data, content_type = parsed
            return data, source.content_type or content_type
        if url.startswith(("http://", "https://")):
            data, header_type = self._fetch(url)
            return data, source.content_type or header_type
        raise MaterializationError(INVALID_OUTPUT, "Output has no fetchable location")

    def materialize(self, gen_id: str, source: ArtifactSource | None) -> ArtifactRef:
        """Fetch or decode ``source`` and store it. Raises MaterializationError."""
        if source is None:
            raise MaterializationError(INVALID_OUTPUT, "Provider reported success without an output")
        data, content_type = self._read(source)
        if not data:
            raise MaterializationError(INVALID_OUTPUT, "Output is empty")
        content_type = content_type or _DEFAULT_CONTENT_TYPE

        key = artifact_key(gen_id)
        try:
            self._blobs.put(key, data, content_type)
        except StorageError as e:
            raise MaterializationError(STORAGE_FAILED, e.message) from e
        logger.info("artifact_stored generation_id=%s key=%s bytes=%d", gen_id, key, len(data))
        return ArtifactRef(blob_key=key, content_type=content_type, size_bytes=len(data), metadata=source.metadata)

    def discard(self, key: str) -> None:
        """Best-effort removal of an uploaded blob nobody will reference."""
        try:
            self._blobs.delete(key)
        except StorageError as e:
            logger.warning("artifact_discard_failed key=%s error=%s", key, e)
