"""Default refresh job: page through the fal model catalog and upsert it locally."""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

import httpx

from igen.catalog.models import CatalogModel, SyncScope
from igen.errors import ProviderAuthError, ProviderRejected, StorageError
from igen.providers.http import json_body, send

logger = logging.getLogger(__name__)

MODEL_PAGE_SIZE = 100


class FileModelCatalog:
    """Models keyed by endpoint id in ``models.json``."""

    def __init__(self, catalog_dir: Path):
        self._dir = Path(catalog_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._path = self._dir / "models.json"
        self._lock = threading.Lock()

    def _load(self) -> dict[str, dict]:
        if not self._path.exists():
            return {}
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Could not read model catalog: {e}") from e

    def upsert(self, models: list[CatalogModel]) -> int:
        with self._lock:
            data = self._load()
            for model in models:
                data[model.endpoint_id] = model.model_dump(mode="json")
            tmp = self._path.with_suffix(".json.tmp")
            try:
                with open(tmp, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2, ensure_ascii=False)
                os.replace(tmp, self._path)
            except OSError as e:
                raise StorageError(f"Could not write model catalog: {e}") from e
        return len(models)

    def list(self) -> list[CatalogModel]:
        with self._lock:
            data = self._load()
        return [CatalogModel.model_validate(v) for _, v in sorted(data.items())]


def in_scope(model: CatalogModel, scope: SyncScope) -> bool:
    if scope is SyncScope.ALL:
        return True
    return model.kind == "inference" and model.status == "active"


class FalCatalogRefresher:
    """Callable refresh job for ``CatalogSyncTracker``."""

    def __init__(
        self,
        catalog: FileModelCatalog,
        api_key: str | None,
        api_url: str = "https://api.fal.ai/v1",
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ):
        self._catalog = catalog
        self._api_key = api_key
        self._api_url = api_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)

    def fetch_all(self) -> list[dict[str, Any]]:
        if not self._api_key:
            raise ProviderAuthError("FAL_KEY is not configured", provider="fal")
        results: list[dict[str, Any]] = []
        cursor = ""
        while True:
            response = send(
                self._client,
                "GET",
                f"{self._api_url}/models",
                provider="fal",
                params={"limit": MODEL_PAGE_SIZE, "cursor": cursor},
                headers={"Authorization": f"Key {self._api_key}"},
            )
            data = json_body(response, "fal")
            page = data.get("models")
            if not isinstance(page, list):
                raise ProviderRejected("fal model listing has no models array", provider="fal")
            results.extend(m for m in page if isinstance(m, dict))
            cursor = data.get("next_cursor")
            if not cursor:
                break
        return results

    def __call__(self, scope: SyncScope) -> int:
        models = []
        for raw in self.fetch_all():
            meta = raw.get("metadata")
            endpoint_id = raw.get("endpoint_id")
            if not isinstance(meta, dict) or not isinstance(endpoint_id, str):
                continue
            model = CatalogModel.from_fal(endpoint_id, meta)
            if in_scope(model, scope):
                models.append(model)
        count = self._catalog.upsert(models)
        logger.info("catalog_upserted scope=%s models=%d", scope.value, count)
        return count
