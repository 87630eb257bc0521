"""Catalog sync status schema."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SyncScope(str, Enum):
    STANDARD = "standard"  # active inference models only
    ALL = "all"


class SyncState(str, Enum):
    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (SyncState.QUEUED, SyncState.RUNNING)


class CatalogSyncStatus(BaseModel):
    scope: SyncScope
    state: SyncState = SyncState.IDLE
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error_message: str | None = None
    models_synced: int | None = None


class CatalogModel(BaseModel):
    """One provider model (endpoint) as listed by the upstream catalog."""

    endpoint_id: str
    display_name: str = ""
    category: str = ""
    description: str = ""
    status: str = "active"
    kind: str = "inference"
    tags: list[str] = Field(default_factory=list)
    thumbnail_url: str | None = None
    model_url: str | None = None
    license_type: str | None = None
    group_key: str | None = None
    group_label: str | None = None
    duration_estimate: float | None = None
    upstream_updated_at: str | None = None

    @classmethod
    def from_fal(cls, endpoint_id: str, meta: dict[str, Any]) -> "CatalogModel":
        group = meta.get("group") or {}
        return cls(
            endpoint_id=endpoint_id,
            display_name=meta.get("display_name") or "",
            category=meta.get("category") or "",
            description=meta.get("description") or "",
            status=meta.get("status") or "active",
            kind=meta.get("kind") or "inference",
            tags=list(meta.get("tags") or []),
            thumbnail_url=meta.get("thumbnail_url"),
            model_url=meta.get("model_url"),
            license_type=meta.get("license_type"),
            group_key=group.get("key"),
            group_label=group.get("label"),
            duration_estimate=meta.get("duration_estimate"),
            upstream_updated_at=meta.get("updated_at"),
        )
