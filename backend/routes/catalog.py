"""Model catalog sync status.

GET  /api/catalog/sync → {standard, all}
POST /api/catalog/sync → queue both scopes (no-op for a scope already queued or running)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from igen.catalog.models import CatalogSyncStatus
from igen.catalog.tracker import CatalogSyncTracker
from igen.services import get_sync_tracker

router = APIRouter()


@router.get("/catalog/sync", response_model=dict[str, CatalogSyncStatus])
def get_sync_status(tracker: CatalogSyncTracker = Depends(get_sync_tracker)):
    return tracker.get_sync_status()


@router.post("/catalog/sync", response_model=dict[str, CatalogSyncStatus], status_code=status.HTTP_202_ACCEPTED)
def start_sync(tracker: CatalogSyncTracker = Depends(get_sync_tracker)):
    return tracker.start_all()
