"""Model catalog refresh and its sync status tracker."""

from igen.catalog.models import CatalogModel, CatalogSyncStatus, SyncScope, SyncState
from igen.catalog.refresh import FalCatalogRefresher, FileModelCatalog
from igen.catalog.store import (
    FileSyncStatusStore,
    PostgresSyncStatusStore,
    SyncStatusStore,
    get_sync_status_store,
)
from igen.catalog.tracker import CatalogSyncTracker

__all__ = [
    "CatalogModel",
    "CatalogSyncStatus",
    "SyncScope",
    "SyncState",
    "FalCatalogRefresher",
    "FileModelCatalog",
    "SyncStatusStore",
    "FileSyncStatusStore",
    "PostgresSyncStatusStore",
    "get_sync_status_store",
    "CatalogSyncTracker",
]
