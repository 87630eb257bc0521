"""Process-wide wiring of stores, providers and services (lazy singletons)."""

from __future__ import annotations

import logging
from datetime import timedelta

from igen.blobs.store import get_blob_store
from igen.catalog.refresh import FalCatalogRefresher, FileModelCatalog
from igen.catalog.store import get_sync_status_store
from igen.catalog.tracker import CatalogSyncTracker
from igen.config import get_settings
from igen.generations.store import get_generation_store
from igen.orchestrator import GenerationOrchestrator
from igen.providers import ProviderRegistry
from igen.reconciler import CompletionReconciler, PollSweeper

logger = logging.getLogger(__name__)

_registry: ProviderRegistry | None = None
_orchestrator: GenerationOrchestrator | None = None
_reconciler: CompletionReconciler | None = None
_tracker: CatalogSyncTracker | None = None


def get_provider_registry() -> ProviderRegistry:
    global _registry
    if _registry is None:
        _registry = ProviderRegistry.from_settings(get_settings())
    return _registry


def get_orchestrator() -> GenerationOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        settings = get_settings()
        _orchestrator = GenerationOrchestrator(
            get_generation_store(settings), get_blob_store(settings), get_provider_registry(), settings
        )
    return _orchestrator


def get_reconciler() -> CompletionReconciler:
    global _reconciler
    if _reconciler is None:
        settings = get_settings()
        _reconciler = CompletionReconciler(
            get_generation_store(settings), get_blob_store(settings), get_provider_registry(), settings
        )
    return _reconciler


def get_sync_tracker() -> CatalogSyncTracker:
    global _tracker
    if _tracker is None:
        settings = get_settings()
        refresher = FalCatalogRefresher(
            FileModelCatalog(settings.catalog_dir),
            api_key=settings.fal_key,
            api_url=settings.fal_api_url,
            timeout=settings.igen_http_timeout_seconds,
        )
        _tracker = CatalogSyncTracker(
            get_sync_status_store(settings),
            refresher,
            stale_after=timedelta(seconds=settings.igen_catalog_sync_stale_seconds),
        )
    return _tracker


def build_sweeper() -> PollSweeper:
    settings = get_settings()
    return PollSweeper(get_reconciler(), settings.igen_poll_interval_seconds)
