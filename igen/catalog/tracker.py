"""Catalog sync state machine: idle|succeeded|failed -> queued -> running -> succeeded|failed."""

from __future__ import annotations

import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable

from igen.catalog.models import CatalogSyncStatus, SyncScope, SyncState
from igen.catalog.store import SyncStatusStore
from igen.errors import IgenError
from igen.generations.models import utcnow

logger = logging.getLogger(__name__)

RefreshJob = Callable[[SyncScope], int]

DEFAULT_STALE_AFTER = timedelta(hours=1)


class CatalogSyncTracker:
    """Starts at most one refresh per scope and records its progress.

    ``refresh(scope)`` does the actual catalog work and returns the number of
    models synced; it runs on the executor, never on the caller's thread.
    A scope left queued or running for longer than ``stale_after`` (the
    process that owned it died) may be started again.
    """

    def __init__(
        self,
        store: SyncStatusStore,
        refresh: RefreshJob,
        executor: Executor | None = None,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
    ):
        self._store = store
        self._refresh = refresh
        self._stale_after = stale_after
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="catalog-sync")

    def get_status(self, scope: SyncScope | str) -> CatalogSyncStatus:
        return self._store.get(SyncScope(scope))

    def get_sync_status(self) -> dict[str, CatalogSyncStatus]:
        return {scope.value: self._store.get(scope) for scope in SyncScope}

    def _is_abandoned(self, status: CatalogSyncStatus, now: datetime) -> bool:
        return status.started_at is None or now - status.started_at >= self._stale_after

    def start_sync(self, scope: SyncScope | str) -> CatalogSyncStatus:
        """Queue a refresh unless one is already queued or running. Returns immediately."""
        scope = SyncScope(scope)
        now = utcnow()
        current = self._store.get(scope)
        if current.state.is_active:
            if not self._is_abandoned(current, now):
                return current
            logger.warning(
                "catalog_sync_abandoned scope=%s state=%s started_at=%s",
                scope.value,
                current.state.value,
                current.started_at,
            )
        queued = CatalogSyncStatus(scope=scope, state=SyncState.QUEUED, started_at=now)
        if not self._store.compare_and_set(scope, current.state, queued):
            # Another caller queued it first
            return self._store.get(scope)
        try:
            self._executor.submit(self._run, scope, queued)
        except RuntimeError as e:
            # Executor already shut down; put the previous status back so a later start can run
            logger.error("catalog_sync_not_scheduled scope=%s error=%s", scope.value, e)
            self._store.compare_and_set(scope, SyncState.QUEUED, current)
            raise IgenError(f"Catalog sync for {scope.value} could not be scheduled") from e
        logger.info("catalog_sync_queued scope=%s", scope.value)
        return queued

    def start_all(self) -> dict[str, CatalogSyncStatus]:
        return {scope.value: self.start_sync(scope) for scope in SyncScope}

    def _run(self, scope: SyncScope, queued: CatalogSyncStatus) -> None:
        running = queued.model_copy(update={"state": SyncState.RUNNING})
        if not self._store.compare_and_set(scope, SyncState.QUEUED, running):
            logger.warning("catalog_sync_not_queued scope=%s", scope.value)
            return
        try:
            count = self._refresh(scope)
        except Exception as e:
            logger.exception("catalog_sync_failed scope=%s", scope.value)
            final = running.model_copy(
                update={
                    "state": SyncState.FAILED,
                    "finished_at": utcnow(),
                    "error_message": str(e)[:500] or e.__class__.__name__,
                }
            )
        else:
            logger.info("catalog_sync_succeeded scope=%s models=%d", scope.value, count)
            final = running.model_copy(
                update={"state": SyncState.SUCCEEDED, "finished_at": utcnow(), "models_synced": count}
            )
        if self._store.get(scope).started_at != running.started_at:
            # Taken over as abandoned while this run was still going
            logger.warning("catalog_sync_superseded scope=%s", scope.value)
            return
        self._store.compare_and_set(scope, SyncState.RUNNING, final)

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)
