"""Sync status persistence: Postgres (preferred) or file-based fallback.

``compare_and_set`` only writes when the stored state still equals the expected
one, so two callers racing to start the same scope trigger a single job.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Protocol

from igen.catalog.models import CatalogSyncStatus, SyncScope, SyncState
from igen.config import Settings, get_settings
from igen.errors import StorageError

logger = logging.getLogger(__name__)


class SyncStatusStore(Protocol):
    def get(self, scope: SyncScope) -> CatalogSyncStatus: ...
    def compare_and_set(self, scope: SyncScope, expected: SyncState, status: CatalogSyncStatus) -> bool: ...


# ---------------------------------------------------------------------------
# Postgres implementation
# ---------------------------------------------------------------------------

class PostgresSyncStatusStore:
    def __init__(self, database_url: str, statement_timeout_ms: int = 10_000):
        self._url = database_url
        self._timeout_ms = statement_timeout_ms
        self._conn = self._connect()

    def _connect(self):
        try:
            import psycopg
        except ImportError:
            raise ImportError(
                "psycopg required for Postgres sync status store. pip install 'psycopg[binary]'"
            )
        try:
            conn = psycopg.connect(
                self._url,
                autocommit=True,
                connect_timeout=max(1, self._timeout_ms // 1000),
                options=f"-c statement_timeout={self._timeout_ms}",
            )
            conn.execute("""
                CREATE TABLE IF NOT EXISTS igen_catalog_sync (
                    scope TEXT PRIMARY KEY,
                    state TEXT NOT NULL,
                    started_at TIMESTAMPTZ,
                    finished_at TIMESTAMPTZ,
                    error_message TEXT,
                    models_synced INT
                )
            """)
            for scope in SyncScope:
                conn.execute(
                    "INSERT INTO igen_catalog_sync (scope, state) VALUES (%s, %s) ON CONFLICT (scope) DO NOTHING",
                    (scope.value, SyncState.IDLE.value),
                )
            return conn
        except psycopg.Error as e:
            raise StorageError(f"Could not connect to sync status store: {e}") from e

    def _execute(self, query: str, params: tuple = ()):
        import psycopg

        try:
            return self._conn.execute(query, params)
        except psycopg.Error as e:
            logger.exception("sync_status_query_failed")
            raise StorageError(f"Sync status query failed: {e.__class__.__name__}") from e

    def get(self, scope: SyncScope) -> CatalogSyncStatus:
        row = self._execute(
            """
            SELECT scope, state, started_at, finished_at, error_message, models_synced
            FROM igen_catalog_sync WHERE scope = %s
            """,
            (scope.value,),
        ).fetchone()
        if not row:
            return CatalogSyncStatus(scope=scope)
        return CatalogSyncStatus(
            scope=row[0],
            state=row[1],
            started_at=row[2],
            finished_at=row[3],
            error_message=row[4],
            models_synced=row[5],
        )

    def compare_and_set(self, scope: SyncScope, expected: SyncState, status: CatalogSyncStatus) -> bool:
        row = self._execute(
            """
            UPDATE igen_catalog_sync
            SET state = %s, started_at = %s, finished_at = %s, error_message = %s, models_synced = %s
            WHERE scope = %s AND state = %s
            RETURNING scope
            """,
            (
                status.state.value,
                status.started_at,
                status.finished_at,
                status.error_message,
                status.models_synced,
                scope.value,
                expected.value,
            ),
        ).fetchone()
        return row is not None


# ---------------------------------------------------------------------------
# File-based implementation (fallback when no Postgres)
# ---------------------------------------------------------------------------

class FileSyncStatusStore:
    """All scopes in one JSON file, guarded by a process-local lock."""

    def __init__(self, catalog_dir: Path):
        self._dir = Path(catalog_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._path = self._dir / "sync_status.json"
        self._lock = threading.Lock()

    def _load(self) -> dict[str, dict]:
        if not self._path.exists():
            return {}
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Could not read sync status: {e}") from e

    def _save(self, data: dict[str, dict]) -> None:
        tmp = self._path.with_suffix(".json.tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self._path)
        except OSError as e:
            raise StorageError(f"Could not write sync status: {e}") from e

    def get(self, scope: SyncScope) -> CatalogSyncStatus:
        with self._lock:
            raw = self._load().get(scope.value)
        if raw is None:
            return CatalogSyncStatus(scope=scope)
        return CatalogSyncStatus.model_validate(raw)

    def compare_and_set(self, scope: SyncScope, expected: SyncState, status: CatalogSyncStatus) -> bool:
        with self._lock:
            data = self._load()
            raw = data.get(scope.value)
            current = CatalogSyncStatus.model_validate(raw).state if raw else SyncState.IDLE
            if current is not expected:
                return False
            data[scope.value] = status.model_dump(mode="json")
            self._save(data)
            return True


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_store: SyncStatusStore | None = None


def get_sync_status_store(settings: Settings | None = None) -> SyncStatusStore:
    """Return singleton sync status store (Postgres if configured, else file-based)."""
    global _store
    if _store is not None:
        return _store
    settings = settings or get_settings()
    if settings.igen_database_url:
        try:
            _store = PostgresSyncStatusStore(settings.igen_database_url, settings.igen_db_timeout_ms)
            logger.info("Using Postgres sync status store")
        except (StorageError, ImportError) as e:
            logger.warning("Postgres sync status store failed (%s), falling back to file store", e)
            _store = FileSyncStatusStore(settings.catalog_dir)
    else:
        _store = FileSyncStatusStore(settings.catalog_dir)
    return _store
