"""Tests for the catalog sync tracker, its status store and the fal refresh job."""

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import httpx
import pytest

from igen.catalog import (
    CatalogSyncStatus,
    CatalogSyncTracker,
    FalCatalogRefresher,
    FileModelCatalog,
    FileSyncStatusStore,
    SyncScope,
    SyncState,
)
from igen.errors import IgenError, ProviderAuthError
from igen.generations.models import utcnow


class ManualExecutor:
    """Holds submitted jobs until ``run_all``."""

    def __init__(self):
        self.jobs = []

    def submit(self, fn, *args):
        self.jobs.append((fn, args))

    def run_all(self):
        jobs, self.jobs = self.jobs, []
        for fn, args in jobs:
            fn(*args)


@pytest.fixture
def status_store(tmp_path):
    return FileSyncStatusStore(tmp_path / "catalog")


@pytest.fixture
def executor():
    return ManualExecutor()


class TestFileSyncStatusStore:
    def test_defaults_to_idle(self, status_store):
        status = status_store.get(SyncScope.ALL)
        assert status.state is SyncState.IDLE
        assert status.started_at is None

    def test_compare_and_set(self, status_store):
        queued = CatalogSyncStatus(scope=SyncScope.ALL, state=SyncState.QUEUED)
        assert status_store.compare_and_set(SyncScope.ALL, SyncState.IDLE, queued)
        assert not status_store.compare_and_set(SyncScope.ALL, SyncState.IDLE, queued)
        assert status_store.get(SyncScope.ALL).state is SyncState.QUEUED
        assert status_store.get(SyncScope.STANDARD).state is SyncState.IDLE


class TestCatalogSyncTracker:
    def test_start_queues_and_returns_immediately(self, status_store, executor):
        tracker = CatalogSyncTracker(status_store, lambda scope: 3, executor)
        status = tracker.start_sync("standard")
        assert status.state is SyncState.QUEUED
        assert status.started_at is not None
        assert len(executor.jobs) == 1

    def test_second_start_while_queued_is_noop(self, status_store, executor):
        tracker = CatalogSyncTracker(status_store, lambda scope: 3, executor)
        first = tracker.start_sync(SyncScope.STANDARD)
        second = tracker.start_sync(SyncScope.STANDARD)
        assert second == first
        assert len(executor.jobs) == 1

    def test_success_records_count(self, status_store, executor):
        seen = []

        def refresh(scope):
            seen.append(tracker.get_status(scope).state)
            return 42

        tracker = CatalogSyncTracker(status_store, refresh, executor)
        tracker.start_sync(SyncScope.ALL)
        executor.run_all()

        assert seen == [SyncState.RUNNING]
        status = tracker.get_status(SyncScope.ALL)
        assert status.state is SyncState.SUCCEEDED
        assert status.models_synced == 42
        assert status.finished_at >= status.started_at

    def test_failure_records_message_and_allows_restart(self, status_store, executor):
        def refresh(scope):
            raise RuntimeError("upstream exploded")

        tracker = CatalogSyncTracker(status_store, refresh, executor)
        tracker.start_sync(SyncScope.ALL)
        executor.run_all()
        status = tracker.get_status(SyncScope.ALL)
        assert status.state is SyncState.FAILED
        assert status.error_message == "upstream exploded"
        assert status.finished_at is not None

        assert tracker.start_sync(SyncScope.ALL).state is SyncState.QUEUED
        assert len(executor.jobs) == 1

    def test_start_all_and_status_shape(self, status_store, executor):
        tracker = CatalogSyncTracker(status_store, lambda scope: 1, executor)
        started = tracker.start_all()
        assert set(started) == {"standard", "all"}
        assert len(executor.jobs) == 2
        executor.run_all()
        assert {k: v.state for k, v in tracker.get_sync_status().items()} == {
            "standard": SyncState.SUCCEEDED,
            "all": SyncState.SUCCEEDED,
        }

    def test_racing_starts_trigger_one_job(self, status_store, executor):
        tracker = CatalogSyncTracker(status_store, lambda scope: 1, executor)
        barrier = threading.Barrier(6)

        def start():
            barrier.wait()
            tracker.start_sync(SyncScope.STANDARD)

        threads = [threading.Thread(target=start) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(executor.jobs) == 1

    def test_runs_on_thread_pool(self, status_store):
        pool = ThreadPoolExecutor(max_workers=1)
        tracker = CatalogSyncTracker(status_store, lambda scope: 7, pool)
        tracker.start_sync(SyncScope.STANDARD)
        pool.shutdown(wait=True)
        assert tracker.get_status(SyncScope.STANDARD).models_synced == 7

    def _seed_running(self, status_store, started_at):
        running = CatalogSyncStatus(scope=SyncScope.ALL, state=SyncState.RUNNING, started_at=started_at)
        assert status_store.compare_and_set(SyncScope.ALL, SyncState.IDLE, running)

    def test_abandoned_run_is_taken_over(self, status_store, executor):
        self._seed_running(status_store, utcnow() - timedelta(hours=2))
        calls = []

        def refresh(scope):
            calls.append(scope)
            return 4

        tracker = CatalogSyncTracker(status_store, refresh, executor, stale_after=timedelta(minutes=30))
        assert tracker.start_sync(SyncScope.ALL).state is SyncState.QUEUED
        executor.run_all()
        assert calls == [SyncScope.ALL]
        assert tracker.get_status(SyncScope.ALL).state is SyncState.SUCCEEDED

    def test_recent_run_is_left_alone(self, status_store, executor):
        self._seed_running(status_store, utcnow() - timedelta(minutes=1))
        tracker = CatalogSyncTracker(status_store, lambda scope: 1, executor, stale_after=timedelta(minutes=30))
        assert tracker.start_sync(SyncScope.ALL).state is SyncState.RUNNING
        assert executor.jobs == []

    def test_superseded_run_does_not_overwrite_takeover(self, status_store, executor):
        takeover = CatalogSyncTracker(status_store, lambda scope: 2, executor, stale_after=timedelta(0))

        def refresh(scope):
            takeover.start_sync(scope)
            return 1

        tracker = CatalogSyncTracker(status_store, refresh, executor)
        tracker.start_sync(SyncScope.ALL)
        executor.run_all()
        assert tracker.get_status(SyncScope.ALL).state is SyncState.QUEUED

        executor.run_all()
        status = tracker.get_status(SyncScope.ALL)
        assert status.state is SyncState.SUCCEEDED
        assert status.models_synced == 2

    def test_unschedulable_start_restores_previous_status(self, status_store):
        pool = ThreadPoolExecutor(max_workers=1)
        pool.shutdown()
        tracker = CatalogSyncTracker(status_store, lambda scope: 1, pool)
        with pytest.raises(IgenError):
            tracker.start_sync(SyncScope.STANDARD)
        assert tracker.get_status(SyncScope.STANDARD).state is SyncState.IDLE

        retry = CatalogSyncTracker(status_store, lambda scope: 1, ManualExecutor())
        assert retry.start_sync(SyncScope.STANDARD).state is SyncState.QUEUED


def _model(endpoint_id, kind="inference", status="active", **meta):
    return {
        "endpoint_id": endpoint_id,
        "metadata": {"display_name": endpoint_id, "category": "text-to-image", "kind": kind, "status": status, **meta},
    }


class TestFalCatalogRefresher:
    @pytest.fixture
    def pages(self):
        return [
            {
                "models": [_model("fal-ai/flux/dev"), _model("fal-ai/old", status="deprecated")],
                "next_cursor": "c2",
                "has_more": True,
            },
            {
                "models": [_model("fal-ai/trainer", kind="training"), {"endpoint_id": "fal-ai/no-meta"}],
                "next_cursor": None,
                "has_more": False,
            },
        ]

    def _refresher(self, tmp_path, pages, requests):
        def handler(request):
            requests.append(request)
            cursor = request.url.params.get("cursor")
            return httpx.Response(200, json=pages[1] if cursor == "c2" else pages[0])

        catalog = FileModelCatalog(tmp_path / "catalog")
        client = httpx.Client(transport=httpx.MockTransport(handler))
        return catalog, FalCatalogRefresher(catalog, api_key="k", client=client)

    def test_standard_scope_keeps_active_inference_models(self, tmp_path, pages):
        requests = []
        catalog, refresher = self._refresher(tmp_path, pages, requests)
        assert refresher(SyncScope.STANDARD) == 1
        assert [m.endpoint_id for m in catalog.list()] == ["fal-ai/flux/dev"]
        assert len(requests) == 2
        assert requests[0].url.params["limit"] == "100"
        assert requests[0].headers["authorization"] == "Key k"

    def test_all_scope_keeps_every_model_with_metadata(self, tmp_path, pages):
        catalog, refresher = self._refresher(tmp_path, pages, [])
        assert refresher(SyncScope.ALL) == 3
        stored = json.loads((tmp_path / "catalog" / "models.json").read_text())
        assert sorted(stored) == ["fal-ai/flux/dev", "fal-ai/old", "fal-ai/trainer"]

    def test_missing_key(self, tmp_path):
        refresher = FalCatalogRefresher(FileModelCatalog(tmp_path), api_key=None)
        with pytest.raises(ProviderAuthError):
            refresher(SyncScope.ALL)
