"""Tests for webhook handling, the poll sweep and artifact materialization."""

import threading
from datetime import timedelta

import pytest

from igen.blobs.store import FileBlobStore
from igen.errors import InvalidWebhook, ProviderRejected, ProviderUnreachable, StorageError
from igen.generations.models import GenerationStatus
from igen.orchestrator import GenerationOrchestrator
from igen.providers import ProviderRegistry
from igen.providers.base import ArtifactSource, Completed, Failed, Pending
from igen.reconciler import CompletionReconciler, PollSweeper, ReconcileResult


def _artifact_files(tmp_path, gen_id):
    root = tmp_path / "data" / "blobs" / "artifacts" / gen_id
    if not root.exists():
        return []
    return [p for p in root.iterdir() if not p.name.endswith(".meta.json")]


@pytest.fixture
def pending(orchestrator):
    return orchestrator.create_generation("fake/model", {"prompt": "a cat"}, ["cats"])


class TestWebhook:
    def test_success_materializes_then_marks_ready(self, reconciler, store, blobs, pending, webhook_body, png_bytes):
        result = reconciler.handle_webhook("fake", webhook_body(pending.provider_request_id), pending.id)
        assert result is ReconcileResult.APPLIED

        gen = store.get(pending.id)
        assert gen.status is GenerationStatus.READY
        assert gen.completed_at is not None
        assert gen.artifact.content_type == "image/png"
        assert gen.artifact.size_bytes == len(png_bytes)
        assert gen.provider_metadata["seed"] == 42
        assert gen.provider_metadata["queue_position"] == 0
        assert blobs.get(gen.artifact.blob_key).data == png_bytes

    def test_duplicate_delivery_is_noop(self, reconciler, store, pending, tmp_path, webhook_body):
        body = webhook_body(pending.provider_request_id)
        reconciler.handle_webhook("fake", body, pending.id)
        first = store.get(pending.id)

        assert reconciler.handle_webhook("fake", body, pending.id) is ReconcileResult.DUPLICATE
        assert store.get(pending.id) == first
        assert len(_artifact_files(tmp_path, pending.id)) == 1

    def test_unknown_request_id_discarded(self, reconciler, store, pending, webhook_body):
        assert reconciler.handle_webhook("fake", webhook_body("req-unknown")) is ReconcileResult.UNKNOWN
        assert store.get(pending.id).status is GenerationStatus.PENDING

    def test_generation_id_mismatch_discarded(self, reconciler, store, pending, webhook_body):
        result = reconciler.handle_webhook("fake", webhook_body(pending.provider_request_id), "gen_other")
        assert result is ReconcileResult.UNKNOWN
        assert store.get(pending.id).status is GenerationStatus.PENDING

    def test_provider_error_marks_failed(self, reconciler, store, pending, webhook_body):
        body = webhook_body(pending.provider_request_id, url=None, status="ERROR", error="NSFW")
        assert reconciler.handle_webhook("fake", body, pending.id) is ReconcileResult.APPLIED
        gen = store.get(pending.id)
        assert gen.status is GenerationStatus.FAILED
        assert gen.error.kind == "provider_failed"
        assert gen.error.message == "NSFW"
        assert gen.error.detail == {"code": "FAKE_ERROR"}
        assert gen.artifact is None

    def test_success_without_output_is_invalid_output(self, reconciler, store, pending, webhook_body):
        reconciler.handle_webhook("fake", webhook_body(pending.provider_request_id, url=None), pending.id)
        gen = store.get(pending.id)
        assert gen.status is GenerationStatus.FAILED
        assert gen.error.kind == "invalid_output"

    def test_fetch_failure_is_fetch_failed(self, reconciler, store, pending, webhook_body):
        body = webhook_body(pending.provider_request_id, url="https://cdn.test/missing")
        reconciler.handle_webhook("fake", body, pending.id)
        gen = store.get(pending.id)
        assert gen.status is GenerationStatus.FAILED
        assert gen.error.kind == "fetch_failed"

    def test_undecodable_body_rejected(self, reconciler):
        with pytest.raises(InvalidWebhook):
            reconciler.handle_webhook("fake", b"not json")

    def test_unknown_provider_rejected(self, reconciler, webhook_body):
        with pytest.raises(InvalidWebhook):
            reconciler.handle_webhook("nope", webhook_body("req-1"))

    def test_polling_only_provider_rejects_webhooks(
        self, store, blobs, settings, materializer, make_provider, webhook_body
    ):
        registry = ProviderRegistry({"poller": make_provider("poller", webhooks=False)}, default="poller")
        reconciler = CompletionReconciler(store, blobs, registry, settings, materializer=materializer)
        with pytest.raises(InvalidWebhook):
            reconciler.handle_webhook("poller", webhook_body("req-1"))


class TestApplyOutcome:
    def test_pending_writes_nothing(self, reconciler, store, pending):
        assert reconciler.apply_outcome(pending, Pending(queue_position=2)) is ReconcileResult.PENDING
        assert store.get(pending.id) == pending

    def test_inline_bytes_stored(self, reconciler, store, blobs, pending):
        outcome = Completed(output=ArtifactSource(data=b"hello", content_type="text/plain"))
        reconciler.apply_outcome(pending, outcome)
        gen = store.get(pending.id)
        blob = blobs.get(gen.artifact.blob_key)
        assert blob.data == b"hello"
        assert blob.content_type == "text/plain"

    def test_data_uri_decoded(self, reconciler, store, pending):
        outcome = Completed(output=ArtifactSource(url="data:image/gif;base64,R0lGODlh"))
        reconciler.apply_outcome(pending, outcome)
        gen = store.get(pending.id)
        assert gen.status is GenerationStatus.READY
        assert gen.artifact.content_type == "image/gif"

    def test_malformed_data_uri_is_invalid_output(self, reconciler, store, pending):
        reconciler.apply_outcome(pending, Completed(output=ArtifactSource(url="data:image/png;base64,@@@")))
        assert store.get(pending.id).error.kind == "invalid_output"

    def test_blob_failure_is_storage_failed(self, store, registry, settings, pending, tmp_path):
        class BrokenBlobs(FileBlobStore):
            def put(self, key, data, content_type):
                raise StorageError("disk full")

        blobs = BrokenBlobs(tmp_path / "broken")
        reconciler = CompletionReconciler(store, blobs, registry, settings)
        reconciler.apply_outcome(pending, Completed(output=ArtifactSource(data=b"x")))
        gen = store.get(pending.id)
        assert gen.status is GenerationStatus.FAILED
        assert gen.error.kind == "storage_failed"

    def test_stale_record_loses_and_cleans_up_blob(self, reconciler, store, pending, tmp_path):
        reconciler.apply_outcome(pending, Failed(code="X", message="first"))
        # ``pending`` is the stale pre-transition snapshot
        result = reconciler.apply_outcome(pending, Completed(output=ArtifactSource(data=b"late")))
        assert result is ReconcileResult.DUPLICATE
        assert store.get(pending.id).error.message == "first"
        assert _artifact_files(tmp_path, pending.id) == []


class TestSweep:
    def test_grace_period_respected(self, reconciler, fake_provider, pending):
        fake_provider.outcomes[pending.provider_request_id] = Failed(code="X", message="y")
        stats = reconciler.sweep_once(now=pending.created_at + timedelta(seconds=30))
        assert stats.examined == 0
        assert fake_provider.polled == []

    def test_completes_overdue_generation(self, reconciler, fake_provider, store, pending):
        fake_provider.outcomes[pending.provider_request_id] = Completed(
            output=ArtifactSource(url="https://cdn.test/image.png")
        )
        stats = reconciler.sweep_once(now=pending.created_at + timedelta(minutes=5))
        assert stats.examined == 1
        assert stats.applied == 1
        assert store.get(pending.id).status is GenerationStatus.READY

    def test_still_pending_stays_pending(self, reconciler, store, pending):
        stats = reconciler.sweep_once(now=pending.created_at + timedelta(minutes=5))
        assert stats.pending == 1
        assert store.get(pending.id).status is GenerationStatus.PENDING

    def test_unreachable_provider_retried_next_tick(self, reconciler, fake_provider, store, pending):
        fake_provider.outcomes[pending.provider_request_id] = ProviderUnreachable("timeout", provider="fake")
        stats = reconciler.sweep_once(now=pending.created_at + timedelta(minutes=5))
        assert stats.errors == 1
        assert store.get(pending.id).status is GenerationStatus.PENDING

        fake_provider.outcomes[pending.provider_request_id] = Failed(code="X", message="gave up")
        stats = reconciler.sweep_once(now=pending.created_at + timedelta(minutes=6))
        assert stats.applied == 1
        assert store.get(pending.id).status is GenerationStatus.FAILED

    def test_rejected_poll_does_not_fail_generation(self, reconciler, fake_provider, store, pending):
        fake_provider.outcomes[pending.provider_request_id] = ProviderRejected("bad", provider="fake", status_code=422)
        stats = reconciler.sweep_once(now=pending.created_at + timedelta(minutes=5))
        assert stats.errors == 1
        assert store.get(pending.id).status is GenerationStatus.PENDING

    def test_provider_without_poll_left_out_of_batch(self, store, blobs, settings, materializer, make_provider):
        provider = make_provider("hooks", poll=False)
        registry = ProviderRegistry({"hooks": provider}, default="hooks")
        reconciler = CompletionReconciler(store, blobs, registry, settings, materializer=materializer)
        gen = GenerationOrchestrator(store, blobs, registry, settings).create_generation("hooks/x", {})
        stats = reconciler.sweep_once(now=gen.created_at + timedelta(minutes=5))
        assert stats.examined == 0
        assert provider.polled == []

    def test_unconfigured_provider_left_out_of_batch(self, reconciler, fake_provider, store, pending):
        retired = pending.model_copy(update={"id": "gen_retired", "provider": "retired", "provider_request_id": "r-1"})
        store.create(retired)
        stats = reconciler.sweep_once(now=pending.created_at + timedelta(minutes=5))
        assert stats.examined == 1
        assert fake_provider.polled == [pending.provider_request_id]

    def test_recently_polled_record_waits_for_interval(self, reconciler, fake_provider, store, pending):
        first = pending.created_at + timedelta(minutes=5)
        assert reconciler.sweep_once(now=first).examined == 1
        assert store.get(pending.id).last_polled_at == first

        assert reconciler.sweep_once(now=first + timedelta(seconds=10)).examined == 0
        assert reconciler.sweep_once(now=first + timedelta(minutes=1)).examined == 1
        assert fake_provider.polled == [pending.provider_request_id] * 2

    def test_unresolvable_records_do_not_starve_newer_ones(
        self, store, blobs, registry, settings, materializer, orchestrator, fake_provider
    ):
        reconciler = CompletionReconciler(
            store, blobs, registry, settings.model_copy(update={"igen_poll_batch_size": 1}), materializer=materializer
        )
        stuck = orchestrator.create_generation("fake/model", {"prompt": "old"})
        fresh = orchestrator.create_generation("fake/model", {"prompt": "new"})
        fake_provider.outcomes[stuck.provider_request_id] = ProviderRejected(
            "request not found", provider="fake", status_code=404
        )
        fake_provider.outcomes[fresh.provider_request_id] = Completed(
            output=ArtifactSource(url="https://cdn.test/image.png")
        )

        start = fresh.created_at + timedelta(minutes=5)
        for tick in range(3):
            reconciler.sweep_once(now=start + timedelta(minutes=tick))

        assert store.get(fresh.id).status is GenerationStatus.READY
        assert fake_provider.polled.count(fresh.provider_request_id) == 1
        assert fake_provider.polled.count(stuck.provider_request_id) == 2
        assert store.get(stuck.id).status is GenerationStatus.PENDING

    def test_stop_event_ends_sweep(self, reconciler, fake_provider, pending):
        stop = threading.Event()
        stop.set()
        stats = reconciler.sweep_once(now=pending.created_at + timedelta(minutes=5), stop=stop)
        assert stats.examined == 0
        assert fake_provider.polled == []


def test_webhook_and_sweep_race_commits_once(reconciler, fake_provider, store, pending, tmp_path, webhook_body):
    fake_provider.outcomes[pending.provider_request_id] = Completed(
        output=ArtifactSource(url="https://cdn.test/image.png")
    )
    results: list[ReconcileResult] = []
    barrier = threading.Barrier(2)

    def via_webhook():
        barrier.wait()
        results.append(reconciler.handle_webhook("fake", webhook_body(pending.provider_request_id), pending.id))

    def via_sweep():
        barrier.wait()
        stats = reconciler.sweep_once(now=pending.created_at + timedelta(minutes=5))
        results.append(ReconcileResult.APPLIED if stats.applied else ReconcileResult.DUPLICATE)

    threads = [threading.Thread(target=via_webhook), threading.Thread(target=via_sweep)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(r.value for r in results) == ["applied", "duplicate"]
    gen = store.get(pending.id)
    assert gen.status is GenerationStatus.READY
    assert [p.name for p in _artifact_files(tmp_path, pending.id)] == [gen.artifact.blob_key.rsplit("/", 1)[1]]


def test_poll_sweeper_stops(reconciler):
    sweeper = PollSweeper(reconciler, interval_seconds=60)
    sweeper.start()
    sweeper.stop(timeout=5)
    assert sweeper._thread is None
