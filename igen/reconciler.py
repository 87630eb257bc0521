"""Completion reconciliation: webhook deliveries and the poll sweep.

Both paths funnel into ``apply_outcome``, which materializes the artifact and
then performs a conditional ``pending -> ready|failed`` transition. Whichever
path loses the compare-and-set sees ``Conflict``, which is treated as a
duplicate delivery: the loser cleans up the blob it uploaded and moves on.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from igen.artifacts import ArtifactMaterializer, MaterializationError
from igen.blobs.store import BlobStore
from igen.config import Settings, get_settings
from igen.errors import Conflict, InvalidWebhook, ProviderError, ProviderUnreachable, StorageError, ValidationError
from igen.generations.models import Generation, GenerationStatus, TransitionPatch, utcnow
from igen.generations.store import GenerationStore
from igen.providers import ProviderRegistry
from igen.providers.base import Completed, Failed, Pending, ProviderOutcome

logger = logging.getLogger(__name__)

PROVIDER_FAILED = "provider_failed"


class ReconcileResult(str, Enum):
    APPLIED = "applied"  # terminal transition written by this call
    PENDING = "pending"  # provider still working; nothing written
    DUPLICATE = "duplicate"  # record already terminal, or another writer won
    UNKNOWN = "unknown"  # no matching record; delivery discarded


@dataclass
class SweepStats:
    examined: int = 0
    applied: int = 0
    pending: int = 0
    duplicate: int = 0
    errors: int = 0


class CompletionReconciler:
    def __init__(
        self,
        store: GenerationStore,
        blobs: BlobStore,
        providers: ProviderRegistry,
        settings: Settings | None = None,
        materializer: ArtifactMaterializer | None = None,
    ):
        settings = settings or get_settings()
        self._store = store
        self._providers = providers
        self._materializer = materializer or ArtifactMaterializer(blobs, timeout=settings.igen_http_timeout_seconds)
        self._grace = timedelta(seconds=settings.igen_poll_grace_seconds)
        self._repoll = timedelta(seconds=settings.igen_poll_interval_seconds)
        self._batch_size = max(1, settings.igen_poll_batch_size)

    # -- webhook path ------------------------------------------------------

    def handle_webhook(self, provider_name: str, body: bytes, generation_id: str | None = None) -> ReconcileResult:
        """Process one webhook delivery. Safe to call any number of times for the same event."""
        try:
            adapter = self._providers.get(provider_name)
        except ValidationError as e:
            raise InvalidWebhook(e.message) from e
        if not adapter.capabilities.webhooks:
            raise InvalidWebhook(f"Provider {adapter.name} does not deliver webhooks")

        event = adapter.parse_webhook(body)
        gen = self._store.find_by_provider_request_id(adapter.name, event.request_id)
        if gen is None:
            # Also happens when the callback beats the store write; the poll sweep picks it up later
            logger.warning(
                "webhook_unknown_request provider=%s request_id=%s generation_id=%s",
                adapter.name,
                event.request_id,
                generation_id,
            )
            return ReconcileResult.UNKNOWN
        if generation_id and gen.id != generation_id:
            logger.warning(
                "webhook_generation_mismatch provider=%s request_id=%s expected=%s got=%s",
                adapter.name,
                event.request_id,
                gen.id,
                generation_id,
            )
            return ReconcileResult.UNKNOWN
        if gen.status.is_terminal:
            logger.info("webhook_duplicate generation_id=%s status=%s", gen.id, gen.status.value)
            return ReconcileResult.DUPLICATE
        return self.apply_outcome(gen, event.outcome)

    # -- shared ------------------------------------------------------------

    def apply_outcome(self, gen: Generation, outcome: ProviderOutcome) -> ReconcileResult:
        if isinstance(outcome, Pending):
            return ReconcileResult.PENDING
        if isinstance(outcome, Failed):
            patch = TransitionPatch.failed(
                PROVIDER_FAILED,
                outcome.message,
                detail={"code": outcome.code},
                metadata=outcome.metadata,
            )
            return self._finish(gen, GenerationStatus.FAILED, patch)
        if isinstance(outcome, Completed):
            try:
                artifact = self._materializer.materialize(gen.id, outcome.output)
            except MaterializationError as e:
                logger.warning(
                    "artifact_materialize_failed generation_id=%s kind=%s error=%s", gen.id, e.failure_kind, e.message
                )
                patch = TransitionPatch.failed(e.failure_kind, e.message, metadata=outcome.metadata)
                return self._finish(gen, GenerationStatus.FAILED, patch)
            patch = TransitionPatch.ready(artifact, outcome.metadata)
            return self._finish(gen, GenerationStatus.READY, patch, uploaded_key=artifact.blob_key)
        raise TypeError(f"Unsupported outcome: {outcome!r}")

    def _finish(
        self,
        gen: Generation,
        to_status: GenerationStatus,
        patch: TransitionPatch,
        uploaded_key: str | None = None,
    ) -> ReconcileResult:
        try:
            self._store.transition(gen.id, GenerationStatus.PENDING, to_status, patch)
        except Conflict as e:
            logger.info("transition_lost generation_id=%s current=%s", gen.id, e.current)
            if uploaded_key:
                self._materializer.discard(uploaded_key)
            return ReconcileResult.DUPLICATE
        except StorageError:
            # Record stays pending; the next delivery or sweep retries
            if uploaded_key:
                self._materializer.discard(uploaded_key)
            raise
        logger.info("generation_%s generation_id=%s provider=%s", to_status.value, gen.id, gen.provider)
        return ReconcileResult.APPLIED

    # -- poll path ---------------------------------------------------------

    def _pollable_providers(self) -> list[str]:
        return [name for name in self._providers.names if self._providers.get(name).capabilities.poll]

    def sweep_once(self, now: datetime | None = None, stop: threading.Event | None = None) -> SweepStats:
        """Poll one batch of pending generations older than the grace period.

        A record polled within the last interval is left out of the batch, and
        never-polled records come first, so records that keep failing to
        resolve cannot crowd newer ones out of every tick.
        """
        now = now or utcnow()
        stats = SweepStats()
        providers = self._pollable_providers()
        if not providers:
            return stats
        batch = self._store.list_pending(
            now - self._grace,
            self._batch_size,
            polled_before=now - self._repoll,
            providers=providers,
        )
        for gen in batch:
            if stop is not None and stop.is_set():
                break
            stats.examined += 1
            adapter = self._providers.get(gen.provider)
            try:
                self._store.mark_polled(gen.id, now)
            except StorageError as e:
                logger.error("sweep_mark_failed generation_id=%s error=%s", gen.id, e.message)
                stats.errors += 1
                continue

            try:
                outcome = adapter.poll(gen.provider_request_id, gen.endpoint)
            except ProviderUnreachable as e:
                logger.warning("sweep_poll_unreachable generation_id=%s error=%s", gen.id, e.message)
                stats.errors += 1
                continue
            except ProviderError as e:
                logger.error(
                    "sweep_poll_failed generation_id=%s kind=%s error=%s body=%s",
                    gen.id,
                    e.kind.value,
                    e.message,
                    e.body[:300],
                )
                stats.errors += 1
                continue

            try:
                result = self.apply_outcome(gen, outcome)
            except StorageError as e:
                logger.error("sweep_apply_failed generation_id=%s error=%s", gen.id, e.message)
                stats.errors += 1
                continue
            if result is ReconcileResult.APPLIED:
                stats.applied += 1
            elif result is ReconcileResult.PENDING:
                stats.pending += 1
            else:
                stats.duplicate += 1
        if stats.examined:
            logger.info("sweep_done %s", stats)
        return stats


class PollSweeper:
    """Runs ``sweep_once`` at a fixed interval until stopped."""

    def __init__(self, reconciler: CompletionReconciler, interval_seconds: float = 30.0):
        self._reconciler = reconciler
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def run(self) -> None:
        """Blocking loop; returns once ``stop`` is called."""
        logger.info("poll_sweeper_started interval=%ss", self._interval)
        while not self._stop.is_set():
            try:
                self._reconciler.sweep_once(stop=self._stop)
            except Exception:
                logger.exception("poll_sweep_failed")
            self._stop.wait(self._interval)
        logger.info("poll_sweeper_stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="igen-poll-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 10.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
