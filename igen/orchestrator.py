"""Public façade over providers, the generation store and the blob store."""

from __future__ import annotations

import logging
from typing import Any

from igen.blobs.store import Blob, BlobStore
from igen.config import Settings, get_settings
from igen.errors import DuplicateId, NotFound, ProviderError, StorageError, ValidationError
from igen.generations.models import Generation, GenerationFilter, Page, new_generation_id
from igen.generations.store import GenerationStore
from igen.providers import ProviderRegistry
from igen.providers.base import ProviderAdapter
from igen.webhooks import callback_url

logger = logging.getLogger(__name__)

MAX_TAGS = 20
MAX_TAG_LENGTH = 64


def validate_tags(tags: Any) -> list[str]:
    """Return tags de-duplicated in order; raises ValidationError on bad shape."""
    if tags is None:
        return []
    if not isinstance(tags, list):
        raise ValidationError("tags must be a list of strings")
    cleaned: list[str] = []
    for tag in tags:
        if not isinstance(tag, str) or not tag.strip():
            raise ValidationError("tags must be non-empty strings")
        if len(tag) > MAX_TAG_LENGTH:
            raise ValidationError(f"tag longer than {MAX_TAG_LENGTH} characters: {tag[:20]}...")
        if tag not in cleaned:
            cleaned.append(tag)
    if len(cleaned) > MAX_TAGS:
        raise ValidationError(f"at most {MAX_TAGS} tags allowed")
    return cleaned


class GenerationOrchestrator:
    def __init__(
        self,
        store: GenerationStore,
        blobs: BlobStore,
        providers: ProviderRegistry,
        settings: Settings | None = None,
    ):
        self._store = store
        self._blobs = blobs
        self._providers = providers
        self._settings = settings or get_settings()

    def create_generation(self, endpoint: str, input: dict[str, Any], tags: list[str] | None = None) -> Generation:
        """Submit to the provider, then record the pending generation.

        Nothing is persisted when the submit fails. A failed store write after a
        successful submit triggers a best-effort cancel before StorageError propagates.
        """
        if not isinstance(endpoint, str) or not endpoint.strip():
            raise ValidationError("endpoint is required")
        if not isinstance(input, dict):
            raise ValidationError("input must be an object")
        endpoint = endpoint.strip()
        tags = validate_tags(tags)
        adapter = self._providers.resolve(endpoint)

        gen_id = new_generation_id()
        callback = None
        if adapter.capabilities.webhooks:
            callback = callback_url(
                self._settings.igen_public_url, adapter.name, gen_id, self._settings.igen_webhook_secret
            )
        submission = adapter.submit(endpoint, input, callback)

        gen = Generation(
            id=gen_id,
            endpoint=endpoint,
            provider=adapter.name,
            input=input,
            provider_request_id=submission.request_id,
            tags=tags,
            provider_metadata=submission.metadata,
        )
        try:
            self._store.create(gen)
        except (StorageError, DuplicateId) as e:
            logger.error(
                "generation_record_failed generation_id=%s provider=%s request_id=%s error=%s",
                gen_id,
                adapter.name,
                submission.request_id,
                e.message,
            )
            self._cancel_quietly(adapter, submission.request_id, endpoint)
            if isinstance(e, StorageError):
                raise
            raise StorageError(f"Could not record generation {gen_id}") from e
        logger.info(
            "generation_created generation_id=%s provider=%s endpoint=%s request_id=%s",
            gen.id,
            gen.provider,
            gen.endpoint,
            gen.provider_request_id,
        )
        return gen

    @staticmethod
    def _cancel_quietly(adapter: ProviderAdapter, request_id: str, endpoint: str) -> None:
        if not adapter.capabilities.cancel:
            return
        try:
            adapter.cancel(request_id, endpoint)
        except ProviderError as e:
            logger.warning("provider_cancel_failed provider=%s request_id=%s error=%s", adapter.name, request_id, e)

    def get_generation(self, gen_id: str) -> Generation:
        return self._store.get(gen_id)

    def list_generations(
        self, filter: GenerationFilter | None = None, cursor: str | None = None, limit: int | None = None
    ) -> Page:
        return self._store.list(filter, cursor, limit)

    def regenerate(self, gen_id: str, tags: list[str] | None = None) -> Generation:
        """New generation with the same endpoint and input. The original is left untouched."""
        original = self._store.get(gen_id)
        new_tags = list(original.tags) if tags is None else tags
        gen = self.create_generation(original.endpoint, dict(original.input), new_tags)
        logger.info("generation_regenerated source_id=%s generation_id=%s", original.id, gen.id)
        return gen

    def update_tags(self, gen_id: str, add: list[str] | None = None, remove: list[str] | None = None) -> list[str]:
        add = validate_tags(add)
        if remove is None:
            remove = []
        if not isinstance(remove, list) or not all(isinstance(t, str) for t in remove):
            raise ValidationError("remove must be a list of strings")
        # Limit is checked by the store under the same lock as the write
        return self._store.update_tags(gen_id, add, remove, max_tags=MAX_TAGS)

    def delete_generation(self, gen_id: str) -> None:
        """Delete the record and its artifact. In-flight provider jobs are not cancelled."""
        gen = self._store.delete(gen_id)
        if gen.artifact is not None:
            try:
                self._blobs.delete(gen.artifact.blob_key)
            except (StorageError, ValidationError) as e:
                logger.warning("artifact_delete_failed generation_id=%s key=%s error=%s", gen.id, gen.artifact.blob_key, e)
        logger.info("generation_deleted generation_id=%s", gen.id)

    def get_artifact(self, gen_id: str) -> Blob:
        gen = self._store.get(gen_id)
        if gen.artifact is None:
            raise NotFound(f"Generation {gen_id} has no artifact")
        return self._blobs.get(gen.artifact.blob_key)

    def list_tags(self) -> list[str]:
        return self._store.list_tags()
