"""Generation record schema and status."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_generation_id() -> str:
    return f"gen_{uuid.uuid4().hex}"


class GenerationStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not GenerationStatus.PENDING


class ArtifactRef(BaseModel):
    """Pointer to the artifact bytes in the blob store."""

    blob_key: str
    content_type: str = "application/octet-stream"
    size_bytes: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)


class GenerationError(BaseModel):
    """Structured failure detail stored on a failed generation."""

    kind: str  # provider_failed | invalid_output | fetch_failed | storage_failed | provider_rejected
    message: str = ""
    detail: dict[str, Any] = Field(default_factory=dict)


class Generation(BaseModel):
    """One request to an inference provider and its lifecycle record."""

    id: str
    endpoint: str
    provider: str
    input: dict[str, Any] = Field(default_factory=dict)
    status: GenerationStatus = GenerationStatus.PENDING
    provider_request_id: str
    tags: list[str] = Field(default_factory=list)
    artifact: ArtifactRef | None = None
    error: GenerationError | None = None
    provider_metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    # Last poll-sweep attempt; the sweep serves never-polled and least recently polled records first
    last_polled_at: datetime | None = None

    @model_validator(mode="after")
    def _check_state(self) -> "Generation":
        ready = self.status is GenerationStatus.READY
        failed = self.status is GenerationStatus.FAILED
        if (self.artifact is not None) != ready:
            raise ValueError("artifact must be set iff status is ready")
        if (self.error is not None) != failed:
            raise ValueError("error must be set iff status is failed")
        if (self.completed_at is not None) != self.status.is_terminal:
            raise ValueError("completed_at must be set iff status is terminal")
        return self


class TransitionPatch(BaseModel):
    """Fields written together with a status transition."""

    artifact: ArtifactRef | None = None
    error: GenerationError | None = None
    completed_at: datetime | None = None
    provider_metadata: dict[str, Any] | None = None

    @classmethod
    def ready(cls, artifact: ArtifactRef, metadata: dict[str, Any] | None = None) -> "TransitionPatch":
        return cls(artifact=artifact, completed_at=utcnow(), provider_metadata=metadata or None)

    @classmethod
    def failed(
        cls,
        kind: str,
        message: str,
        detail: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> "TransitionPatch":
        return cls(
            error=GenerationError(kind=kind, message=message, detail=detail or {}),
            completed_at=utcnow(),
            provider_metadata=metadata or None,
        )


def apply_transition(gen: Generation, to_status: GenerationStatus, patch: TransitionPatch) -> Generation:
    """Return ``gen`` moved to ``to_status`` with ``patch`` merged; validates invariants."""
    metadata = dict(gen.provider_metadata)
    if patch.provider_metadata:
        metadata.update(patch.provider_metadata)
    data = gen.model_dump()
    data.update(
        status=to_status,
        artifact=patch.artifact.model_dump() if patch.artifact else None,
        error=patch.error.model_dump() if patch.error else None,
        completed_at=patch.completed_at if to_status.is_terminal else None,
        provider_metadata=metadata,
    )
    return Generation.model_validate(data)


def merge_tags(current: list[str], add: list[str], remove: list[str]) -> list[str]:
    """Add then remove; keeps display order, drops duplicates."""
    tags: list[str] = []
    for tag in [*current, *add]:
        if tag not in tags:
            tags.append(tag)
    removed = set(remove)
    return [t for t in tags if t not in removed]


class GenerationFilter(BaseModel):
    status: GenerationStatus | None = None
    endpoint: str | None = None
    tags: list[str] = Field(default_factory=list)

    def matches(self, gen: Generation) -> bool:
        if self.status is not None and gen.status is not self.status:
            return False
        if self.endpoint and gen.endpoint != self.endpoint:
            return False
        return all(t in gen.tags for t in self.tags)


class Page(BaseModel):
    items: list[Generation] = Field(default_factory=list)
    next_cursor: str | None = None
