"""Generation records: schema, cursor pagination and storage."""

from igen.generations.models import (
    ArtifactRef,
    Generation,
    GenerationError,
    GenerationFilter,
    GenerationStatus,
    Page,
    TransitionPatch,
    new_generation_id,
)
from igen.generations.store import (
    FileGenerationStore,
    GenerationStore,
    PostgresGenerationStore,
    get_generation_store,
)

__all__ = [
    "ArtifactRef",
    "Generation",
    "GenerationError",
    "GenerationFilter",
    "GenerationStatus",
    "Page",
    "TransitionPatch",
    "new_generation_id",
    "GenerationStore",
    "FileGenerationStore",
    "PostgresGenerationStore",
    "get_generation_store",
]
