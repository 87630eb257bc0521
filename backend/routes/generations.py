"""Generation lifecycle API.

POST   /api/generations                      → submit, returns the pending record
GET    /api/generations                      → cursor-paginated listing
GET    /api/generations/{id}                 → one record
GET    /api/generations/{id}/artifact        → artifact bytes (ready only)
PATCH  /api/generations/{id}/tags            → add/remove tags
DELETE /api/generations/{id}                 → delete record and artifact
POST   /api/generations/{id}/regenerate      → new generation with the same input
GET    /api/tags                             → distinct tags
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field

from igen.generations.models import Generation, GenerationFilter, GenerationStatus, Page
from igen.orchestrator import GenerationOrchestrator
from igen.services import get_orchestrator

router = APIRouter()


class CreateGenerationRequest(BaseModel):
    endpoint: str
    input: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] | None = None


class RegenerateRequest(BaseModel):
    tags: list[str] | None = None


class TagUpdateRequest(BaseModel):
    add: list[str] = Field(default_factory=list)
    remove: list[str] = Field(default_factory=list)


class TagsResponse(BaseModel):
    id: str
    tags: list[str]


class DeleteResponse(BaseModel):
    id: str
    deleted: bool = True


@router.post("/generations", response_model=Generation, status_code=status.HTTP_201_CREATED)
def create_generation(
    request: CreateGenerationRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.create_generation(request.endpoint, request.input, request.tags)


@router.get("/generations", response_model=Page)
def list_generations(
    status: GenerationStatus | None = None,
    endpoint: str | None = None,
    tags: list[str] = Query(default=[]),
    limit: int | None = None,
    cursor: str | None = None,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    filter = GenerationFilter(status=status, endpoint=endpoint, tags=tags)
    return orchestrator.list_generations(filter, cursor, limit)


@router.get("/generations/{gen_id}", response_model=Generation)
def get_generation(gen_id: str, orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_generation(gen_id)


@router.get("/generations/{gen_id}/artifact")
def get_artifact(gen_id: str, orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    blob = orchestrator.get_artifact(gen_id)
    return Response(content=blob.data, media_type=blob.content_type)


@router.patch("/generations/{gen_id}/tags", response_model=TagsResponse)
def update_tags(
    gen_id: str,
    request: TagUpdateRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    tags = orchestrator.update_tags(gen_id, request.add, request.remove)
    return TagsResponse(id=gen_id, tags=tags)


@router.delete("/generations/{gen_id}", response_model=DeleteResponse)
def delete_generation(gen_id: str, orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    orchestrator.delete_generation(gen_id)
    return DeleteResponse(id=gen_id)


@router.post("/generations/{gen_id}/regenerate", response_model=Generation, status_code=status.HTTP_201_CREATED)
def regenerate(
    gen_id: str,
    request: RegenerateRequest | None = None,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    tags = request.tags if request is not None else None
    return orchestrator.regenerate(gen_id, tags)


@router.get("/tags")
def list_tags(orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    return {"tags": orchestrator.list_tags()}
