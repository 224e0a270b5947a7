"""Similarity search routes over indexed CRM content."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from loguru import logger

from crm_assistant.presentation.auth import AuthenticatedUser, get_current_user
from crm_assistant.presentation.schemas import (
    IndexEntityResponse,
    SimilarityMatchResponse,
    SimilarSearchRequest,
)
from crm_assistant.services.similarity_index import SimilarityIndex

router = APIRouter(prefix="/search", tags=["search"])


def _index(raw_request: Request) -> SimilarityIndex:
    index: SimilarityIndex | None = raw_request.app.state.similarity_index
    if index is None:
        raise HTTPException(status_code=503, detail="Similarity search is not configured")
    return index


@router.post("/similar", response_model=list[SimilarityMatchResponse])
async def search_similar(
    request: SimilarSearchRequest,
    raw_request: Request,
    current_user: AuthenticatedUser = Depends(get_current_user),
):
    """Top-k indexed items for one entity, most similar first."""
    index = _index(raw_request)
    k = request.k or raw_request.app.state.settings.similarity_default_k
    matches = await index.query(current_user.user_id, request.entity_id, request.query, k)
    logger.info(
        "POST /search/similar | user={} entity={} k={} results={}",
        current_user.user_id,
        request.entity_id,
        k,
        len(matches),
    )
    return [
        SimilarityMatchResponse(
            id=m.item.id,
            content_type=str(m.item.content_type),
            text=m.item.text,
            similarity=m.similarity,
            source=m.item.metadata.source,
            tags=list(m.item.metadata.tags),
            timestamp=m.item.metadata.timestamp,
        )
        for m in matches
    ]


@router.post("/index/{entity_id}", response_model=IndexEntityResponse)
async def index_entity(
    entity_id: str,
    raw_request: Request,
    current_user: AuthenticatedUser = Depends(get_current_user),
):
    """Embed an entity's note, recent activities and recent messages."""
    index = _index(raw_request)
    try:
        items = await index.index_entity(current_user.user_id, entity_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return IndexEntityResponse(entity_id=entity_id, indexed=len(items))


@router.delete("/index/{entity_id}", response_model=IndexEntityResponse)
async def delete_entity_index(
    entity_id: str,
    raw_request: Request,
    current_user: AuthenticatedUser = Depends(get_current_user),
):
    """Remove every indexed item of a deleted entity."""
    removed = _index(raw_request).delete_entity(current_user.user_id, entity_id)
    return IndexEntityResponse(entity_id=entity_id, indexed=removed)
