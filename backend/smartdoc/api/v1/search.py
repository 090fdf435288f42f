"""
Search API Router

  POST /search                         semantic search over the caller's documents
  GET  /documents/{id}/similar         documents closest to this one
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Query

from smartdoc.api.dependencies import CurrentUserId, Retrieval
from smartdoc.schemas.documents import (
    ErrorResponse,
    SearchRequest,
    SearchResponse,
    SearchResultItem,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Search"])


@router.post(
    "/search",
    response_model=SearchResponse,
    summary="Semantic search",
    description="Best-matching chunk per document, highest cosine similarity first.",
    responses={400: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
async def semantic_search(
    body:      SearchRequest,
    user_id:   CurrentUserId,
    retrieval: Retrieval,
) -> SearchResponse:
    results = await retrieval.semantic_search(body.query, user_id, body.limit)
    return SearchResponse(
        query=body.query,
        results=[
            SearchResultItem(document_id=r.document_id, score=r.score, snippet=r.snippet)
            for r in results
        ],
    )


@router.get(
    "/documents/{document_id}/similar",
    response_model=list[SearchResultItem],
    summary="Similar documents",
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def similar_documents(
    document_id: UUID,
    user_id:     CurrentUserId,
    retrieval:   Retrieval,
    limit:       int = Query(5, ge=1, le=50),
) -> list[SearchResultItem]:
    results = await retrieval.find_similar_documents(document_id, user_id, limit)
    return [
        SearchResultItem(document_id=r.document_id, score=r.score, snippet=r.snippet)
        for r in results
    ]
