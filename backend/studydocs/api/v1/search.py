"""
Similarity Search API Router

  POST /api/v1/search   embed the query, return the closest chunks above the threshold
"""

from __future__ import annotations

import logging

from fastapi import APIRouter

from studydocs.api.dependencies import Retrieval
from studydocs.schemas.documents import ErrorResponse, SearchRequest, SearchResponse, SearchResult

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Search"])


@router.post(
    "/search",
    response_model=SearchResponse,
    responses={400: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
async def search_chunks(request: SearchRequest, retrieval: Retrieval) -> SearchResponse:
    scored = await retrieval.find_similar_chunks(
        request.query,
        limit=request.limit,
        document_id=request.document_id,
        similarity_threshold=request.similarity_threshold,
    )
    results = [
        SearchResult(
            chunk_id=item.chunk.id,
            document_id=item.chunk.document_id,
            content=item.chunk.content,
            metadata=item.chunk.chunk_metadata or {},
            similarity=item.similarity,
        )
        for item in scored
    ]
    return SearchResponse(results=results, count=len(results))
