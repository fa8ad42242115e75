"""
Similarity Retrieval

  find_similar_chunks(query_text, limit=10, document_id=None, similarity_threshold=0.7)
      embed the query, then let PostgreSQL rank chunks with pgvector
      (see studydocs.repositories.chunks.similarity_query)

  record_references(message_id, scored_chunks)
      persist which chunks backed a generated answer, ranked by position
"""

from __future__ import annotations

import logging
import uuid
from typing import Sequence

from studydocs.core.exceptions import EmptyInputError, ValidationError
from studydocs.models.documents import MessageChunkReference
from studydocs.processing.embeddings import EmbeddingService
from studydocs.repositories.chunks import ChunkRepository, ScoredChunk

logger = logging.getLogger(__name__)

DEFAULT_LIMIT     = 10
DEFAULT_THRESHOLD = 0.7


def clamp_score(value: float) -> float:
    return min(1.0, max(0.0, float(value)))


class RetrievalService:

    def __init__(self, embedder: EmbeddingService, chunks: ChunkRepository) -> None:
        self._embedder = embedder
        self._chunks   = chunks

    async def find_similar_chunks(
        self,
        query_text:           str,
        limit:                int = DEFAULT_LIMIT,
        document_id:          uuid.UUID | None = None,
        similarity_threshold: float = DEFAULT_THRESHOLD,
    ) -> list[ScoredChunk]:
        if not query_text or not query_text.strip():
            raise EmptyInputError("Query text cannot be empty")
        if limit < 1:
            raise ValidationError(f"limit must be positive, got {limit}")

        query_vector = await self._embedder.embed_query(query_text)
        results = await self._chunks.find_similar(
            query_vector,
            limit=limit,
            document_id=document_id,
            threshold=similarity_threshold,
        )
        logger.info(
            "Similarity search | results=%d limit=%d document=%s threshold=%.2f",
            len(results), limit, document_id, similarity_threshold,
        )
        return results

    async def record_references(
        self,
        message_id:    uuid.UUID,
        scored_chunks: Sequence[ScoredChunk],
    ) -> list[MessageChunkReference]:
        references = [
            MessageChunkReference(
                id=uuid.uuid4(),
                message_id=message_id,
                chunk_id=scored.chunk.id,
                relevance_score=clamp_score(scored.similarity),
                order=rank,
            )
            for rank, scored in enumerate(scored_chunks)
        ]
        await self._chunks.add_references(references)
        logger.info("Chunk references recorded | message=%s count=%d", message_id, len(references))
        return references
