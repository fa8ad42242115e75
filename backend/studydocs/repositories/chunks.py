"""
Chunk Store

Persists DocumentChunk rows with their pgvector embeddings and answers
nearest-neighbour queries inside PostgreSQL.

Similarity query
────────────────
  pgvector's <=> operator is cosine DISTANCE, so similarity = 1 - distance.

      SELECT document_chunks.*, 1 - (embedding <=> :q) AS similarity
      FROM document_chunks
      WHERE embedding IS NOT NULL
        AND 1 - (embedding <=> :q) >= :threshold
        [AND document_id = :document_id]
      ORDER BY embedding <=> :q
      LIMIT :limit

  Ordering by the raw distance (ascending) lets an ivfflat / hnsw index on
  the embedding column serve the query.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional, Sequence

from sqlalchemy import Select, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from studydocs.models.documents import DocumentChunk, MessageChunkReference

logger = logging.getLogger(__name__)


@dataclass
class ChunkRecord:
    """A chunk ready to persist: content, its vector and JSON metadata."""
    content:   str
    embedding: Optional[list[float]]
    metadata:  dict = field(default_factory=dict)


@dataclass
class ScoredChunk:
    chunk:      DocumentChunk
    similarity: float


def similarity_query(
    query_vector: Sequence[float],
    *,
    limit:        int = 10,
    document_id:  uuid.UUID | None = None,
    threshold:    float = 0.7,
) -> Select:
    distance   = DocumentChunk.embedding.cosine_distance(query_vector)
    similarity = (1 - distance).label("similarity")

    stmt = (
        select(DocumentChunk, similarity)
        .where(DocumentChunk.embedding.is_not(None))
        .where(1 - distance >= threshold)
    )
    if document_id is not None:
        stmt = stmt.where(DocumentChunk.document_id == document_id)
    return stmt.order_by(distance).limit(limit)


class ChunkRepository:

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def delete_by_document(self, document_id: uuid.UUID) -> int:
        result = await self._session.execute(
            delete(DocumentChunk).where(DocumentChunk.document_id == document_id)
        )
        return result.rowcount or 0

    async def replace_for_document(
        self,
        document_id: uuid.UUID,
        records:     Sequence[ChunkRecord],
    ) -> list[DocumentChunk]:
        """
        Delete every chunk of the document, then insert `records`, in the
        caller's transaction. Re-running with the same input leaves exactly
        one row per record.
        """
        removed = await self.delete_by_document(document_id)
        rows = [
            DocumentChunk(
                id=uuid.uuid4(),
                document_id=document_id,
                content=record.content,
                embedding=record.embedding,
                chunk_metadata=record.metadata,
            )
            for record in records
        ]
        self._session.add_all(rows)
        await self._session.flush()
        logger.info(
            "Chunks replaced | document=%s removed=%d inserted=%d",
            document_id, removed, len(rows),
        )
        return rows

    async def add_references(self, references: Sequence[MessageChunkReference]) -> None:
        self._session.add_all(list(references))
        await self._session.flush()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find_by_document(self, document_id: uuid.UUID) -> list[DocumentChunk]:
        stmt = (
            select(DocumentChunk)
            .where(DocumentChunk.document_id == document_id)
            .order_by(DocumentChunk.created_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_document(self, document_id: uuid.UUID) -> int:
        stmt = select(func.count()).select_from(DocumentChunk).where(
            DocumentChunk.document_id == document_id
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def find_similar(
        self,
        query_vector: Sequence[float],
        *,
        limit:        int = 10,
        document_id:  uuid.UUID | None = None,
        threshold:    float = 0.7,
    ) -> list[ScoredChunk]:
        stmt = similarity_query(
            query_vector, limit=limit, document_id=document_id, threshold=threshold,
        )
        result = await self._session.execute(stmt)
        scored = [ScoredChunk(chunk=row[0], similarity=float(row[1])) for row in result.all()]
        scored.sort(key=lambda s: s.similarity, reverse=True)
        return scored
