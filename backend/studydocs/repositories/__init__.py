"""
Persistence repositories over an AsyncSession.

  documents.py  Document rows (create, get, status)
  chunks.py     DocumentChunk rows, pgvector similarity query, chunk references
"""

from studydocs.repositories.chunks import ChunkRecord, ChunkRepository, ScoredChunk
from studydocs.repositories.documents import DocumentRepository

__all__ = [
    "ChunkRecord",
    "ChunkRepository",
    "ScoredChunk",
    "DocumentRepository",
]
