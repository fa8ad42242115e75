"""
Document Processing Package
════════════════════════════

The post-upload ingestion pipeline:

  Text Extraction → Chunking → Embedding → Chunk Persistence

Modules
───────
  extractor.py   OCR-first text extraction with pypdf / python-docx / plain fallbacks
  chunking.py    Boundary-preserving overlapping chunker (paragraph → sentence → character)
  embeddings.py  Vertex AI embeddings, batched with per-item failure isolation
  store.py       Short per-checkpoint transactions for the orchestrator
  pipeline.py    DocumentProcessor: one document per queue delivery

Design principles
─────────────────
  • Components take Settings and collaborators in their constructors.
  • All heavy computation runs in the Celery worker, never in the API process.
  • Every step emits pipe-style log lines (key=value).
"""

from studydocs.processing.chunking import ChunkOptions, TextChunk, TextChunker
from studydocs.processing.embeddings import (
    BatchEmbeddingResult,
    EmbeddingFailure,
    EmbeddingService,
    EmbeddingVector,
    cosine_similarity,
)
from studydocs.processing.extractor import ExtractionResult, TextExtractionService

__all__ = [
    "ChunkOptions",
    "TextChunk",
    "TextChunker",
    "BatchEmbeddingResult",
    "EmbeddingFailure",
    "EmbeddingService",
    "EmbeddingVector",
    "cosine_similarity",
    "ExtractionResult",
    "TextExtractionService",
]
