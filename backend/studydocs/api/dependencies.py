"""
Composed FastAPI Dependencies

Builds the request-scoped services from Settings. Route handlers import the
Annotated aliases at the bottom of this module; tests replace the provider
functions through app.dependency_overrides.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from studydocs.core.config import Settings, get_settings
from studydocs.db.session import get_db
from studydocs.processing.embeddings import EmbeddingService
from studydocs.repositories.chunks import ChunkRepository
from studydocs.services.documents import DocumentUploadService
from studydocs.services.retrieval import RetrievalService
from studydocs.storage.blob import BlobStore
from studydocs.workers.queue import ProcessingQueueService


def get_app_settings() -> Settings:
    return get_settings()


def get_blob_store(settings: Annotated[Settings, Depends(get_app_settings)]) -> BlobStore:
    return BlobStore(settings)


def get_queue_service() -> ProcessingQueueService:
    return ProcessingQueueService()


def get_embedding_service(settings: Annotated[Settings, Depends(get_app_settings)]) -> EmbeddingService:
    return EmbeddingService(settings)


def get_upload_service(
    settings: Annotated[Settings, Depends(get_app_settings)],
    blobs:    Annotated[BlobStore, Depends(get_blob_store)],
    queue:    Annotated[ProcessingQueueService, Depends(get_queue_service)],
) -> DocumentUploadService:
    """
    The upload service opens its own short transactions: rows must be
    committed before the processing message is published.
    """
    return DocumentUploadService(settings, blobs, queue)


def get_retrieval_service(
    embedder: Annotated[EmbeddingService, Depends(get_embedding_service)],
    db:       Annotated[AsyncSession, Depends(get_db)],
) -> RetrievalService:
    return RetrievalService(embedder, ChunkRepository(db))


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

DB            = Annotated[AsyncSession,           Depends(get_db)]
AppSettings   = Annotated[Settings,               Depends(get_app_settings)]
UploadService = Annotated[DocumentUploadService,  Depends(get_upload_service)]
Retrieval     = Annotated[RetrievalService,       Depends(get_retrieval_service)]
QueueService  = Annotated[ProcessingQueueService, Depends(get_queue_service)]
