"""
SQLAlchemy ORM Models — Documents, Chunks, Processing Jobs, Chunk References

Mapped classes in SQLAlchemy 2.x style for full async support. Status
columns are TEXT guarded by CHECK constraints; the Python-side enums live
in studydocs.jobs.state (jobs) and DocumentStatus below.

Projects and messages belong to the surrounding CRUD layer, so project_id
and message_id are plain UUID columns without foreign keys here.

Vector column:
  document_chunks.embedding is a pgvector vector(EMBEDDING_DIMENSION),
  nullable so a chunk row can exist before its vector is written.
  EMBEDDING_DIMENSION is read from Settings.embedding_dimension (768 for
  text-embedding-004); EmbeddingService rejects vectors of any other length.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from studydocs.core.config import get_settings
from studydocs.jobs.state import JobStatus, JobType

EMBEDDING_DIMENSION = get_settings().embedding_dimension


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    # Load server-generated timestamps with RETURNING; lazy refresh is not
    # possible on an AsyncSession
    __mapper_args__ = {"eager_defaults": True}


class DocumentStatus(str, Enum):
    PENDING    = "pending"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"


def _in_check(column: str, values: list[str]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


# ---------------------------------------------------------------------------
# Document model: documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    One uploaded file.

    Status:
        pending    — stored in the blob store, not yet processed
        processing — a worker is running the pipeline
        completed  — chunks and vectors persisted, available for retrieval
        failed     — the last processing attempt failed (see the job row)
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            _in_check("status", [s.value for s in DocumentStatus]),
            name="documents_status_check",
        ),
        Index("idx_documents_project_id", "project_id"),
        Index("idx_documents_status",     "project_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    name: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Original filename provided by the client",
    )
    storage_path: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Blob store object name: projects/<project_id>/<base>_<ts>_<uuid>.<ext>",
    )
    mime_type: Mapped[str] = mapped_column(Text, nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)

    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=DocumentStatus.PENDING.value,
        server_default=DocumentStatus.PENDING.value,
    )

    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<Document id={self.id} project={self.project_id} status={self.status} name={self.name!r}>"


# ---------------------------------------------------------------------------
# Chunk model: document_chunks
# ---------------------------------------------------------------------------

class DocumentChunk(Base):
    """
    One persisted chunk of a Document with its embedding.

    chunk_metadata carries the chunker metadata plus chunk_index,
    start_position, end_position and extraction_method.
    """

    __tablename__ = "document_chunks"
    __table_args__ = (
        Index("idx_document_chunks_document_id", "document_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[Optional[list[float]]] = mapped_column(
        Vector(EMBEDDING_DIMENSION),
        nullable=True,
    )
    chunk_metadata: Mapped[dict] = mapped_column(
        "metadata",                 # PostgreSQL column name stays 'metadata'
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<DocumentChunk id={self.id} document={self.document_id} chars={len(self.content or '')}>"


# ---------------------------------------------------------------------------
# Job model: document_processing_jobs
# ---------------------------------------------------------------------------

class DocumentProcessingJob(Base):
    """
    One processing attempt for a Document. A retry creates a new row, so
    the history of attempts is preserved.

    status moves only through studydocs.jobs.state.check_transition().
    """

    __tablename__ = "document_processing_jobs"
    __table_args__ = (
        CheckConstraint(
            _in_check("status", [s.value for s in JobStatus]),
            name="document_processing_jobs_status_check",
        ),
        CheckConstraint(
            _in_check("type", [t.value for t in JobType]),
            name="document_processing_jobs_type_check",
        ),
        CheckConstraint(
            "progress BETWEEN 0 AND 100",
            name="document_processing_jobs_progress_check",
        ),
        Index("idx_document_processing_jobs_document_id", "document_id"),
        Index("idx_document_processing_jobs_status",      "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobType.FULL_PROCESS.value,
        server_default=JobType.FULL_PROCESS.value,
    )
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.PENDING.value,
        server_default=JobStatus.PENDING.value,
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    current_step: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='failed'",
    )
    error_stack: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    total_chunks:     Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    processed_chunks: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    started_at:   Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<DocumentProcessingJob id={self.id} document={self.document_id} "
            f"status={self.status} progress={self.progress}>"
        )


# ---------------------------------------------------------------------------
# MessageChunkReference model: message_chunk_references
# ---------------------------------------------------------------------------

class MessageChunkReference(Base):
    """Which chunks backed a generated answer, and how relevant each was."""

    __tablename__ = "message_chunk_references"
    __table_args__ = (
        CheckConstraint(
            "relevance_score BETWEEN 0 AND 1",
            name="message_chunk_references_score_check",
        ),
        Index("idx_message_chunk_references_message_id", "message_id"),
        Index("idx_message_chunk_references_chunk_id",   "chunk_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    message_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    chunk_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("document_chunks.id", ondelete="CASCADE"),
        nullable=False,
    )
    relevance_score: Mapped[float] = mapped_column(Float, nullable=False)
    order: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
