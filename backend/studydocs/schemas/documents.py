"""
Document Processing — Pydantic Request/Response Schemas

Covers:
  - POST /projects/{project_id}/documents      upload accepted (202)
  - GET  /documents/{id}/jobs, /jobs/{id}      job rows and progress
  - POST /search                               similarity search
  - GET  /queue/stats                          queue counters
  - Structured error bodies for every 4xx/5xx response

Design decisions:
  - ids are always server-generated (UUID4); never client-supplied.
  - job status is the processing pipeline state, separate from HTTP status.
  - ORM rows are converted with model_validate(from_attributes=True).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from studydocs.jobs.state import JobStatus, JobType
from studydocs.models.documents import DocumentStatus


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class DocumentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:           UUID
    project_id:   UUID
    name:         str
    storage_path: str
    mime_type:    str
    file_size:    int
    status:       DocumentStatus
    uploaded_at:  Optional[datetime] = None


class DocumentUploadResponse(BaseModel):
    """
    Returned immediately after a successful upload.
    HTTP 202: the file is stored, processing is asynchronous.
    """
    document: DocumentResponse
    job_id:   Optional[UUID] = Field(None, description="Processing job; null when scheduling failed")
    queued:   bool           = Field(..., description="False when the processing message could not be published")


# ---------------------------------------------------------------------------
# Processing jobs
# ---------------------------------------------------------------------------

class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:               UUID
    document_id:      UUID
    type:             JobType
    status:           JobStatus
    progress:         int = Field(..., ge=0, le=100)
    current_step:     Optional[str] = None
    error_message:    Optional[str] = None
    total_chunks:     Optional[int] = None
    processed_chunks: Optional[int] = None
    started_at:       Optional[datetime] = None
    completed_at:     Optional[datetime] = None
    created_at:       Optional[datetime] = None


class JobProgressResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    progress:     int
    current_step: Optional[str] = None
    status:       JobStatus


# ---------------------------------------------------------------------------
# Similarity search
# ---------------------------------------------------------------------------

class SearchRequest(BaseModel):
    query:                str            = Field(..., min_length=1, max_length=20_000)
    limit:                int            = Field(10, ge=1, le=100)
    document_id:          Optional[UUID] = None
    similarity_threshold: float          = Field(0.7, ge=-1.0, le=1.0)

    @field_validator("query")
    @classmethod
    def _query_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("query must not be blank")
        return value


class ChunkResponse(BaseModel):
    """One stored chunk; the embedding vector itself is not returned."""
    id:          UUID
    document_id: UUID
    content:     str
    metadata:    dict[str, Any] = Field(default_factory=dict)
    created_at:  Optional[datetime] = None


class SearchResult(BaseModel):
    chunk_id:    UUID
    document_id: UUID
    content:     str
    metadata:    dict[str, Any] = Field(default_factory=dict)
    similarity:  float


class SearchResponse(BaseModel):
    results: list[SearchResult]
    count:   int


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class QueueStatsResponse(BaseModel):
    waiting:   int
    active:    int
    completed: int
    failed:    int
    delayed:   int
    total:     int


class QueueStateResponse(BaseModel):
    queue:  str
    paused: bool


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str        = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")
