"""
Documents API Router

  POST /api/v1/projects/{project_id}/documents   multipart upload → 202
  GET  /api/v1/documents/{document_id}           document row
  GET  /api/v1/documents/{document_id}/jobs      processing history, newest first
  POST /api/v1/documents/{document_id}/reprocess new full_process job → 202
  GET  /api/v1/documents/{document_id}/chunks    stored chunks in insertion order
  DELETE /api/v1/documents/{document_id}         file + row (chunks, jobs cascade) → 204

Request lifecycle (upload):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. Content-Length guard (413 before reading the body)   │
  │ 2. Type / size validation (DocumentUploadService)       │
  │ 3. Blob upload under projects/<project_id>/             │
  │ 4. Document + job rows committed                        │
  │ 5. Celery message published → returns 202               │
  └─────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import logging
import mimetypes
from uuid import UUID

from fastapi import APIRouter, File, Request, Response, UploadFile, status
from fastapi.responses import JSONResponse

from studydocs.api.dependencies import DB, AppSettings, UploadService
from studydocs.jobs.service import ProcessingJobService
from studydocs.repositories.chunks import ChunkRepository
from studydocs.repositories.documents import DocumentRepository
from studydocs.schemas.documents import (
    ChunkResponse,
    DocumentResponse,
    DocumentUploadResponse,
    ErrorDetail,
    ErrorResponse,
    JobResponse,
)
from studydocs.services.documents import UploadResult

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Documents"])

# Multipart envelope around the file part
_FORM_OVERHEAD_BYTES = 4096


def _upload_response(result: UploadResult) -> JSONResponse:
    body = DocumentUploadResponse(
        document=DocumentResponse.model_validate(result.document),
        job_id=result.job_id,
        queued=result.queued,
    )
    headers = {"X-Document-ID": str(result.document.id)}
    if result.job_id is not None:
        headers["Location"] = f"/api/v1/jobs/{result.job_id}"
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=body.model_dump(mode="json"),
        headers=headers,
    )


# ---------------------------------------------------------------------------
# POST /projects/{project_id}/documents
# ---------------------------------------------------------------------------

@router.post(
    "/projects/{project_id}/documents",
    response_model=DocumentUploadResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a document for processing",
    responses={
        202: {"model": DocumentUploadResponse, "description": "File stored; processing is asynchronous"},
        400: {"model": ErrorResponse, "description": "Empty file or unsupported type"},
        413: {"model": ErrorResponse, "description": "File exceeds the size limit"},
        502: {"model": ErrorResponse, "description": "Blob store unavailable"},
    },
)
async def upload_document(
    project_id: UUID,
    request:    Request,
    service:    UploadService,
    settings:   AppSettings,
    file:       UploadFile = File(..., description="PDF, DOCX, TXT, MD or image"),
) -> JSONResponse:
    content_length = request.headers.get("content-length")
    if content_length and int(content_length) > settings.max_file_size_bytes + _FORM_OVERHEAD_BYTES:
        max_mb = settings.max_file_size_bytes // (1024 * 1024)
        return JSONResponse(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            content=ErrorResponse(
                error_code="FILE_TOO_LARGE",
                message=f"Uploaded file exceeds the {max_mb} MB limit.",
                details=[ErrorDetail(field="file", message=f"Received {int(content_length):,} bytes.", code="FILE_TOO_LARGE")],
            ).model_dump(mode="json"),
        )

    filename  = file.filename or "upload"
    mime_type = file.content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
    data      = await file.read()

    result = await service.upload_document(project_id, filename, data, mime_type)
    return _upload_response(result)


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

@router.get(
    "/documents/{document_id}",
    response_model=DocumentResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_document(document_id: UUID, db: DB) -> DocumentResponse:
    document = await DocumentRepository(db).get(document_id)
    return DocumentResponse.model_validate(document)


@router.get(
    "/documents/{document_id}/jobs",
    response_model=list[JobResponse],
    summary="Processing history for a document, newest first",
    responses={404: {"model": ErrorResponse}},
)
async def list_document_jobs(document_id: UUID, db: DB) -> list[JobResponse]:
    await DocumentRepository(db).get(document_id)
    jobs = await ProcessingJobService(db).find_by_document(document_id)
    return [JobResponse.model_validate(job) for job in jobs]


@router.post(
    "/documents/{document_id}/reprocess",
    response_model=DocumentUploadResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue a fresh processing run for an existing document",
    responses={404: {"model": ErrorResponse}},
)
async def reprocess_document(document_id: UUID, service: UploadService) -> JSONResponse:
    result = await service.reprocess_document(document_id)
    return _upload_response(result)


@router.get(
    "/documents/{document_id}/chunks",
    response_model=list[ChunkResponse],
    summary="Chunks stored for a document",
    responses={404: {"model": ErrorResponse}},
)
async def list_document_chunks(document_id: UUID, db: DB) -> list[ChunkResponse]:
    await DocumentRepository(db).get(document_id)
    chunks = await ChunkRepository(db).find_by_document(document_id)
    return [
        ChunkResponse(
            id=chunk.id,
            document_id=chunk.document_id,
            content=chunk.content,
            metadata=chunk.chunk_metadata or {},
            created_at=chunk.created_at,
        )
        for chunk in chunks
    ]


@router.delete(
    "/documents/{document_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    summary="Delete a document, its stored file, chunks and jobs",
    responses={404: {"model": ErrorResponse}},
)
async def delete_document(document_id: UUID, service: UploadService) -> Response:
    await service.remove_document(document_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
