"""
Document Upload Service

Orchestrates the upload path:
  1. Validate the file (non-empty, size ceiling, allowed MIME type and extension)
  2. Upload bytes to blob storage under projects/<project_id>/
  3. Insert the document row (status=pending)                 [own transaction]
  4. Insert a full_process job row (status=pending)           [own transaction]
  5. Publish the processing message to the Celery queue

Rows are committed before the message is published so the worker always
finds them. Steps 4 and 5 are non-fatal: the document is stored either way,
and reprocess_document() can start processing later. When the job row
exists but publishing fails, the job is failed before it ever started so it
does not sit in pending forever.

remove_document() deletes the stored file, then the row; chunks and jobs
cascade with it. A storage failure is logged and does not block the delete.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studydocs.core.config import Settings
from studydocs.core.exceptions import EmptyInputError, ProviderError, ValidationError
from studydocs.db.session import session_scope
from studydocs.jobs.service import ProcessingJobService
from studydocs.jobs.state import JobType
from studydocs.models.documents import Document
from studydocs.repositories.chunks import ChunkRepository
from studydocs.repositories.documents import DocumentRepository
from studydocs.storage.blob import BlobStore, project_folder
from studydocs.workers.queue import ProcessingQueueService

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File type validation
# ---------------------------------------------------------------------------

ALLOWED_MIME_TYPES: frozenset[str] = frozenset({
    "application/pdf",
    "text/plain",
    "text/markdown",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/svg+xml",
    "image/bmp",
    "image/tiff",
})

ALLOWED_EXTENSIONS: frozenset[str] = frozenset({
    ".pdf", ".txt", ".md", ".docx",
    ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".bmp", ".tiff", ".tif",
})

ENQUEUE_FAILED_MESSAGE = "Failed to enqueue document for processing"


def _get_extension(filename: str) -> str:
    """Return lowercased file extension including the dot."""
    parts = filename.rsplit(".", 1)
    return f".{parts[-1].lower()}" if len(parts) == 2 else ""


def _display_name(filename: str) -> str:
    """Strip any directory component a browser may have sent."""
    return filename.replace("\\", "/").rsplit("/", 1)[-1].strip()[:255]


def validate_upload(filename: str, data: bytes, mime_type: str, max_size: int) -> None:
    if not data:
        raise EmptyInputError("Uploaded file is empty")
    if len(data) > max_size:
        raise ValidationError(
            f"File size {len(data)} bytes exceeds the {max_size // (1024 * 1024)} MB limit"
        )
    if mime_type not in ALLOWED_MIME_TYPES:
        raise ValidationError(f"Unsupported file type: {mime_type}")
    if _get_extension(filename) not in ALLOWED_EXTENSIONS:
        raise ValidationError(f"Unsupported file extension: {_get_extension(filename) or '(none)'}")


@dataclass
class UploadResult:
    document:    Document
    job_id:      Optional[uuid.UUID]
    task_id:     Optional[str]

    @property
    def queued(self) -> bool:
        return self.task_id is not None


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class DocumentUploadService:
    """
    One instance per request; all collaborators injected so tests can
    replace storage and the queue with mocks.
    """

    def __init__(
        self,
        settings:        Settings,
        blobs:           BlobStore,
        queue:           ProcessingQueueService,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._settings        = settings
        self._blobs           = blobs
        self._queue           = queue
        self._session_factory = session_factory

    async def upload_document(
        self,
        project_id: uuid.UUID,
        filename:   str,
        data:       bytes,
        mime_type:  str,
    ) -> UploadResult:
        name = _display_name(filename)
        if not name:
            raise ValidationError("Filename cannot be empty")
        validate_upload(name, data, mime_type, self._settings.max_file_size_bytes)

        logger.info(
            "Upload start | project=%s file=%s size=%d mime=%s",
            project_id, name, len(data), mime_type,
        )

        stored = await self._blobs.upload(data, project_folder(project_id), name, mime_type)

        async with session_scope(self._session_factory) as session:
            document = await DocumentRepository(session).create(
                project_id=project_id,
                name=name,
                storage_path=stored.path,
                mime_type=mime_type,
                file_size=len(data),
            )

        job_id, task_id = await self._schedule(document.id)
        return UploadResult(document=document, job_id=job_id, task_id=task_id)

    async def reprocess_document(self, document_id: uuid.UUID) -> UploadResult:
        """Start a fresh full_process job for an existing document."""
        async with session_scope(self._session_factory) as session:
            document = await DocumentRepository(session).get(document_id)
            job      = await ProcessingJobService(session).create(document_id, JobType.FULL_PROCESS)

        logger.info("Reprocess requested | document=%s job=%s", document_id, job.id)
        task_id = await self._publish(document_id, job.id)
        return UploadResult(document=document, job_id=job.id, task_id=task_id)

    async def remove_document(self, document_id: uuid.UUID) -> Document:
        async with session_scope(self._session_factory) as session:
            document    = await DocumentRepository(session).get(document_id)
            chunk_count = await ChunkRepository(session).count_by_document(document_id)

        path = document.storage_path
        try:
            if await self._blobs.exists(path):
                await self._blobs.delete(path)
            else:
                logger.warning("Blob already missing | document=%s path=%s", document_id, path)
        except ProviderError as exc:
            logger.error(
                "Blob delete failed, removing row anyway | document=%s path=%s error=%s",
                document_id, path, exc,
            )

        async with session_scope(self._session_factory) as session:
            document = await DocumentRepository(session).delete(document_id)

        logger.info("Document removed | document=%s chunks=%d", document_id, chunk_count)
        return document

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _schedule(self, document_id: uuid.UUID) -> tuple[uuid.UUID | None, str | None]:
        try:
            async with session_scope(self._session_factory) as session:
                job = await ProcessingJobService(session).create(document_id, JobType.FULL_PROCESS)
        except Exception as exc:
            # Non-fatal: the document is stored and can be reprocessed
            logger.error("Job creation failed | document=%s error=%s", document_id, exc)
            return None, None

        return job.id, await self._publish(document_id, job.id)

    async def _publish(self, document_id: uuid.UUID, job_id: uuid.UUID) -> str | None:
        try:
            return await self._queue.enqueue(document_id, job_id)
        except Exception as exc:
            logger.error(
                "Failed to publish processing task | document=%s job=%s error=%s",
                document_id, job_id, exc,
            )

        try:
            async with session_scope(self._session_factory) as session:
                await ProcessingJobService(session).fail(job_id, ENQUEUE_FAILED_MESSAGE)
        except Exception as exc:
            logger.error("Could not mark job failed | job=%s error=%s", job_id, exc)
        return None
