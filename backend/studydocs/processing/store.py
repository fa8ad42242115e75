"""
Processing Store

Database access for the pipeline orchestrator. Every method runs in its
own short transaction so job progress is committed, and visible to
pollers, as soon as each checkpoint is reached.
"""

from __future__ import annotations

import uuid
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studydocs.db.session import session_scope
from studydocs.jobs.service import ProcessingJobService
from studydocs.jobs.state import JobStatus
from studydocs.models.documents import Document, DocumentStatus
from studydocs.repositories.chunks import ChunkRecord, ChunkRepository
from studydocs.repositories.documents import DocumentRepository


class ProcessingStore:

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def start_job(self, job_id: uuid.UUID) -> None:
        async with session_scope(self._session_factory) as session:
            await ProcessingJobService(session).start(job_id)

    async def job_status(self, job_id: uuid.UUID) -> JobStatus:
        async with session_scope(self._session_factory) as session:
            job = await ProcessingJobService(session).get(job_id)
            return JobStatus(job.status)

    async def update_progress(self, job_id: uuid.UUID, progress: int, current_step: str) -> None:
        async with session_scope(self._session_factory) as session:
            await ProcessingJobService(session).update_progress(job_id, progress, current_step)

    async def set_total_chunks(self, job_id: uuid.UUID, total: int) -> None:
        async with session_scope(self._session_factory) as session:
            await ProcessingJobService(session).set_total_chunks(job_id, total)

    async def set_processed_chunks(self, job_id: uuid.UUID, processed: int) -> None:
        async with session_scope(self._session_factory) as session:
            await ProcessingJobService(session).set_processed_chunks(job_id, processed)

    async def complete_job(self, job_id: uuid.UUID) -> None:
        async with session_scope(self._session_factory) as session:
            await ProcessingJobService(session).complete(job_id)

    async def fail_job(self, job_id: uuid.UUID, message: str, stack: str | None = None) -> None:
        async with session_scope(self._session_factory) as session:
            await ProcessingJobService(session).fail(job_id, message, stack)

    # ------------------------------------------------------------------
    # Documents and chunks
    # ------------------------------------------------------------------

    async def get_document(self, document_id: uuid.UUID) -> Document:
        async with session_scope(self._session_factory) as session:
            return await DocumentRepository(session).get(document_id)

    async def set_document_status(self, document_id: uuid.UUID, status: DocumentStatus) -> None:
        async with session_scope(self._session_factory) as session:
            await DocumentRepository(session).set_status(document_id, status)

    async def replace_chunks(self, document_id: uuid.UUID, records: Sequence[ChunkRecord]) -> int:
        async with session_scope(self._session_factory) as session:
            rows = await ChunkRepository(session).replace_for_document(document_id, records)
            return len(rows)
