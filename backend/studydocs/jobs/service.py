"""
Processing Job Service

Persistence for DocumentProcessingJob rows. Every status change is
validated by studydocs.jobs.state before it is written; this module never
assigns job.status without check_transition().

One instance per session / unit of work:

    async with session_scope() as session:
        jobs = ProcessingJobService(session)
        await jobs.update_progress(job_id, 40, "Chunking document text")
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studydocs.core.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from studydocs.jobs.state import JobStatus, JobType, check_transition
from studydocs.models.documents import DocumentProcessingJob

logger = logging.getLogger(__name__)

STALE_ATTEMPT_MESSAGE = "Worker stopped before the job finished; superseded by a new attempt"


@dataclass
class JobProgress:
    progress:     int
    current_step: Optional[str]
    status:       JobStatus


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ProcessingJobService:

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Create / read / delete
    # ------------------------------------------------------------------

    async def create(
        self,
        document_id: uuid.UUID,
        job_type:    JobType = JobType.FULL_PROCESS,
    ) -> DocumentProcessingJob:
        job = DocumentProcessingJob(
            id=uuid.uuid4(),
            document_id=document_id,
            type=JobType(job_type).value,
            status=JobStatus.PENDING.value,
            progress=0,
        )
        self._session.add(job)
        await self._session.flush()
        logger.info("Job created | job=%s document=%s type=%s", job.id, document_id, job.type)
        return job

    async def get(self, job_id: uuid.UUID) -> DocumentProcessingJob:
        job = await self._session.get(DocumentProcessingJob, job_id)
        if job is None:
            raise NotFoundError("DocumentProcessingJob", job_id)
        return job

    async def find_by_document(self, document_id: uuid.UUID) -> list[DocumentProcessingJob]:
        stmt = (
            select(DocumentProcessingJob)
            .where(DocumentProcessingJob.document_id == document_id)
            .order_by(DocumentProcessingJob.created_at.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def find_by_status(self, status: JobStatus) -> list[DocumentProcessingJob]:
        stmt = (
            select(DocumentProcessingJob)
            .where(DocumentProcessingJob.status == JobStatus(status).value)
            .order_by(DocumentProcessingJob.created_at.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def find_pending(self) -> list[DocumentProcessingJob]:
        return await self.find_by_status(JobStatus.PENDING)

    async def find_processing(self) -> list[DocumentProcessingJob]:
        return await self.find_by_status(JobStatus.PROCESSING)

    async def get_progress(self, job_id: uuid.UUID) -> JobProgress:
        job = await self.get(job_id)
        return JobProgress(
            progress=job.progress,
            current_step=job.current_step,
            status=JobStatus(job.status),
        )

    async def remove(self, job_id: uuid.UUID) -> DocumentProcessingJob:
        job = await self.get(job_id)
        await self._session.delete(job)
        await self._session.flush()
        logger.info("Job removed | job=%s", job_id)
        return job

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, job_id: uuid.UUID) -> DocumentProcessingJob:
        job = await self.get(job_id)
        if JobStatus(job.status) is not JobStatus.PENDING:
            raise InvalidTransitionError(
                f"Job {job_id} cannot be started from status {job.status}"
            )
        job.status     = check_transition(job.status, JobStatus.PROCESSING).value
        job.progress   = 0
        job.started_at = _now()
        await self._session.flush()
        logger.info("Job started | job=%s document=%s", job.id, job.document_id)
        return job

    async def update_progress(
        self,
        job_id:       uuid.UUID,
        progress:     int,
        current_step: str | None = None,
    ) -> DocumentProcessingJob:
        if not 0 <= progress <= 100:
            raise ValidationError(f"Progress must be between 0 and 100, got {progress}")

        job = await self.get(job_id)
        job.status   = check_transition(job.status, JobStatus.PROCESSING).value
        job.progress = progress
        if current_step:
            job.current_step = current_step
        await self._session.flush()
        logger.debug("Job progress | job=%s progress=%d step=%s", job_id, progress, current_step)
        return job

    async def set_total_chunks(self, job_id: uuid.UUID, total: int) -> DocumentProcessingJob:
        job = await self.get(job_id)
        job.total_chunks = total
        await self._session.flush()
        return job

    async def set_processed_chunks(self, job_id: uuid.UUID, processed: int) -> DocumentProcessingJob:
        job = await self.get(job_id)
        job.processed_chunks = processed
        await self._session.flush()
        return job

    async def complete(self, job_id: uuid.UUID) -> DocumentProcessingJob:
        job = await self.get(job_id)
        job.status       = check_transition(job.status, JobStatus.COMPLETED).value
        job.progress     = 100
        job.completed_at = _now()
        await self._session.flush()
        logger.info("Job completed | job=%s document=%s", job.id, job.document_id)
        return job

    async def fail(
        self,
        job_id:        uuid.UUID,
        error_message: str,
        error_stack:   str | None = None,
    ) -> DocumentProcessingJob:
        """Mark the job FAILED. Valid from PENDING (pre-start failures) and PROCESSING."""
        job = await self.get(job_id)
        job.status        = check_transition(job.status, JobStatus.FAILED).value
        job.error_message = error_message
        if error_stack:
            job.error_stack = error_stack
        job.completed_at  = _now()
        await self._session.flush()
        logger.warning("Job failed | job=%s document=%s error=%s", job.id, job.document_id, error_message)
        return job

    async def cancel(self, job_id: uuid.UUID) -> DocumentProcessingJob:
        job = await self.get(job_id)
        job.status       = check_transition(job.status, JobStatus.CANCELLED).value
        job.completed_at = _now()
        await self._session.flush()
        logger.info("Job cancelled | job=%s document=%s", job.id, job.document_id)
        return job

    # ------------------------------------------------------------------
    # Queue delivery
    # ------------------------------------------------------------------

    async def claim_for_delivery(self, job_id: uuid.UUID) -> DocumentProcessingJob | None:
        """
        Resolve the job row a queue delivery should run against.

          PENDING     → the job itself
          CANCELLED   → None; the delivery is dropped
          FAILED      → a new PENDING row for the same document (queue retry)
          COMPLETED   → None; already done
          PROCESSING  → the stale row is failed, then a new PENDING row
                        (redelivery after a worker crash)
        """
        job    = await self.get(job_id)
        status = JobStatus(job.status)

        if status is JobStatus.PENDING:
            return job
        if status in (JobStatus.CANCELLED, JobStatus.COMPLETED):
            logger.info("Delivery dropped | job=%s status=%s", job_id, status.value)
            return None
        if status is JobStatus.PROCESSING:
            await self.fail(job_id, STALE_ATTEMPT_MESSAGE)

        attempt = await self.create(job.document_id, JobType(job.type))
        logger.info("New attempt | previous_job=%s job=%s document=%s", job_id, attempt.id, job.document_id)
        return attempt
