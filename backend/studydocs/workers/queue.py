"""
Processing Queue Service

Thin async facade over Celery used by the upload service and the admin
API routes.

  enqueue(document_id, job_id)  publish process_document to documents.processing
  get_counts()                  waiting / active / completed / failed / delayed / total
  pause() / resume()            stop or restart consumption on every worker

Where the counts come from:
  waiting    messages still in the broker queue + tasks reserved by workers
  active     tasks executing now                    (inspect().active)
  delayed    tasks held for a retry countdown / ETA (inspect().scheduled)
  completed  job rows with status completed         (PostgreSQL)
  failed     job rows with status failed            (PostgreSQL)

Celery and kombu calls block, so they run in the default thread executor.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass
from typing import Callable, TypeVar

from celery import Celery
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studydocs.db.session import session_scope
from studydocs.jobs.state import JobStatus
from studydocs.models.documents import DocumentProcessingJob
from studydocs.workers.celery_app import PROCESSING_QUEUE, celery_app as default_celery_app

logger = logging.getLogger(__name__)

T = TypeVar("T")

INSPECT_TIMEOUT_SECONDS = 1.0


@dataclass
class QueueStats:
    waiting:   int
    active:    int
    completed: int
    failed:    int
    delayed:   int

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.delayed

    def as_dict(self) -> dict:
        return {**asdict(self), "total": self.total}


def _count_tasks(per_worker: dict | None) -> int:
    return sum(len(tasks or []) for tasks in (per_worker or {}).values())


class ProcessingQueueService:

    def __init__(
        self,
        celery_app:      Celery | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._celery          = celery_app or default_celery_app
        self._session_factory = session_factory

    async def _blocking(self, fn: Callable[[], T]) -> T:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, fn)

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue(self, document_id: uuid.UUID, job_id: uuid.UUID) -> str:
        """Publish one processing message; returns the Celery task id."""
        from studydocs.workers.tasks import process_document

        logger.info("Enqueue | doc=%s job=%s queue=%s", document_id, job_id, PROCESSING_QUEUE)
        result = await self._blocking(
            lambda: process_document.apply_async(
                kwargs={"document_id": str(document_id), "job_id": str(job_id)},
                queue=PROCESSING_QUEUE,
            )
        )
        logger.info("Enqueued | doc=%s job=%s task_id=%s", document_id, job_id, result.id)
        return result.id

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def get_counts(self) -> QueueStats:
        backlog                     = await self._blocking(self._broker_backlog)
        active, reserved, scheduled = await self._blocking(self._worker_counts)
        completed, failed           = await self._job_counts()

        return QueueStats(
            waiting=backlog + reserved,
            active=active,
            completed=completed,
            failed=failed,
            delayed=scheduled,
        )

    def _broker_backlog(self) -> int:
        with self._celery.connection_or_acquire() as conn:
            declared = conn.default_channel.queue_declare(queue=PROCESSING_QUEUE, passive=True)
            return int(declared.message_count)

    def _worker_counts(self) -> tuple[int, int, int]:
        inspector = self._celery.control.inspect(timeout=INSPECT_TIMEOUT_SECONDS)
        return (
            _count_tasks(inspector.active()),
            _count_tasks(inspector.reserved()),
            _count_tasks(inspector.scheduled()),
        )

    async def _job_counts(self) -> tuple[int, int]:
        stmt = (
            select(DocumentProcessingJob.status, func.count())
            .where(DocumentProcessingJob.status.in_([JobStatus.COMPLETED.value, JobStatus.FAILED.value]))
            .group_by(DocumentProcessingJob.status)
        )
        async with session_scope(self._session_factory) as session:
            rows = dict((await session.execute(stmt)).all())
        return (
            int(rows.get(JobStatus.COMPLETED.value, 0)),
            int(rows.get(JobStatus.FAILED.value, 0)),
        )

    # ------------------------------------------------------------------
    # Operational control
    # ------------------------------------------------------------------

    async def pause(self) -> None:
        await self._blocking(lambda: self._celery.control.cancel_consumer(PROCESSING_QUEUE))
        logger.info("Processing queue paused | queue=%s", PROCESSING_QUEUE)

    async def resume(self) -> None:
        await self._blocking(lambda: self._celery.control.add_consumer(PROCESSING_QUEUE))
        logger.info("Processing queue resumed | queue=%s", PROCESSING_QUEUE)
