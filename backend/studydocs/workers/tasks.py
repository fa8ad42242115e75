"""
Celery Tasks — Document Processing

Task: process_document(document_id, job_id)
  1. Resolve the job row for this delivery (ProcessingJobService.claim_for_delivery):
       pending job        → run it
       cancelled / done   → skip
       failed / stale     → run a fresh attempt row (history preserved)
  2. Run DocumentProcessor.process_document
  3. Return the ProcessingSummary as a JSON-able dict

Retry policy (queue-owned; the pipeline never retries internally):
  attempts  = PROCESSING_MAX_ATTEMPTS (3)  → max_retries = 2
  backoff   = PROCESSING_BACKOFF_SECONDS × 2^n  (5 s, 10 s)
  retried   : ProviderError, OSError, SQLAlchemyError
  not retried: ValidationError, NotFoundError, InvalidTransitionError
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from celery import Task
from sqlalchemy.exc import SQLAlchemyError

from studydocs.core.config import get_settings
from studydocs.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from studydocs.db.session import dispose_engine, session_scope
from studydocs.jobs.service import ProcessingJobService
from studydocs.processing.pipeline import DocumentProcessor
from studydocs.workers.celery_app import PROCESS_DOCUMENT_TASK, celery_app

logger = logging.getLogger(__name__)

_settings = get_settings()

RETRYABLE_ERRORS     = (ProviderError, OSError, SQLAlchemyError)
NON_RETRYABLE_ERRORS = (ValidationError, NotFoundError, InvalidTransitionError)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """
    Execute a coroutine from a synchronous Celery task on a fresh event loop.

    The SQLAlchemy engine's pooled connections belong to the loop that
    opened them, so the engine is disposed before the loop closes.
    """
    async def _wrapped():
        try:
            return await coro
        finally:
            await dispose_engine()

    return asyncio.run(_wrapped())


# ---------------------------------------------------------------------------
# Main processing task
# ---------------------------------------------------------------------------

@celery_app.task(
    name=PROCESS_DOCUMENT_TASK,
    bind=True,
    autoretry_for=RETRYABLE_ERRORS,
    dont_autoretry_for=NON_RETRYABLE_ERRORS,
    max_retries=_settings.processing_max_attempts - 1,
    retry_backoff=_settings.processing_backoff_seconds,
    retry_backoff_max=600,
    retry_jitter=False,
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_document(self: Task, *, document_id: str, job_id: str) -> dict[str, Any]:
    """Full pipeline for one document: extract → chunk → embed → persist."""
    return run_async(
        process_document_async(
            document_id=uuid.UUID(document_id),
            job_id=uuid.UUID(job_id),
            attempt=self.request.retries + 1,
        )
    )


async def process_document_async(
    document_id: uuid.UUID,
    job_id:      uuid.UUID,
    attempt:     int = 1,
    processor:   DocumentProcessor | None = None,
) -> dict[str, Any]:
    logger.info("Delivery | doc=%s job=%s attempt=%d", document_id, job_id, attempt)

    async with session_scope() as session:
        job = await ProcessingJobService(session).claim_for_delivery(job_id)

    if job is None:
        return {"status": "skipped", "document_id": str(document_id), "job_id": str(job_id)}

    processor = processor or DocumentProcessor.from_settings(get_settings())
    summary   = await processor.process_document(document_id, job.id)
    return {**summary.as_dict(), "job_id": str(job.id)}
