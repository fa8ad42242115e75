"""
Unit Tests — Celery task + ProcessingQueueService
══════════════════════════════════════════════════
No broker is contacted: the Celery app is a MagicMock where the service
talks to it, and apply_async is patched for enqueue.

Coverage targets:
  ✅ process_document retry policy: 3 attempts, backoff, late ack
  ✅ process_document_async: skip cancelled/finished, run pending job
  ✅ run_async disposes the engine even when the coroutine raises
  ✅ enqueue publishes ids (never file bytes) to documents.processing
  ✅ get_counts: broker backlog + worker inspect + job table
  ✅ pause / resume target the processing queue
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from studydocs.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from studydocs.jobs.state import JobStatus, JobType
from studydocs.models.documents import DocumentProcessingJob
from studydocs.processing.pipeline import DocumentProcessor, ProcessingSummary
from studydocs.workers import tasks
from studydocs.workers.celery_app import PROCESSING_QUEUE
from studydocs.workers.queue import ProcessingQueueService, QueueStats


@pytest.fixture
def patched_scope(monkeypatch, session_factory):
    monkeypatch.setattr(tasks, "session_scope", lambda factory=None: session_factory())
    return session_factory


def _job(job_id, document_id, status: JobStatus) -> DocumentProcessingJob:
    return DocumentProcessingJob(
        id=job_id, document_id=document_id, type=JobType.FULL_PROCESS.value, status=status.value, progress=0,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Task definition
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.queue
class TestProcessDocumentTask:

    def test_retry_policy(self):
        task = tasks.process_document
        assert task.max_retries == 2
        assert task.acks_late is True
        assert task.reject_on_worker_lost is True
        assert ProviderError in task.autoretry_for
        for error in (ValidationError, NotFoundError, InvalidTransitionError):
            assert error in tasks.NON_RETRYABLE_ERRORS
            assert not issubclass(error, tasks.RETRYABLE_ERRORS)

    def test_run_async_disposes_engine(self, monkeypatch):
        dispose = AsyncMock()
        monkeypatch.setattr(tasks, "dispose_engine", dispose)

        async def _boom():
            raise ProviderError("down")

        with pytest.raises(ProviderError):
            tasks.run_async(_boom())
        dispose.assert_awaited_once()

    @pytest.mark.parametrize("status", [JobStatus.CANCELLED, JobStatus.COMPLETED])
    async def test_skips_cancelled_or_finished_job(self, patched_scope, mock_session, document_id, job_id, status):
        mock_session.get.return_value = _job(job_id, document_id, status)
        processor = MagicMock(spec=DocumentProcessor)

        result = await tasks.process_document_async(document_id, job_id, processor=processor)

        assert result == {"status": "skipped", "document_id": str(document_id), "job_id": str(job_id)}
        processor.process_document.assert_not_awaited()

    async def test_runs_pending_job(self, patched_scope, mock_session, document_id, job_id):
        mock_session.get.return_value = _job(job_id, document_id, JobStatus.PENDING)
        processor = MagicMock(spec=DocumentProcessor)
        processor.process_document.return_value = ProcessingSummary(
            document_id=str(document_id), status="completed", chunks=4, failed_chunks=0,
            method="plain", char_count=1200,
        )

        result = await tasks.process_document_async(document_id, job_id, attempt=2, processor=processor)

        processor.process_document.assert_awaited_once_with(document_id, job_id)
        assert result["status"] == "completed"
        assert result["chunks"] == 4
        assert result["job_id"] == str(job_id)


# ─────────────────────────────────────────────────────────────────────────────
# Queue service
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def celery_mock() -> MagicMock:
    celery = MagicMock()
    conn = celery.connection_or_acquire.return_value.__enter__.return_value
    conn.default_channel.queue_declare.return_value.message_count = 3
    inspector = celery.control.inspect.return_value
    inspector.active.return_value    = {"worker-1": [{"id": "a"}]}
    inspector.reserved.return_value  = {"worker-1": [{"id": "r1"}], "worker-2": [{"id": "r2"}]}
    inspector.scheduled.return_value = None
    return celery


@pytest.mark.unit
@pytest.mark.queue
class TestProcessingQueueService:

    async def test_enqueue_publishes_ids(self, monkeypatch, document_id, job_id):
        apply_async = MagicMock(return_value=MagicMock(id="task-42"))
        monkeypatch.setattr(tasks.process_document, "apply_async", apply_async)

        task_id = await ProcessingQueueService(celery_app=MagicMock()).enqueue(document_id, job_id)

        assert task_id == "task-42"
        apply_async.assert_called_once_with(
            kwargs={"document_id": str(document_id), "job_id": str(job_id)},
            queue=PROCESSING_QUEUE,
        )

    async def test_get_counts(self, celery_mock, session_factory, mock_session):
        mock_session.execute.return_value.all.return_value = [("completed", 7), ("failed", 2)]

        stats = await ProcessingQueueService(celery_mock, session_factory).get_counts()

        assert stats == QueueStats(waiting=5, active=1, completed=7, failed=2, delayed=0)
        assert stats.total == 15
        assert stats.as_dict()["total"] == 15
        celery_mock.connection_or_acquire.return_value.__enter__.return_value \
            .default_channel.queue_declare.assert_called_once_with(queue=PROCESSING_QUEUE, passive=True)

    async def test_get_counts_with_no_workers(self, celery_mock, session_factory):
        inspector = celery_mock.control.inspect.return_value
        inspector.active.return_value = inspector.reserved.return_value = None

        stats = await ProcessingQueueService(celery_mock, session_factory).get_counts()

        assert (stats.waiting, stats.active, stats.completed, stats.failed) == (3, 0, 0, 0)

    async def test_pause_and_resume(self, celery_mock):
        service = ProcessingQueueService(celery_mock)

        await service.pause()
        await service.resume()

        celery_mock.control.cancel_consumer.assert_called_once_with(PROCESSING_QUEUE)
        celery_mock.control.add_consumer.assert_called_once_with(PROCESSING_QUEUE)
