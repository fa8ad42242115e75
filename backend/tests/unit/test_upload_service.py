"""
Unit Tests — DocumentUploadService
═══════════════════════════════════
Blob storage and the queue are mocks; every session_scope the service opens
receives mock_session through session_factory.

Coverage targets:
  ✅ Happy path: blob upload → document row → job row → enqueue (ids only)
  ✅ Validation: empty, oversized, unsupported MIME / extension, blank filename
  ✅ Job creation failure → document kept, nothing queued
  ✅ Enqueue failure → job failed with a clear message, upload still succeeds
  ✅ reprocess_document creates a new job; missing document → NotFoundError
  ✅ remove_document: blob then row; storage failure or missing blob still removes the row
"""

from __future__ import annotations

import pytest

from studydocs.core.exceptions import EmptyInputError, NotFoundError, ProviderError, ValidationError
from studydocs.models.documents import Document, DocumentProcessingJob, DocumentStatus
from studydocs.services.documents import (
    ENQUEUE_FAILED_MESSAGE,
    DocumentUploadService,
    validate_upload,
)


@pytest.fixture
def service(test_settings, mock_blobs, mock_queue, session_factory) -> DocumentUploadService:
    return DocumentUploadService(test_settings, mock_blobs, mock_queue, session_factory=session_factory)


def _added(mock_session, model) -> list:
    return [c.args[0] for c in mock_session.add.call_args_list if isinstance(c.args[0], model)]


@pytest.fixture
def rows_readable(mock_session):
    """session.get() finds whatever the service has added so far."""
    async def _get(model, ident):
        return next((row for row in _added(mock_session, model) if row.id == ident), None)
    mock_session.get.side_effect = _get


@pytest.mark.unit
@pytest.mark.ingestion
class TestValidateUpload:

    def test_accepts_supported_file(self, sample_txt_bytes):
        validate_upload("notes.txt", sample_txt_bytes, "text/plain", 1024)

    def test_empty_file(self):
        with pytest.raises(EmptyInputError, match="empty"):
            validate_upload("notes.txt", b"", "text/plain", 1024)

    def test_oversized_file(self):
        with pytest.raises(ValidationError, match="exceeds"):
            validate_upload("notes.txt", b"x" * 2048, "text/plain", 1024)

    def test_unsupported_mime(self):
        with pytest.raises(ValidationError, match="Unsupported file type"):
            validate_upload("tool.exe", b"MZ", "application/x-msdownload", 1024)

    def test_extension_must_match_allow_list(self):
        with pytest.raises(ValidationError, match="extension"):
            validate_upload("notes.exe", b"text", "text/plain", 1024)


@pytest.mark.unit
@pytest.mark.ingestion
class TestUploadDocument:

    async def test_happy_path(self, service, mock_blobs, mock_queue, mock_session, project_id, sample_txt_bytes):
        result = await service.upload_document(project_id, "biology notes.txt", sample_txt_bytes, "text/plain")

        document = result.document
        assert document.status == DocumentStatus.PENDING.value
        assert document.name == "biology notes.txt"
        assert document.file_size == len(sample_txt_bytes)
        assert document.storage_path.startswith(f"projects/{project_id}/")
        mock_blobs.upload.assert_awaited_once_with(
            sample_txt_bytes, f"projects/{project_id}", "biology notes.txt", "text/plain",
        )

        jobs = _added(mock_session, DocumentProcessingJob)
        assert len(jobs) == 1
        assert jobs[0].document_id == document.id
        assert result.job_id == jobs[0].id
        assert result.task_id == "task-123"
        assert result.queued is True
        mock_queue.enqueue.assert_awaited_once_with(document.id, jobs[0].id)

    async def test_document_row_committed_before_enqueue(self, service, session_factory, mock_queue, project_id):
        async def _enqueue(document_id, job_id):
            # document scope + job scope already closed
            assert session_factory.calls == 2
            return "task-1"

        mock_queue.enqueue.side_effect = _enqueue

        await service.upload_document(project_id, "a.md", b"# Title", "text/markdown")

    async def test_path_components_stripped_from_name(self, service, project_id):
        result = await service.upload_document(project_id, "C:\\Users\\me\\lecture.pdf", b"%PDF", "application/pdf")
        assert result.document.name == "lecture.pdf"

    async def test_blank_filename_rejected(self, service, mock_blobs, project_id):
        with pytest.raises(ValidationError, match="Filename cannot be empty"):
            await service.upload_document(project_id, "   ", b"data", "text/plain")
        mock_blobs.upload.assert_not_awaited()

    async def test_invalid_file_never_reaches_storage(self, service, mock_blobs, mock_session, project_id):
        with pytest.raises(ValidationError):
            await service.upload_document(project_id, "virus.exe", b"MZ", "application/x-msdownload")
        mock_blobs.upload.assert_not_awaited()
        mock_session.add.assert_not_called()

    async def test_job_creation_failure_is_not_fatal(self, service, mock_session, mock_queue, project_id):
        mock_session.flush.side_effect = [None, RuntimeError("jobs table locked")]

        result = await service.upload_document(project_id, "a.txt", b"some text", "text/plain")

        assert result.document.name == "a.txt"
        assert result.job_id is None
        assert result.queued is False
        mock_queue.enqueue.assert_not_awaited()

    async def test_enqueue_failure_fails_job(self, service, mock_queue, mock_session, rows_readable, project_id):
        mock_queue.enqueue.side_effect = ConnectionError("broker down")

        result = await service.upload_document(project_id, "a.txt", b"some text", "text/plain")

        assert result.job_id is not None
        assert result.queued is False
        job = _added(mock_session, DocumentProcessingJob)[0]
        assert job.status == "failed"
        assert job.error_message == ENQUEUE_FAILED_MESSAGE


@pytest.mark.unit
@pytest.mark.ingestion
class TestReprocessDocument:

    async def test_creates_new_job_and_enqueues(self, service, mock_session, mock_queue, document_id, project_id):
        mock_session.get.return_value = Document(
            id=document_id, project_id=project_id, name="a.txt", storage_path="projects/p/a.txt",
            mime_type="text/plain", file_size=9, status=DocumentStatus.FAILED.value,
        )

        result = await service.reprocess_document(document_id)

        assert result.document.id == document_id
        assert result.queued is True
        job = _added(mock_session, DocumentProcessingJob)[0]
        assert job.document_id == document_id
        mock_queue.enqueue.assert_awaited_once_with(document_id, job.id)

    async def test_missing_document(self, service, mock_queue, document_id):
        with pytest.raises(NotFoundError):
            await service.reprocess_document(document_id)
        mock_queue.enqueue.assert_not_awaited()


@pytest.mark.unit
@pytest.mark.ingestion
class TestRemoveDocument:

    @pytest.fixture
    def stored_document(self, mock_session, document_id, project_id) -> Document:
        document = Document(
            id=document_id, project_id=project_id, name="a.txt", storage_path="projects/p/a.txt",
            mime_type="text/plain", file_size=9, status=DocumentStatus.COMPLETED.value,
        )
        mock_session.get.return_value = document
        mock_session.execute.return_value.scalar_one.return_value = 4
        return document

    async def test_deletes_blob_then_row(self, service, stored_document, mock_blobs, mock_session, document_id):
        removed = await service.remove_document(document_id)

        assert removed is stored_document
        mock_blobs.exists.assert_awaited_once_with("projects/p/a.txt")
        mock_blobs.delete.assert_awaited_once_with("projects/p/a.txt")
        mock_session.delete.assert_awaited_once_with(stored_document)

    async def test_storage_failure_still_removes_row(self, service, stored_document, mock_blobs, mock_session,
                                                     document_id, caplog):
        mock_blobs.delete.side_effect = ProviderError("S3 delete failed: AccessDenied")

        with caplog.at_level("ERROR", logger="studydocs.services.documents"):
            await service.remove_document(document_id)

        mock_session.delete.assert_awaited_once_with(stored_document)
        assert "Blob delete failed" in caplog.text

    async def test_missing_blob_skips_storage_delete(self, service, stored_document, mock_blobs, mock_session,
                                                     document_id):
        mock_blobs.exists.return_value = False

        await service.remove_document(document_id)

        mock_blobs.delete.assert_not_awaited()
        mock_session.delete.assert_awaited_once_with(stored_document)

    async def test_missing_document(self, service, mock_blobs, mock_session, document_id):
        with pytest.raises(NotFoundError):
            await service.remove_document(document_id)
        mock_blobs.exists.assert_not_awaited()
        mock_blobs.delete.assert_not_awaited()
        mock_session.delete.assert_not_awaited()
