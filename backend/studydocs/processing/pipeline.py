"""
Document Processing Pipeline  —  One Document, One Queue Delivery
═════════════════════════════════════════════════════════════════

Entry point: DocumentProcessor.process_document(document_id, job_id)

Steps and progress checkpoints
──────────────────────────────
   1. start job (PENDING → PROCESSING)              5   Loading document
   2. fetch Document, mark it processing
   3. download bytes from the blob store           10   Downloading file from storage
   4. extract text (fails on empty text)           20   Extracting text from document
   5. chunk (1000 / 200 / paragraphs / sentences)  40   Chunking document text
   6. embed all chunks in batches                  50   Generating embeddings for N chunks
   7. replace the document's chunks                80   Saving chunks to database
   8. Document → completed                         95   Finalizing
   9. job → completed                             100

State
─────
  An immutable JobContext is threaded through the step methods; each step
  returns an updated copy. The store is the only thing with side effects.

Cancellation
────────────
  Before every checkpoint the job status is re-read. A CANCELLED job stops
  the run with JobCancelledError: the document status is restored, the job
  is left CANCELLED and nothing is re-raised to the queue.

Failure
───────
  Any other exception is caught once: job → FAILED (message + traceback),
  Document → failed, then re-raised so the queue's retry policy decides.
  No retries happen here.

Redelivery
──────────
  Step 7 deletes the document's chunks before inserting, in one
  transaction, so a re-run never duplicates chunks.
"""

from __future__ import annotations

import logging
import traceback
import uuid
from collections import defaultdict, deque
from dataclasses import asdict, dataclass, replace
from typing import Optional

from studydocs.core.config import Settings
from studydocs.core.exceptions import InvalidTransitionError, JobCancelledError, ValidationError
from studydocs.jobs.state import JobStatus
from studydocs.models.documents import Document, DocumentStatus
from studydocs.processing.chunking import ChunkOptions, TextChunk, TextChunker
from studydocs.processing.embeddings import BatchEmbeddingResult, EmbeddingService, EmbeddingVector
from studydocs.processing.extractor import ExtractionResult, TextExtractionService
from studydocs.processing.store import ProcessingStore
from studydocs.repositories.chunks import ChunkRecord
from studydocs.storage.blob import BlobStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Checkpoints
# ---------------------------------------------------------------------------

PROGRESS_STARTED    = 5
PROGRESS_DOWNLOAD   = 10
PROGRESS_EXTRACT    = 20
PROGRESS_CHUNK      = 40
PROGRESS_EMBED      = 50
PROGRESS_PERSIST    = 80
PROGRESS_FINALIZE   = 95
PROGRESS_COMPLETE   = 100

STEP_STARTED  = "Loading document"
STEP_DOWNLOAD = "Downloading file from storage"
STEP_EXTRACT  = "Extracting text from document"
STEP_CHUNK    = "Chunking document text"
STEP_PERSIST  = "Saving chunks to database"
STEP_FINALIZE = "Finalizing"


def embed_step_label(chunk_count: int) -> str:
    return f"Generating embeddings for {chunk_count} chunks"


PIPELINE_CHUNK_OPTIONS = ChunkOptions(
    max_chunk_size=1000,
    overlap=200,
    preserve_paragraphs=True,
    preserve_sentences=True,
)


# ---------------------------------------------------------------------------
# Context and result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class JobContext:
    job_id:          uuid.UUID
    document_id:     uuid.UUID
    progress:        int                               = 0
    current_step:    Optional[str]                     = None
    document:        Optional[Document]                = None
    previous_status: Optional[str]                     = None
    data:            Optional[bytes]                   = None
    extraction:      Optional[ExtractionResult]        = None
    chunks:          tuple[TextChunk, ...]             = ()
    embeddings:      Optional[BatchEmbeddingResult]    = None
    persisted:       int                               = 0
    failed_chunks:   int                               = 0

    def at(self, progress: int, step: Optional[str]) -> "JobContext":
        return replace(self, progress=progress, current_step=step)


@dataclass
class ProcessingSummary:
    document_id:   str
    status:        str      # "completed" | "cancelled"
    chunks:        int      # persisted chunks
    failed_chunks: int
    method:        Optional[str]
    char_count:    int

    def as_dict(self) -> dict:
        return asdict(self)


def match_embeddings(
    chunks:     tuple[TextChunk, ...] | list[TextChunk],
    embeddings: list[EmbeddingVector],
) -> list[tuple[TextChunk, EmbeddingVector]]:
    """
    Pair chunks with vectors by source text equality. Identical chunk
    contents consume vectors in order, so each vector is used once.
    """
    by_text: dict[str, deque[EmbeddingVector]] = defaultdict(deque)
    for vector in embeddings:
        by_text[vector.source_text].append(vector)

    pairs = []
    for chunk in chunks:
        queue = by_text.get(chunk.content)
        if queue:
            pairs.append((chunk, queue.popleft()))
    return pairs


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class DocumentProcessor:
    """
    Usage (inside the Celery task):
        processor = DocumentProcessor.from_settings(settings)
        summary   = await processor.process_document(document_id, job_id)
    """

    def __init__(
        self,
        settings:  Settings,
        store:     ProcessingStore,
        blobs:     BlobStore,
        extractor: TextExtractionService,
        embedder:  EmbeddingService,
        chunker:   TextChunker | None = None,
    ) -> None:
        self._settings  = settings
        self._store     = store
        self._blobs     = blobs
        self._extractor = extractor
        self._embedder  = embedder
        self._chunker   = chunker or TextChunker()

    @classmethod
    def from_settings(cls, settings: Settings) -> "DocumentProcessor":
        return cls(
            settings=settings,
            store=ProcessingStore(),
            blobs=BlobStore(settings),
            extractor=TextExtractionService(settings),
            embedder=EmbeddingService(settings),
        )

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def process_document(self, document_id: uuid.UUID, job_id: uuid.UUID) -> ProcessingSummary:
        logger.info("Processing start | document=%s job=%s", document_id, job_id)
        ctx = JobContext(job_id=job_id, document_id=document_id)

        try:
            ctx = await self._start(ctx)
            ctx = await self._load_document(ctx)
            ctx = await self._download(ctx)
            ctx = await self._extract(ctx)
            ctx = await self._chunk(ctx)
            ctx = await self._embed(ctx)
            ctx = await self._persist(ctx)
            ctx = await self._finalize(ctx)
        except JobCancelledError:
            await self._on_cancelled(ctx)
            return self._summary(ctx, status=JobStatus.CANCELLED.value)
        except Exception as exc:
            await self._on_failure(ctx, exc)
            raise

        logger.info(
            "Processing done | document=%s job=%s chunks=%d failed=%d method=%s",
            document_id, job_id, ctx.persisted, ctx.failed_chunks,
            ctx.extraction.method if ctx.extraction else None,
        )
        return self._summary(ctx, status=JobStatus.COMPLETED.value)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _start(self, ctx: JobContext) -> JobContext:
        try:
            await self._store.start_job(ctx.job_id)
        except InvalidTransitionError as exc:
            if await self._store.job_status(ctx.job_id) is JobStatus.CANCELLED:
                raise JobCancelledError(ctx.job_id) from exc
            raise
        return await self._checkpoint(ctx, PROGRESS_STARTED, STEP_STARTED)

    async def _load_document(self, ctx: JobContext) -> JobContext:
        document = await self._store.get_document(ctx.document_id)
        previous = document.status
        logger.info("Processing document | document=%s name=%s", document.id, document.name)
        await self._store.set_document_status(ctx.document_id, DocumentStatus.PROCESSING)
        return replace(ctx, document=document, previous_status=previous)

    async def _download(self, ctx: JobContext) -> JobContext:
        ctx  = await self._checkpoint(ctx, PROGRESS_DOWNLOAD, STEP_DOWNLOAD)
        data = await self._blobs.download(ctx.document.storage_path)
        return replace(ctx, data=data)

    async def _extract(self, ctx: JobContext) -> JobContext:
        ctx = await self._checkpoint(ctx, PROGRESS_EXTRACT, STEP_EXTRACT)
        result = await self._extractor.extract(ctx.data, ctx.document.name, ctx.document.mime_type)
        if not result.text or not result.text.strip():
            raise ValidationError("No text could be extracted from document")
        if not TextExtractionService.is_text_valid(result.text):
            # Low-quality text still gets chunked; the warning flags it for review.
            logger.warning(
                "Extracted text looks low quality | document=%s method=%s chars=%d",
                ctx.document_id, result.method, len(result.text),
            )

        logger.info(
            "Text extracted | document=%s method=%s chars=%d",
            ctx.document_id, result.method, len(result.text),
        )
        return replace(ctx, extraction=result, data=None)

    async def _chunk(self, ctx: JobContext) -> JobContext:
        ctx    = await self._checkpoint(ctx, PROGRESS_CHUNK, STEP_CHUNK)
        chunks = self._chunker.chunk_text(ctx.extraction.text, PIPELINE_CHUNK_OPTIONS)
        await self._store.set_total_chunks(ctx.job_id, len(chunks))
        logger.info("Document chunked | document=%s chunks=%d", ctx.document_id, len(chunks))
        return replace(ctx, chunks=tuple(chunks))

    async def _embed(self, ctx: JobContext) -> JobContext:
        ctx = await self._checkpoint(ctx, PROGRESS_EMBED, embed_step_label(len(ctx.chunks)))
        result = await self._embedder.generate_embeddings_batch(
            [c.content for c in ctx.chunks],
            batch_size=self._settings.processing_batch_size,
        )
        if len(result.embeddings) != len(ctx.chunks):
            logger.warning(
                "Embedding count mismatch | document=%s embeddings=%d chunks=%d",
                ctx.document_id, len(result.embeddings), len(ctx.chunks),
            )
        return replace(ctx, embeddings=result)

    async def _persist(self, ctx: JobContext) -> JobContext:
        ctx   = await self._checkpoint(ctx, PROGRESS_PERSIST, STEP_PERSIST)
        pairs = match_embeddings(ctx.chunks, ctx.embeddings.embeddings)

        records = [
            ChunkRecord(
                content=chunk.content,
                embedding=vector.values,
                metadata={
                    **chunk.metadata,
                    "extraction_method": ctx.extraction.method,
                    "chunk_index":       chunk.index,
                    "start_position":    chunk.start_position,
                    "end_position":      chunk.end_position,
                },
            )
            for chunk, vector in pairs
        ]
        persisted = await self._store.replace_chunks(ctx.document_id, records)
        failed    = len(ctx.chunks) - len(records)
        await self._store.set_processed_chunks(ctx.job_id, persisted)

        if failed:
            logger.warning(
                "Chunks skipped without embedding | document=%s skipped=%d", ctx.document_id, failed,
            )
        return replace(ctx, persisted=persisted, failed_chunks=failed)

    async def _finalize(self, ctx: JobContext) -> JobContext:
        ctx = await self._checkpoint(ctx, PROGRESS_FINALIZE, STEP_FINALIZE)
        await self._store.set_document_status(ctx.document_id, DocumentStatus.COMPLETED)
        await self._store.complete_job(ctx.job_id)
        return ctx.at(PROGRESS_COMPLETE, ctx.current_step)

    # ------------------------------------------------------------------
    # Checkpoints, cancellation and failure
    # ------------------------------------------------------------------

    async def _checkpoint(self, ctx: JobContext, progress: int, step: str) -> JobContext:
        status = await self._store.job_status(ctx.job_id)
        if status is JobStatus.CANCELLED:
            raise JobCancelledError(ctx.job_id)
        try:
            await self._store.update_progress(ctx.job_id, progress, step)
        except InvalidTransitionError as exc:
            # cancelled between the status read and the write
            if await self._store.job_status(ctx.job_id) is JobStatus.CANCELLED:
                raise JobCancelledError(ctx.job_id) from exc
            raise
        logger.info("Job progress | job=%s progress=%d step=%s", ctx.job_id, progress, step)
        return ctx.at(progress, step)

    async def _on_cancelled(self, ctx: JobContext) -> None:
        logger.info(
            "Processing cancelled | document=%s job=%s at_progress=%d",
            ctx.document_id, ctx.job_id, ctx.progress,
        )
        if ctx.previous_status is not None:
            await self._store.set_document_status(ctx.document_id, DocumentStatus(ctx.previous_status))

    async def _on_failure(self, ctx: JobContext, exc: Exception) -> None:
        message = str(exc) or type(exc).__name__
        logger.error(
            "Processing failed | document=%s job=%s error=%s",
            ctx.document_id, ctx.job_id, message, exc_info=exc,
        )
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))

        try:
            await self._store.fail_job(ctx.job_id, message, stack)
        except Exception as record_exc:
            logger.error("Could not record job failure | job=%s error=%s", ctx.job_id, record_exc)

        try:
            await self._store.set_document_status(ctx.document_id, DocumentStatus.FAILED)
        except Exception as record_exc:
            logger.error(
                "Could not mark document failed | document=%s error=%s", ctx.document_id, record_exc,
            )

    @staticmethod
    def _summary(ctx: JobContext, *, status: str) -> ProcessingSummary:
        return ProcessingSummary(
            document_id=str(ctx.document_id),
            status=status,
            chunks=ctx.persisted,
            failed_chunks=ctx.failed_chunks,
            method=ctx.extraction.method if ctx.extraction else None,
            char_count=len(ctx.extraction.text) if ctx.extraction else 0,
        )
