"""
Processing Queue API Router (operations)

  GET  /api/v1/queue/stats    waiting / active / completed / failed / delayed / total
  POST /api/v1/queue/pause    workers stop consuming documents.processing
  POST /api/v1/queue/resume   workers consume it again
"""

from __future__ import annotations

from fastapi import APIRouter

from studydocs.api.dependencies import QueueService
from studydocs.schemas.documents import QueueStateResponse, QueueStatsResponse
from studydocs.workers.celery_app import PROCESSING_QUEUE

router = APIRouter(prefix="/queue", tags=["Operations"])


@router.get("/stats", response_model=QueueStatsResponse)
async def queue_stats(queue: QueueService) -> QueueStatsResponse:
    stats = await queue.get_counts()
    return QueueStatsResponse(**stats.as_dict())


@router.post("/pause", response_model=QueueStateResponse)
async def pause_queue(queue: QueueService) -> QueueStateResponse:
    await queue.pause()
    return QueueStateResponse(queue=PROCESSING_QUEUE, paused=True)


@router.post("/resume", response_model=QueueStateResponse)
async def resume_queue(queue: QueueService) -> QueueStateResponse:
    await queue.resume()
    return QueueStateResponse(queue=PROCESSING_QUEUE, paused=False)
