"""
Processing Jobs API Router

  GET  /api/v1/jobs/{job_id}            full job row
  GET  /api/v1/jobs/{job_id}/progress   progress / current_step / status
  POST /api/v1/jobs/{job_id}/cancel     pending or processing → cancelled (409 otherwise)

A cancelled job that is already running stops at its next checkpoint.
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter

from studydocs.api.dependencies import DB
from studydocs.jobs.service import ProcessingJobService
from studydocs.schemas.documents import ErrorResponse, JobProgressResponse, JobResponse

router = APIRouter(prefix="/jobs", tags=["Processing Jobs"])


@router.get("/{job_id}", response_model=JobResponse, responses={404: {"model": ErrorResponse}})
async def get_job(job_id: UUID, db: DB) -> JobResponse:
    job = await ProcessingJobService(db).get(job_id)
    return JobResponse.model_validate(job)


@router.get(
    "/{job_id}/progress",
    response_model=JobProgressResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_job_progress(job_id: UUID, db: DB) -> JobProgressResponse:
    progress = await ProcessingJobService(db).get_progress(job_id)
    return JobProgressResponse.model_validate(progress)


@router.post(
    "/{job_id}/cancel",
    response_model=JobResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def cancel_job(job_id: UUID, db: DB) -> JobResponse:
    job = await ProcessingJobService(db).cancel(job_id)
    return JobResponse.model_validate(job)
