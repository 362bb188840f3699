"""
Endpoints for tracking, resuming and deleting ingestion jobs.
"""
import queue
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from hirextra.api.dependencies import IngestionServices, get_services
from hirextra.api.schemas.shared import (
    DeleteJobResponse,
    JobListResponse,
    JobStatusResponse,
    JobSummary,
    ResumeRequest,
    ResumeResponse,
)
from hirextra.db.models import IngestionJob, JobStatus
from hirextra.domain.ingestion.errors import JobAlreadyQueuedError, JobNotFoundError
from hirextra.domain.ingestion.jobs import RESUMABLE_STATUSES

router = APIRouter(tags=["jobs"])

RECENT_JOBS_LIMIT = 100


def _get_job(services: IngestionServices, job_id: str) -> IngestionJob:
    try:
        return services.jobs.get(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")


@router.get("/jobs/{job_id}/status", response_model=JobStatusResponse)
async def get_job_status_endpoint(job_id: str, services: IngestionServices = Depends(get_services)):
    job = _get_job(services, job_id)
    return JobStatusResponse(
        job_id=job.id,
        status=job.status,
        total_rows=job.total_rows or 0,
        success_rows=job.success_rows or 0,
        failed_rows=job.failed_rows or 0,
        started_at=job.started_at,
        completed_at=job.completed_at,
        error=job.error,
        failure_reasons=job.failure_reasons or {},
        excess_failure_count=job.excess_failure_count or 0,
    )


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs_endpoint(services: IngestionServices = Depends(get_services)):
    jobs = services.jobs.list_recent(RECENT_JOBS_LIMIT)
    return JobListResponse(
        jobs=[
            JobSummary(
                id=job.id,
                original_name=job.original_name,
                storage_key=job.storage_key,
                status=job.status,
                total_rows=job.total_rows or 0,
                success_rows=job.success_rows or 0,
                failed_rows=job.failed_rows or 0,
                created_at=job.created_at,
                completed_at=job.completed_at,
            )
            for job in jobs
        ],
        total_count=len(jobs),
    )


@router.post("/jobs/{job_id}/resume", response_model=ResumeResponse)
async def resume_job_endpoint(
    job_id: str,
    request: Optional[ResumeRequest] = None,
    services: IngestionServices = Depends(get_services),
):
    """
    Restart a failed or interrupted job.

    The file is read again from the start with counters seeded from the
    previous run; ``fastForward`` skips the rows that run already accounted for.
    """
    job = _get_job(services, job_id)
    if job.status not in RESUMABLE_STATUSES:
        raise HTTPException(status_code=409, detail=f"Job in status {job.status} cannot be resumed")

    fast_forward = request.fast_forward if request else False
    try:
        services.runner.submit_process(job_id, resume=True, fast_forward=fast_forward)
    except JobAlreadyQueuedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except queue.Full:
        raise HTTPException(status_code=503, detail="Ingestion queue is full; try again later")

    return ResumeResponse(job_id=job_id, resume_from=job.rows_accounted)


@router.delete("/jobs/{job_id}", response_model=DeleteJobResponse)
async def delete_job_endpoint(job_id: str, services: IngestionServices = Depends(get_services)):
    """Mark a job DELETED and soft-delete its records in the background."""
    _get_job(services, job_id)
    services.jobs.transition(job_id, JobStatus.DELETED)
    try:
        services.runner.submit_purge(job_id)
    except queue.Full:
        raise HTTPException(status_code=503, detail="Job deleted but record purge could not be queued")

    return DeleteJobResponse(
        job_id=job_id,
        status=JobStatus.DELETED,
        message="Job deleted; its records are being removed",
    )
