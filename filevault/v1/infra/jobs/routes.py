"""
Job management API endpoints.

Operator endpoints for creating, inspecting and triaging jobs.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Response, status

from filevault.config.settings import Settings, SettingsDep
from filevault.infra.database import Database, get_database
from filevault.v1.core.exceptions import create_success_response
from filevault.v1.infra.jobs.models import JobStatus, JobType
from filevault.v1.infra.jobs.schemas import (
    JobCreate,
    JobCreateResponse,
    JobListResponse,
    JobResponse,
)
from filevault.v1.infra.jobs.service import JobCreationService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_job_service(
    settings: Settings = SettingsDep,
    database: Database = Depends(get_database),
) -> JobCreationService:
    return JobCreationService(settings, database)


@router.post("", response_model=dict, status_code=status.HTTP_201_CREATED)
async def create_job(
    job_request: JobCreate,
    response: Response,
    job_service: JobCreationService = Depends(get_job_service),
) -> dict[str, Any]:
    """
    Create a job for a file, or return the existing one for the same type.

    Answers 201 when a job was created and 200 when it already existed.
    """
    job_id, created = await job_service.create_or_get_job(
        owner_id=job_request.owner_id,
        file_id=job_request.file_id,
        job_type=job_request.job_type,
        priority=job_request.priority,
        depends_on_job_id=job_request.depends_on_job_id,
        input_params=job_request.input_params,
    )
    job = await job_service.get_job(job_id)

    if not created:
        response.status_code = status.HTTP_200_OK

    logger.info(
        "Job created via API" if created else "Existing job returned via API",
        extra={"job_id": job_id, "job_type": job.job_type, "file_id": job.file_id},
    )

    data = JobCreateResponse(job_id=job_id, status=JobStatus(job.status), created=created)
    return create_success_response(data=data.model_dump(mode="json"))


@router.get("", response_model=dict)
async def list_jobs(
    owner_id: int = Query(..., description="Owning user"),
    status: JobStatus | None = Query(default=None, description="Filter by status"),
    job_type: JobType | None = Query(default=None, description="Filter by job type"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    job_service: JobCreationService = Depends(get_job_service),
) -> dict[str, Any]:
    """List an owner's jobs, newest first."""
    jobs, total = await job_service.list_owner_jobs(
        owner_id, status=status, job_type=job_type, limit=limit, offset=offset
    )

    response_data = JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=total,
        limit=limit,
        offset=offset,
    )
    return create_success_response(data=response_data.model_dump(mode="json"))


@router.get("/dead-letter", response_model=dict)
async def list_dead_letter_jobs(
    owner_id: int | None = Query(default=None, description="Filter by owner"),
    limit: int = Query(default=100, ge=1, le=1000, description="Maximum results"),
    job_service: JobCreationService = Depends(get_job_service),
) -> dict[str, Any]:
    """Dead-lettered jobs awaiting triage."""
    jobs = await job_service.list_dead_letter_jobs(owner_id=owner_id, limit=limit)
    return create_success_response(
        data=[JobResponse.model_validate(job).model_dump(mode="json") for job in jobs]
    )


@router.get("/stats/overview", response_model=dict)
async def get_job_stats(
    job_service: JobCreationService = Depends(get_job_service),
) -> dict[str, Any]:
    """Queue statistics."""
    stats = await job_service.get_job_stats()
    return create_success_response(data=stats.model_dump())


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: int,
    job_service: JobCreationService = Depends(get_job_service),
) -> dict[str, Any]:
    """Get a specific job by ID."""
    job = await job_service.get_job(job_id)
    return create_success_response(
        data=JobResponse.model_validate(job).model_dump(mode="json")
    )
