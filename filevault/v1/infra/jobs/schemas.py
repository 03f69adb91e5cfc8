"""
Job system Pydantic schemas.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from filevault.v1.infra.jobs.models import JobStatus, JobType


class JobCreate(BaseModel):
    """Schema for creating a job via the API."""

    owner_id: int = Field(..., description="Owning user")
    file_id: int = Field(..., description="File to process")
    job_type: JobType = Field(..., description="Job type")
    priority: int | None = Field(
        default=None, ge=1, le=10, description="Priority (1=highest, 10=lowest)"
    )
    depends_on_job_id: int | None = Field(
        default=None, description="Job that must finish first"
    )
    input_params: dict[str, Any] | None = Field(
        default=None, description="Handler parameters"
    )


class JobResponse(BaseModel):
    """Schema for job API responses."""

    id: int
    owner_id: int
    file_id: int
    job_type: str
    status: str
    priority: int
    attempts: int
    max_attempts: int
    next_attempt_at: datetime | None = None

    # Worker coordination
    locked_by: str | None = None
    locked_at: datetime | None = None

    depends_on_job_id: int | None = None

    # Payloads
    input_params: dict[str, Any] | None = None
    output_data: dict[str, Any] | None = None
    error_message: str | None = None

    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None

    class Config:
        from_attributes = True


class JobListResponse(BaseModel):
    """Schema for job list API response."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int


class JobCreateResponse(BaseModel):
    """Schema for job creation response."""

    job_id: int
    status: JobStatus
    created: bool = True


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    total_jobs: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    queue_depth: int  # pending + running
    dead_letter: int
    stuck_jobs: int
