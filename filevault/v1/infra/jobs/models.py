"""
Job queue models for post-upload processing.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Index,
    Integer,
    SmallInteger,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from filevault.infra.database import Base, UTCDateTime, utcnow
from filevault.v1.files.models import IdType


class JobStatus(str, Enum):
    """Job status enumeration."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    # Reporting only; the queue moves failed attempts to PENDING or DLQ
    FAILED = "failed"
    DLQ = "dlq"


class JobType(str, Enum):
    """Kinds of post-upload processing."""

    OCR = "ocr"
    EMBED = "embed"
    PII_SCAN = "pii_scan"
    REDACT = "redact"
    SUMMARIZE = "summarize"


TERMINAL_STATUSES = (JobStatus.DONE.value, JobStatus.DLQ.value)


class Job(Base):
    """
    Job model for background processing.

    One row per (file, job type). Provides:
    - Worker coordination (locked_by/locked_at while running)
    - Priority ordering and delayed retries via next_attempt_at
    - Optional gating on a single parent job
    - Structured output and dead letter diagnostics
    """

    __tablename__ = "jobs"

    # Core fields
    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(
        IdType, nullable=False, comment="Owning user"
    )
    file_id: Mapped[int] = mapped_column(
        IdType, nullable=False, comment="File this job processes"
    )
    job_type: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Job type: ocr|embed|pii_scan|redact|summarize"
    )

    # Job state
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.PENDING.value,
        comment="Job status: pending|running|done|failed|dlq",
    )
    priority: Mapped[int] = mapped_column(
        SmallInteger,
        nullable=False,
        default=5,
        comment="Priority 1-10, lower is higher priority",
    )
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Number of claims so far"
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=3, comment="Attempts before dead-lettering"
    )
    next_attempt_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Earliest retry time; null means now"
    )

    # Worker coordination
    locked_by: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker ID that claimed the job"
    )
    locked_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="When the job was claimed"
    )

    # Dependencies
    depends_on_job_id: Mapped[int | None] = mapped_column(
        IdType, nullable=True, comment="Job that must be done before this one runs"
    )

    # Payloads and diagnostics
    input_params: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="Handler parameters"
    )
    output_data: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="Handler result or dead letter details"
    )
    error_message: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Last failure"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("file_id", "job_type", name="uq_jobs_file_type"),
        CheckConstraint(
            "status IN ('pending', 'running', 'done', 'failed', 'dlq')",
            name="jobs_status_check",
        ),
        CheckConstraint(
            "job_type IN ('ocr', 'embed', 'pii_scan', 'redact', 'summarize')",
            name="jobs_type_check",
        ),
        CheckConstraint("priority BETWEEN 1 AND 10", name="jobs_priority_check"),
        Index("ix_jobs_status_next_attempt", "status", "next_attempt_at"),
        Index("ix_jobs_status_locked_at", "status", "locked_at"),
        Index("ix_jobs_owner_id", "owner_id"),
        Index("ix_jobs_depends_on", "depends_on_job_id"),
    )

    def is_active(self) -> bool:
        """Check if job is still pending or running."""
        return self.status in (JobStatus.PENDING.value, JobStatus.RUNNING.value)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_retry(self, max_attempts: int | None = None) -> bool:
        """
        Whether another attempt is allowed after the current one fails.

        ``max_attempts`` overrides the stored limit, e.g. with the current
        worker configuration.
        """
        limit = self.max_attempts if max_attempts is None else max_attempts
        return self.attempts < limit

    def is_stuck(self, stale_timeout_s: int, now: datetime | None = None) -> bool:
        """Check if a running job has held its lock past the stale timeout."""
        if self.status != JobStatus.RUNNING.value or not self.locked_at:
            return False
        now = now or utcnow()
        return (now - self.locked_at).total_seconds() > stale_timeout_s

    def __repr__(self) -> str:
        return (
            f"<Job id={self.id} type={self.job_type} status={self.status} "
            f"attempts={self.attempts}/{self.max_attempts}>"
        )
