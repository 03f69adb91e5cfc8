"""
Job service for creating and inspecting background jobs.
"""

import asyncio
import fnmatch
import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import desc, func, select
from sqlalchemy.exc import IntegrityError

from filevault.config.settings import Settings
from filevault.infra.database import Database, utcnow
from filevault.v1.core.exceptions import NotFoundError, ValidationError
from filevault.v1.files.models import FileRecord
from filevault.v1.infra.jobs.errors import JobCreationError
from filevault.v1.infra.jobs.models import Job, JobStatus, JobType
from filevault.v1.infra.jobs.repository import JobRepository
from filevault.v1.infra.jobs.schemas import JobStatsResponse

logger = logging.getLogger(__name__)


def matches_content_type(content_type: str | None, patterns: list[str]) -> bool:
    """Match a MIME type against patterns such as ``application/pdf`` or ``image/*``."""
    if not content_type:
        return False
    content_type = content_type.split(";", 1)[0].strip().lower()
    return any(fnmatch.fnmatchcase(content_type, p.lower()) for p in patterns)


class JobCreationService:
    """
    Creates jobs idempotently: one job per (file, job type).

    Each step runs in its own transaction via Database.transaction(), so a
    failed insert never poisons the caller's transaction and the winner of a
    concurrent insert race can be read back cleanly.
    """

    def __init__(
        self,
        settings: Settings,
        database: Database,
        repository: JobRepository | None = None,
    ):
        self.settings = settings
        self.database = database
        self.repository = repository or JobRepository()

    async def create_job(
        self,
        owner_id: int,
        file_id: int,
        job_type: JobType | str,
        priority: int | None = None,
        depends_on_job_id: int | None = None,
        input_params: dict[str, Any] | None = None,
    ) -> int:
        """Create a job for a file, or return the existing one. Returns the job id."""
        job_id, _ = await self.create_or_get_job(
            owner_id,
            file_id,
            job_type,
            priority=priority,
            depends_on_job_id=depends_on_job_id,
            input_params=input_params,
        )
        return job_id

    async def create_or_get_job(
        self,
        owner_id: int,
        file_id: int,
        job_type: JobType | str,
        priority: int | None = None,
        depends_on_job_id: int | None = None,
        input_params: dict[str, Any] | None = None,
    ) -> tuple[int, bool]:
        """
        Create a job for a file, or return the existing one.

        Returns ``(job_id, created)``; ``created`` is False when the job
        already existed or a concurrent creator won the insert race.

        Raises:
            NotFoundError: file or dependency job does not exist
            ValidationError: priority outside 1-10 or unknown job type
            JobCreationError: lost an insert race and the winner could not be read
        """
        job_type = self._validate_job_type(job_type)
        priority = self.settings.job_default_priority if priority is None else priority
        if not 1 <= priority <= 10:
            raise ValidationError(
                "Priority must be between 1 and 10", details={"priority": priority}
            )

        existing_id = await self._find_existing_job_id(file_id, job_type)
        if existing_id is not None:
            logger.debug(
                "Job already exists",
                extra={"job_id": existing_id, "file_id": file_id, "job_type": job_type},
            )
            return existing_id, False

        try:
            job_id = await self._insert_job(
                owner_id, file_id, job_type, priority, depends_on_job_id, input_params
            )
        except IntegrityError:
            # Another creator inserted the same (file, type) concurrently
            logger.info(
                "Job creation race lost, reading winner",
                extra={"file_id": file_id, "job_type": job_type},
            )
            return await self._read_winner(file_id, job_type), False

        logger.info(
            "Job created",
            extra={
                "job_id": job_id,
                "file_id": file_id,
                "job_type": job_type,
                "priority": priority,
                "depends_on_job_id": depends_on_job_id,
            },
        )
        return job_id, True

    async def enqueue_file_processing(
        self, owner_id: int, file_id: int, content_type: str | None
    ) -> dict[str, int]:
        """
        Create processing jobs for a freshly uploaded file.

        Called after the upload transaction commits. Never raises: failures
        are logged and left for the reconciler to repair.
        """
        created: dict[str, int] = {}
        if not self.settings.ocr_auto_create:
            return created
        if not matches_content_type(content_type, self.settings.ocr_file_types):
            logger.debug(
                "File not eligible for OCR",
                extra={"file_id": file_id, "content_type": content_type},
            )
            return created

        try:
            ocr_job_id = await self.create_job(owner_id, file_id, JobType.OCR)
            created[JobType.OCR.value] = ocr_job_id
            created[JobType.EMBED.value] = await self.create_job(
                owner_id, file_id, JobType.EMBED, depends_on_job_id=ocr_job_id
            )
        except Exception:
            logger.exception(
                "Failed to enqueue file processing jobs",
                extra={"file_id": file_id, "owner_id": owner_id},
            )
        return created

    def _validate_job_type(self, job_type: JobType | str) -> str:
        try:
            return JobType(job_type).value
        except ValueError:
            raise ValidationError(
                f"Unknown job type: {job_type}",
                details={"allowed": [t.value for t in JobType]},
            ) from None

    async def _find_existing_job_id(self, file_id: int, job_type: str) -> int | None:
        async with self.database.transaction() as session:
            job = await self.repository.find_by_file_and_type(session, file_id, job_type)
            return job.id if job else None

    async def _insert_job(
        self,
        owner_id: int,
        file_id: int,
        job_type: str,
        priority: int,
        depends_on_job_id: int | None,
        input_params: dict[str, Any] | None,
    ) -> int:
        async with self.database.transaction() as session:
            if await session.get(FileRecord, file_id) is None:
                raise NotFoundError(
                    f"File not found: {file_id}", details={"file_id": file_id}
                )
            if depends_on_job_id is not None:
                if await session.get(Job, depends_on_job_id) is None:
                    raise NotFoundError(
                        f"Dependency job not found: {depends_on_job_id}",
                        details={"depends_on_job_id": depends_on_job_id},
                    )

            now = utcnow()
            job = Job(
                owner_id=owner_id,
                file_id=file_id,
                job_type=job_type,
                status=JobStatus.PENDING.value,
                priority=priority,
                attempts=0,
                max_attempts=self.settings.job_max_attempts,
                depends_on_job_id=depends_on_job_id,
                input_params=input_params,
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            await session.flush()
            return job.id

    async def _read_winner(self, file_id: int, job_type: str) -> int:
        attempts = self.settings.job_create_winner_read_attempts
        for attempt in range(1, attempts + 1):
            job_id = await self._find_existing_job_id(file_id, job_type)
            if job_id is not None:
                return job_id
            await asyncio.sleep(
                self.settings.job_create_winner_backoff_ms * attempt / 1000
            )

        raise JobCreationError(
            f"Job for file {file_id} and type {job_type} could not be created or found",
            details={"file_id": file_id, "job_type": job_type, "reads": attempts},
        )

    # Read operations

    async def get_job(self, job_id: int) -> Job:
        async with self.database.session() as session:
            job = await self.repository.get(session, job_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}", details={"job_id": job_id})
        return job

    async def list_owner_jobs(
        self,
        owner_id: int,
        status: JobStatus | str | None = None,
        job_type: JobType | str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """Jobs for one owner, newest first, with the unpaginated total."""
        query = select(Job).where(Job.owner_id == owner_id)
        if status:
            query = query.where(Job.status == JobStatus(status).value)
        if job_type:
            query = query.where(Job.job_type == JobType(job_type).value)

        async with self.database.session() as session:
            total = (
                await session.execute(
                    select(func.count()).select_from(query.subquery())
                )
            ).scalar() or 0
            result = await session.execute(
                query.order_by(desc(Job.created_at), desc(Job.id))
                .offset(offset)
                .limit(limit)
            )
            return list(result.scalars().all()), total

    async def list_dead_letter_jobs(
        self, owner_id: int | None = None, limit: int = 100
    ) -> list[Job]:
        """Dead-lettered jobs awaiting triage, most recently failed first."""
        query = select(Job).where(Job.status == JobStatus.DLQ.value)
        if owner_id is not None:
            query = query.where(Job.owner_id == owner_id)

        async with self.database.session() as session:
            result = await session.execute(
                query.order_by(desc(Job.updated_at), desc(Job.id)).limit(limit)
            )
            return list(result.scalars().all())

    async def get_job_stats(self) -> JobStatsResponse:
        """Totals by status and type, queue depth and stuck job count."""
        stale_cutoff = utcnow() - timedelta(seconds=self.settings.job_stale_timeout_s)

        async with self.database.session() as session:
            by_status = dict(
                (
                    await session.execute(
                        select(Job.status, func.count(Job.id)).group_by(Job.status)
                    )
                ).all()
            )
            by_type = dict(
                (
                    await session.execute(
                        select(Job.job_type, func.count(Job.id)).group_by(Job.job_type)
                    )
                ).all()
            )
            stuck_jobs = (
                await session.execute(
                    select(func.count(Job.id)).where(
                        Job.status == JobStatus.RUNNING.value,
                        Job.locked_at < stale_cutoff,
                    )
                )
            ).scalar() or 0

        return JobStatsResponse(
            total_jobs=sum(by_status.values()),
            by_status=by_status,
            by_type=by_type,
            queue_depth=by_status.get(JobStatus.PENDING.value, 0)
            + by_status.get(JobStatus.RUNNING.value, 0),
            dead_letter=by_status.get(JobStatus.DLQ.value, 0),
            stuck_jobs=stuck_jobs,
        )
