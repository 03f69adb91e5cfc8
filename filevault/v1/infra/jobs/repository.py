"""
Data access for the jobs table: claiming, state transitions and lookups.

Every state transition out of RUNNING is conditional on the row still being
locked by the calling worker, so a worker whose job was reclaimed cannot
overwrite the new owner's progress.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from filevault.infra.database import utcnow
from filevault.v1.infra.jobs.models import Job, JobStatus

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def _claim_order_key(row: Any) -> tuple:
    # next_attempt_at NULLS FIRST, then priority, created_at, id
    return (
        row.next_attempt_at is not None,
        row.next_attempt_at or _EPOCH,
        row.priority,
        row.created_at,
        row.id,
    )


def _limit(max_attempts: int | None) -> dict[str, int]:
    # Record the limit the retry decision was made against
    return {} if max_attempts is None else {"max_attempts": max_attempts}


class JobRepository:
    """Queries and conditional updates against the jobs table."""

    async def claim_job_ids(
        self,
        session: AsyncSession,
        worker_id: str,
        batch_size: int,
        now: datetime | None = None,
    ) -> list[int]:
        """
        Claim up to ``batch_size`` ready jobs for ``worker_id``.

        Runs as one UPDATE over a FOR UPDATE SKIP LOCKED candidate subquery:
        rows another worker is claiming right now are skipped rather than
        waited on, and the ``status = pending`` guard ensures only rows this
        statement actually transitions are returned. The caller commits.

        Returns claimed ids in claim order.
        """
        if batch_size < 1:
            return []
        now = now or utcnow()

        candidate = aliased(Job)
        parent = aliased(Job)

        dependency_done = exists().where(
            parent.id == candidate.depends_on_job_id,
            parent.status == JobStatus.DONE.value,
        )

        candidates = (
            select(candidate.id)
            .where(
                candidate.status == JobStatus.PENDING.value,
                (candidate.next_attempt_at.is_(None))
                | (candidate.next_attempt_at <= now),
                (candidate.depends_on_job_id.is_(None)) | dependency_done,
            )
            .order_by(
                candidate.next_attempt_at.asc().nulls_first(),
                candidate.priority.asc(),
                candidate.created_at.asc(),
                candidate.id.asc(),
            )
            .limit(batch_size)
            .with_for_update(skip_locked=True, of=candidate)
        )

        result = await session.execute(
            update(Job)
            .where(Job.id.in_(candidates), Job.status == JobStatus.PENDING.value)
            .values(
                status=JobStatus.RUNNING.value,
                locked_by=worker_id,
                locked_at=now,
                attempts=Job.attempts + 1,
                updated_at=now,
            )
            .returning(Job.id, Job.next_attempt_at, Job.priority, Job.created_at)
            .execution_options(synchronize_session=False)
        )
        rows = sorted(result.all(), key=_claim_order_key)
        return [row.id for row in rows]

    async def get(self, session: AsyncSession, job_id: int) -> Job | None:
        result = await session.execute(select(Job).where(Job.id == job_id))
        return result.scalar_one_or_none()

    async def find_by_file_and_type(
        self, session: AsyncSession, file_id: int, job_type: str
    ) -> Job | None:
        """Find the job for a (file, type) pair, if any."""
        result = await session.execute(
            select(Job).where(Job.file_id == file_id, Job.job_type == job_type)
        )
        return result.scalar_one_or_none()

    async def mark_done(
        self,
        session: AsyncSession,
        job_id: int,
        worker_id: str,
        output_data: dict[str, Any] | None,
        now: datetime | None = None,
    ) -> bool:
        """Complete a job still locked by ``worker_id``. Returns False if the lock was lost."""
        now = now or utcnow()
        return await self._transition_owned(
            session,
            job_id,
            worker_id,
            status=JobStatus.DONE.value,
            output_data=output_data,
            error_message=None,
            next_attempt_at=None,
            completed_at=now,
            updated_at=now,
        )

    async def schedule_retry(
        self,
        session: AsyncSession,
        job_id: int,
        worker_id: str,
        next_attempt_at: datetime,
        error_message: str,
        now: datetime | None = None,
        max_attempts: int | None = None,
    ) -> bool:
        """Return a failed job to the queue for a later attempt."""
        return await self._transition_owned(
            session,
            job_id,
            worker_id,
            status=JobStatus.PENDING.value,
            next_attempt_at=next_attempt_at,
            error_message=error_message,
            updated_at=now or utcnow(),
            **_limit(max_attempts),
        )

    async def move_to_dlq(
        self,
        session: AsyncSession,
        job_id: int,
        worker_id: str,
        output_data: dict[str, Any],
        error_message: str,
        now: datetime | None = None,
        max_attempts: int | None = None,
    ) -> bool:
        """Dead-letter a job still locked by ``worker_id``."""
        return await self._transition_owned(
            session,
            job_id,
            worker_id,
            status=JobStatus.DLQ.value,
            output_data=output_data,
            error_message=error_message,
            updated_at=now or utcnow(),
            **_limit(max_attempts),
        )

    async def _transition_owned(
        self, session: AsyncSession, job_id: int, worker_id: str, **values: Any
    ) -> bool:
        result = await session.execute(
            update(Job)
            .where(
                Job.id == job_id,
                Job.status == JobStatus.RUNNING.value,
                Job.locked_by == worker_id,
            )
            .values(locked_by=None, locked_at=None, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def find_stale_jobs(
        self, session: AsyncSession, cutoff: datetime, limit: int | None = None
    ) -> list[Job]:
        """Running jobs whose lock is older than ``cutoff``, skipping rows locked elsewhere."""
        query = (
            select(Job)
            .where(Job.status == JobStatus.RUNNING.value, Job.locked_at < cutoff)
            .order_by(Job.locked_at.asc(), Job.id.asc())
            .with_for_update(skip_locked=True)
        )
        if limit:
            query = query.limit(limit)
        result = await session.execute(query)
        return list(result.scalars().all())

    async def release_stale_job(
        self,
        session: AsyncSession,
        job_id: int,
        cutoff: datetime,
        next_attempt_at: datetime,
        now: datetime | None = None,
    ) -> bool:
        """Put a stale running job back to pending; attempts are left unchanged."""
        result = await session.execute(
            update(Job)
            .where(
                Job.id == job_id,
                Job.status == JobStatus.RUNNING.value,
                Job.locked_at < cutoff,
            )
            .values(
                status=JobStatus.PENDING.value,
                locked_by=None,
                locked_at=None,
                next_attempt_at=next_attempt_at,
                updated_at=now or utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0
