"""
Backfill of jobs the upload trigger failed to create.

Job creation after upload is best effort, so a crash between the upload
commit and job creation leaves eligible files without a job. The reconciler
periodically inserts the missing rows in one idempotent statement.
"""

import logging
from datetime import timedelta

from sqlalchemy import Integer, Text, exists, func, literal, or_, select
from sqlalchemy.dialects import postgresql, sqlite

from filevault.config.settings import Settings
from filevault.infra.database import Database, UTCDateTime, utcnow
from filevault.v1.files.models import FileRecord
from filevault.v1.infra.jobs.metrics import MetricsSink, create_metrics_sink
from filevault.v1.infra.jobs.models import Job, JobStatus, JobType

logger = logging.getLogger(__name__)

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def content_type_condition(patterns: list[str]):
    """
    SQL predicate matching FileRecord.content_type against patterns like ``image/*``.

    Agrees with matches_content_type: case-insensitive, and MIME parameters
    (``application/pdf; charset=binary``) are ignored.
    """
    content_type = func.lower(func.trim(FileRecord.content_type))
    conditions = []
    for pattern in patterns:
        pattern = pattern.strip().lower()
        if "*" in pattern:
            like = "%".join(_escape_like(part) for part in pattern.split("*"))
            conditions.append(content_type.like(like, escape="\\"))
        else:
            conditions.append(
                or_(
                    content_type == pattern,
                    content_type.like(_escape_like(pattern) + ";%", escape="\\"),
                )
            )
    return or_(*conditions)


class JobReconciler:
    """Creates pending jobs for recent eligible files that have none."""

    def __init__(
        self,
        settings: Settings,
        database: Database,
        metrics: MetricsSink | None = None,
    ):
        self.settings = settings
        self.database = database
        self.metrics = metrics or create_metrics_sink(settings)

    def eligible_content_types(self, job_type: JobType) -> list[str]:
        if job_type == JobType.OCR:
            return list(self.settings.ocr_file_types)
        return []

    async def reconcile_all(self) -> int:
        """One reconciliation pass over every job type with eligibility rules."""
        created = 0
        for job_type in JobType:
            if self.eligible_content_types(job_type):
                created += await self.reconcile_missing_jobs(job_type)
        return created

    async def reconcile_missing_jobs(self, job_type: JobType = JobType.OCR) -> int:
        """
        Insert pending jobs for files that should have one and don't.

        Only files uploaded within the lookback window are considered. Rows a
        concurrent creator inserts first are skipped by ON CONFLICT DO NOTHING.

        Returns the number of jobs created. Errors are logged and reported
        as a failed run rather than raised.
        """
        patterns = self.eligible_content_types(job_type)
        if not patterns:
            logger.debug(
                "No eligible content types, skipping reconciliation",
                extra={"job_type": job_type.value},
            )
            return 0

        try:
            created = await self._insert_missing(job_type, patterns)
        except Exception:
            logger.exception(
                "Job reconciliation failed", extra={"job_type": job_type.value}
            )
            self.metrics.increment("reconciler.run", result="failure")
            return 0

        self.metrics.increment("reconciler.run", result="success")
        if created:
            self.metrics.increment(
                "reconciler.jobs.created", value=created, type=job_type.value
            )
            logger.info(
                "Reconciler created missing jobs",
                extra={"job_type": job_type.value, "created": created},
            )
        else:
            logger.debug(
                "Reconciler found no missing jobs", extra={"job_type": job_type.value}
            )
        return created

    async def _insert_missing(self, job_type: JobType, patterns: list[str]) -> int:
        dialect = self.database.engine.dialect.name
        insert = _INSERT_BY_DIALECT.get(dialect)
        if insert is None:
            raise RuntimeError(f"Reconciliation is not supported on {dialect}")

        now = utcnow()
        cutoff = now - timedelta(days=self.settings.reconciler_lookback_days)

        has_job = exists().where(
            Job.file_id == FileRecord.id, Job.job_type == job_type.value
        )
        missing = select(
            FileRecord.owner_id,
            FileRecord.id,
            literal(job_type.value, Text),
            literal(JobStatus.PENDING.value, Text),
            literal(self.settings.job_default_priority, Integer),
            literal(0, Integer),
            literal(self.settings.job_max_attempts, Integer),
            literal(now, UTCDateTime),
            literal(now, UTCDateTime),
        ).where(
            content_type_condition(patterns),
            FileRecord.uploaded_at >= cutoff,
            ~has_job,
        )

        statement = (
            insert(Job.__table__)
            .from_select(
                [
                    "owner_id",
                    "file_id",
                    "job_type",
                    "status",
                    "priority",
                    "attempts",
                    "max_attempts",
                    "created_at",
                    "updated_at",
                ],
                missing,
            )
            .on_conflict_do_nothing(index_elements=["file_id", "job_type"])
        )

        async with self.database.transaction() as session:
            result = await session.execute(statement)
        return max(result.rowcount or 0, 0)
