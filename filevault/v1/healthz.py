from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from filevault.config.logging import get_logger
from filevault.config.settings import Settings, SettingsDep
from filevault.infra.database import get_session
from filevault.v1.core.exceptions import create_success_response
from filevault.v1.infra.jobs.models import Job, JobStatus

logger = get_logger(__name__)
router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class WorkerHealth(BaseModel):
    """Worker health status."""

    active_workers: int
    oldest_lock_age_seconds: int | None = None
    stuck_jobs_count: int = 0
    queue_depth: int = 0
    dead_letter_count: int = 0


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep, session: AsyncSession = Depends(get_session)
):
    """Health check endpoint with database and job queue status."""

    timestamp = datetime.now(UTC).isoformat()
    overall_ok = True

    db_health = await _check_database_health(session)
    if not db_health.connected:
        overall_ok = False

    worker_health = None
    if db_health.connected:
        try:
            worker_health = await _check_worker_health(session, settings)
        except Exception as e:
            # Queue statistics are informational and don't fail overall health
            logger.warning("Worker health check failed", error=str(e))
            worker_health = WorkerHealth(active_workers=0)

    health_data = {
        "ok": overall_ok,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": timestamp,
        "database": db_health.model_dump(),
        "worker": worker_health.model_dump() if worker_health else None,
    }

    return create_success_response(data=health_data)


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        return DatabaseHealth(connected=False, error=str(e))


async def _check_worker_health(
    session: AsyncSession, settings: Settings
) -> WorkerHealth:
    """Check job worker activity and queue status."""
    now = datetime.now(UTC)
    stale_cutoff = now - timedelta(seconds=settings.job_stale_timeout_s)
    running = Job.status == JobStatus.RUNNING.value

    # Workers currently holding a fresh lock
    active_workers = (
        await session.execute(
            select(func.count(func.distinct(Job.locked_by))).where(
                running, Job.locked_at >= stale_cutoff
            )
        )
    ).scalar() or 0

    oldest_lock = (
        await session.execute(select(func.min(Job.locked_at)).where(running))
    ).scalar()
    oldest_lock_age_seconds = (
        int((now - oldest_lock).total_seconds()) if oldest_lock else None
    )

    stuck_jobs_count = (
        await session.execute(
            select(func.count(Job.id)).where(running, Job.locked_at < stale_cutoff)
        )
    ).scalar() or 0

    by_status = dict(
        (
            await session.execute(
                select(Job.status, func.count(Job.id)).group_by(Job.status)
            )
        ).all()
    )

    return WorkerHealth(
        active_workers=active_workers,
        oldest_lock_age_seconds=oldest_lock_age_seconds,
        stuck_jobs_count=stuck_jobs_count,
        queue_depth=by_status.get(JobStatus.PENDING.value, 0)
        + by_status.get(JobStatus.RUNNING.value, 0),
        dead_letter_count=by_status.get(JobStatus.DLQ.value, 0),
    )
