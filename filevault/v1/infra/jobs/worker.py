"""
Postgres-backed job worker: polling, execution and stuck job recovery.
"""

import asyncio
import logging
import socket
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from filevault.config.logging import bind_worker_context
from filevault.config.settings import Settings
from filevault.infra.database import Database, utcnow
from filevault.v1.core.registries import JobRegistry, job_registry
from filevault.v1.infra.jobs.backoff import RetryPolicy
from filevault.v1.infra.jobs.dispatcher import ExecutionDispatcher
from filevault.v1.infra.jobs.errors import (
    HandlerNotFoundError,
    extract_error_code,
    is_retryable,
)
from filevault.v1.infra.jobs.metrics import MetricsSink, create_metrics_sink
from filevault.v1.infra.jobs.models import Job, JobStatus
from filevault.v1.infra.jobs.reconciler import JobReconciler
from filevault.v1.infra.jobs.repository import JobRepository

logger = logging.getLogger(__name__)


def generate_worker_id() -> str:
    """Identity written to locked_by: ``<hostname>-<epoch ms>``."""
    millis = int(time.time() * 1000)
    try:
        hostname = socket.gethostname()
    except OSError:
        hostname = ""
    return f"{hostname or 'worker'}-{millis}"


@dataclass(frozen=True)
class ClaimedJob:
    """Fields captured before the handler runs, kept valid across rollbacks."""

    id: int
    job_type: str
    file_id: int

    @classmethod
    def from_job(cls, job: Job) -> "ClaimedJob":
        return cls(id=job.id, job_type=job.job_type, file_id=job.file_id)


class JobExecutor:
    """Executes one claimed job per call in its own session."""

    def __init__(
        self,
        settings: Settings,
        database: Database,
        worker_id: str,
        registry: JobRegistry | None = None,
        metrics: MetricsSink | None = None,
        retry_policy: RetryPolicy | None = None,
        repository: JobRepository | None = None,
    ):
        self.settings = settings
        self.database = database
        self.worker_id = worker_id
        self.registry = registry if registry is not None else job_registry
        self.metrics = metrics or create_metrics_sink(settings)
        self.retry_policy = retry_policy or RetryPolicy(settings)
        self.repository = repository or JobRepository()

    async def execute_job_by_id(self, job_id: int) -> None:
        """
        Run a claimed job's handler and record the outcome.

        Handler writes and the transition to done commit together. On failure
        the handler's work is rolled back and the retry or dead letter
        decision is recorded in a separate transaction.
        """
        started = time.monotonic()
        failure: Exception | None = None

        async with self.database.session() as session:
            job = await self.repository.get(session, job_id)
            if job is None:
                logger.warning("Claimed job disappeared", extra={"job_id": job_id})
                return
            if job.status != JobStatus.RUNNING.value or job.locked_by != self.worker_id:
                logger.warning(
                    "Skipping job not locked by this worker",
                    extra={
                        "job_id": job_id,
                        "status": job.status,
                        "locked_by": job.locked_by,
                        "worker_id": self.worker_id,
                    },
                )
                return

            claimed = ClaimedJob.from_job(job)
            log_extra = {
                "job_id": claimed.id,
                "job_type": claimed.job_type,
                "attempt": job.attempts,
            }
            logger.info("Processing job started", extra=log_extra)

            try:
                handler = self.registry.resolve(job)
                output = await handler.execute(session, job)
                completed = await self.repository.mark_done(
                    session, claimed.id, self.worker_id, output
                )
                if not completed:
                    await session.rollback()
                    logger.warning(
                        "Job lock lost before completion, discarding result",
                        extra=log_extra,
                    )
                    self._record_outcome(claimed, "lost_lock", started)
                    return
                await session.commit()
            except Exception as exc:
                await session.rollback()
                failure = exc

        if failure is None:
            logger.info("Processing job completed successfully", extra=log_extra)
            self._record_outcome(claimed, "success", started)
            return

        await self._handle_failure(claimed, failure)
        self._record_outcome(claimed, "failure", started)

    async def _handle_failure(self, claimed: ClaimedJob, error: Exception) -> None:
        error_code = extract_error_code(error)
        message = str(error) or type(error).__name__
        log_extra = {
            "job_id": claimed.id,
            "job_type": claimed.job_type,
            "error_code": error_code,
            "error": message,
        }

        if isinstance(error, HandlerNotFoundError):
            logger.error("No handler registered for job", extra=log_extra)
        else:
            logger.warning("Processing job failed", exc_info=error, extra=log_extra)

        try:
            async with self.database.transaction() as session:
                job = await self.repository.get(session, claimed.id)
                if job is None or job.locked_by != self.worker_id:
                    logger.warning(
                        "Job lock lost before failure was recorded", extra=log_extra
                    )
                    return

                now = utcnow()
                # The configured limit applies to jobs queued before it changed
                max_attempts = self.settings.job_max_attempts
                if is_retryable(error) and job.can_retry(max_attempts):
                    next_attempt_at = self.retry_policy.next_attempt_at(job.attempts, now)
                    await self.repository.schedule_retry(
                        session,
                        job.id,
                        self.worker_id,
                        next_attempt_at,
                        message,
                        now,
                        max_attempts=max_attempts,
                    )
                    self.metrics.increment("jobs.retried", type=claimed.job_type)
                    logger.info(
                        "Job scheduled for retry",
                        extra={
                            **log_extra,
                            "attempts": job.attempts,
                            "max_attempts": max_attempts,
                            "next_attempt_at": next_attempt_at.isoformat(),
                        },
                    )
                else:
                    await self.repository.move_to_dlq(
                        session,
                        job.id,
                        self.worker_id,
                        output_data=build_dead_letter_output(job, error, error_code, now),
                        error_message=f"{error_code}: {message}",
                        now=now,
                        max_attempts=max_attempts,
                    )
                    self.metrics.increment("jobs.dlq", type=claimed.job_type)
                    logger.error(
                        "Job moved to dead letter queue",
                        extra={**log_extra, "attempts": job.attempts},
                    )
        except Exception:
            # Lock stays in place; the reclaimer will recover the job
            logger.exception("Failed to record job failure", extra=log_extra)

    def _record_outcome(self, claimed: ClaimedJob, result: str, started: float) -> None:
        self.metrics.increment("jobs.completed", result=result, type=claimed.job_type)
        self.metrics.timing(
            "jobs.duration",
            time.monotonic() - started,
            result=result,
            type=claimed.job_type,
        )


def build_dead_letter_output(
    job: Job, error: BaseException, error_code: str, now
) -> dict[str, Any]:
    """Structured diagnostics stored in output_data of dead-lettered jobs."""
    return {
        "error_code": error_code,
        "error_type": type(error).__name__,
        "file_id": job.file_id,
        "job_type": job.job_type,
        "attempts": job.attempts,
        "message": str(error) or type(error).__name__,
        "timestamp": now.isoformat(),
    }


class JobScheduler:
    """
    Per-process job worker.

    Runs three independent fixed-delay loops: claim and dispatch, stuck job
    reclamation, and (optionally) reconciliation of missing jobs.
    """

    def __init__(
        self,
        settings: Settings,
        database: Database,
        worker_id: str | None = None,
        registry: JobRegistry | None = None,
        metrics: MetricsSink | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self.settings = settings
        self.database = database
        self.worker_id = worker_id or generate_worker_id()
        self.metrics = metrics or create_metrics_sink(settings)
        self.retry_policy = retry_policy or RetryPolicy(settings)
        self.repository = JobRepository()

        self.executor = JobExecutor(
            settings,
            database,
            self.worker_id,
            registry=registry,
            metrics=self.metrics,
            retry_policy=self.retry_policy,
            repository=self.repository,
        )
        self.dispatcher = ExecutionDispatcher(settings, self.executor.execute_job_by_id)
        self.reconciler = JobReconciler(settings, database, metrics=self.metrics)

        self.running = False
        self._stop_event: asyncio.Event | None = None

    async def poll_jobs(self) -> int:
        """Claim one batch and hand it to the dispatcher. Returns the number claimed."""
        async with self.database.transaction() as session:
            job_ids = await self.repository.claim_job_ids(
                session, self.worker_id, self.settings.job_batch_size
            )

        if not job_ids:
            return 0

        self.metrics.increment("jobs.claimed", value=len(job_ids))
        logger.info(
            "Claimed jobs",
            extra={
                "worker_id": self.worker_id,
                "job_count": len(job_ids),
                "job_ids": job_ids,
            },
        )

        for job_id in job_ids:
            await self.dispatcher.submit(job_id)
        return len(job_ids)

    async def reclaim_stuck_jobs(self) -> int:
        """Return jobs whose lock has gone stale to the queue without consuming an attempt."""
        timeout_s = self.settings.job_stale_timeout_s
        now = utcnow()
        cutoff = now - timedelta(seconds=timeout_s)
        reclaimed = 0

        async with self.database.transaction() as session:
            for job in await self.repository.find_stale_jobs(session, cutoff):
                next_attempt_at = self.retry_policy.next_attempt_at(job.attempts, now)
                released = await self.repository.release_stale_job(
                    session, job.id, cutoff, next_attempt_at, now
                )
                if not released:
                    continue
                reclaimed += 1
                self.metrics.increment("jobs.reclaimed", type=job.job_type)
                logger.warning(
                    "Reclaimed stuck job",
                    extra={
                        "job_id": job.id,
                        "job_type": job.job_type,
                        "locked_by": job.locked_by,
                        "attempts": job.attempts,
                        "timeout_seconds": timeout_s,
                        "next_attempt_at": next_attempt_at.isoformat(),
                    },
                )

        return reclaimed

    async def start(self) -> None:
        """Run the worker loops until stop() is called."""
        if self.running:
            raise RuntimeError("Worker is already running")

        self.running = True
        self._stop_event = asyncio.Event()
        bind_worker_context(self.worker_id)
        self.dispatcher.start()

        logger.info(
            "Starting job worker",
            extra={
                "worker_id": self.worker_id,
                "core_workers": self.settings.job_core_workers,
                "max_workers": self.settings.job_max_workers,
                "batch_size": self.settings.job_batch_size,
                "poll_interval_ms": self.settings.job_poll_interval_ms,
            },
        )

        loops = [
            self._run_periodically(
                "poll", self.poll_jobs, self.settings.job_poll_interval_ms / 1000
            ),
            self._run_periodically(
                "reclaim",
                self.reclaim_stuck_jobs,
                self.settings.job_reclaim_interval_ms / 1000,
            ),
        ]
        if self.settings.reconciler_enabled:
            loops.append(
                self._run_periodically(
                    "reconcile",
                    self.reconciler.reconcile_all,
                    self.settings.reconciler_interval_s,
                )
            )

        try:
            await asyncio.gather(*loops)
        finally:
            await self.dispatcher.shutdown()
            self.running = False
            logger.info("Job worker stopped", extra={"worker_id": self.worker_id})

    def stop(self) -> None:
        """Ask the loops to exit after their current cycle."""
        logger.info("Stopping job worker", extra={"worker_id": self.worker_id})
        if self._stop_event is not None:
            self._stop_event.set()

    async def _run_periodically(self, name: str, task, interval_s: float) -> None:
        # Fixed delay: the next cycle starts interval_s after the previous one ends
        while not self._stop_event.is_set():
            try:
                await task()
            except Exception:
                logger.exception(
                    "Error in worker loop",
                    extra={"loop": name, "worker_id": self.worker_id},
                )
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval_s)
            except TimeoutError:
                pass


# Worker instance management
_scheduler_instance: JobScheduler | None = None


def get_scheduler(settings: Settings, database: Database) -> JobScheduler:
    """Get or create the process-wide scheduler."""
    global _scheduler_instance
    if _scheduler_instance is None:
        _scheduler_instance = JobScheduler(settings, database)
    return _scheduler_instance
