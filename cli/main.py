"""FileVault CLI - Main Entry Point"""

import asyncio
import signal
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel

from filevault.config.logging import setup_logging
from filevault.config.settings import settings
from filevault.infra.database import Database
from filevault.v1.core.exceptions import FileVaultException
from filevault.v1.infra.jobs.errors import JobError
from filevault.v1.infra.jobs.models import JobType
from filevault.v1.infra.jobs.reconciler import JobReconciler
from filevault.v1.infra.jobs.registry_init import register_job_handlers
from filevault.v1.infra.jobs.service import JobCreationService
from filevault.v1.infra.jobs.worker import JobScheduler, generate_worker_id

from .utils.formatting import (
    create_job_panel,
    create_jobs_table,
    create_stats_table,
    print_error,
    print_info,
    print_success,
)

console = Console()

app = typer.Typer(
    name="filevault",
    help="FileVault job queue operations",
    rich_markup_mode="rich",
)


def open_database() -> Database:
    """Database handle for one CLI invocation."""
    return Database(settings)


def _run(coro):
    try:
        return asyncio.run(coro)
    except (FileVaultException, JobError) as e:
        print_error(e.message)
        raise typer.Exit(1)


async def _with_database(action):
    database = open_database()
    try:
        return await action(database)
    finally:
        await database.close()


@app.command()
def worker(
    worker_id: Optional[str] = typer.Option(
        None, "--worker-id", help="Override the generated worker identity"
    ),
):
    """Run the job worker (poll, reclaim, reconcile) until interrupted"""
    if not settings.worker_enabled:
        print_error("Job workers are disabled (WORKER_ENABLED=false)")
        raise typer.Exit(1)

    setup_logging(settings)
    register_job_handlers(settings)
    worker_id = worker_id or generate_worker_id()

    async def run(database: Database):
        scheduler = JobScheduler(settings, database, worker_id=worker_id)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, scheduler.stop)
        await scheduler.start()

    console.print(
        Panel(
            f"• Worker: [cyan]{worker_id}[/cyan]\n"
            f"• Executors: {settings.job_core_workers}-{settings.job_max_workers}\n"
            f"• Batch size: {settings.job_batch_size}\n"
            f"• Poll interval: {settings.job_poll_interval_ms} ms",
            title="Starting job worker",
            border_style="green",
        )
    )
    _run(_with_database(run))
    print_success("Worker stopped")


@app.command()
def reconcile(
    job_type: JobType = typer.Option(JobType.OCR, "--type", help="Job type to backfill"),
):
    """Create jobs missing for recently uploaded eligible files"""

    async def run(database: Database):
        return await JobReconciler(settings, database).reconcile_missing_jobs(job_type)

    created = _run(_with_database(run))
    if created:
        print_success(f"Created {created} missing {job_type.value} job(s)")
    else:
        print_info(f"No missing {job_type.value} jobs")


@app.command()
def enqueue(
    owner_id: int = typer.Argument(..., help="Owning user id"),
    file_id: int = typer.Argument(..., help="File id"),
    job_type: JobType = typer.Argument(..., help="Job type"),
    priority: Optional[int] = typer.Option(None, "--priority", min=1, max=10),
    depends_on: Optional[int] = typer.Option(
        None, "--depends-on", help="Job that must finish first"
    ),
):
    """Create a job for a file (returns the existing job if present)"""

    async def run(database: Database):
        return await JobCreationService(settings, database).create_job(
            owner_id,
            file_id,
            job_type,
            priority=priority,
            depends_on_job_id=depends_on,
        )

    job_id = _run(_with_database(run))
    print_success(f"Job {job_id} ({job_type.value}) ready for file {file_id}")


@app.command()
def show(job_id: int = typer.Argument(..., help="Job id")):
    """Show a job in detail"""

    async def run(database: Database):
        return await JobCreationService(settings, database).get_job(job_id)

    console.print(create_job_panel(_run(_with_database(run))))


@app.command()
def stats():
    """Show queue statistics"""

    async def run(database: Database):
        return await JobCreationService(settings, database).get_job_stats()

    console.print(create_stats_table(_run(_with_database(run)).model_dump()))


@app.command()
def dlq(
    owner_id: Optional[int] = typer.Option(None, "--owner-id", help="Filter by owner"),
    limit: int = typer.Option(50, "--limit", min=1, max=1000),
):
    """List dead-lettered jobs"""

    async def run(database: Database):
        return await JobCreationService(settings, database).list_dead_letter_jobs(
            owner_id=owner_id, limit=limit
        )

    jobs = _run(_with_database(run))
    if not jobs:
        print_success("Dead letter queue is empty")
        return
    console.print(create_jobs_table(jobs, title="Dead Letter Queue"))


@app.command("init-db")
def init_db():
    """Create tables directly (development only; use alembic elsewhere)"""

    async def run(database: Database):
        await database.create_all()

    _run(_with_database(run))
    print_success("Database tables created")


if __name__ == "__main__":
    app()
