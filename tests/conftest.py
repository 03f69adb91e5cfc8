import os
from collections.abc import AsyncGenerator
from datetime import datetime
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from filevault.config.settings import Settings, get_settings
from filevault.infra.database import Base, Database, get_database, utcnow
from filevault.v1.core.registries import JobRegistry
from filevault.v1.files.models import FileRecord
from filevault.v1.infra.jobs.metrics import InMemoryMetricsSink
from filevault.v1.infra.jobs.models import Job, JobStatus, JobType


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings isolated from the developer's environment and .env file."""
    return Settings(
        _env_file=None,
        environment="test",
        debug=False,
        worker_enabled=False,
        reconciler_enabled=False,
        metrics_backend="memory",
        storage_root=str(tmp_path / "storage"),
        job_create_winner_backoff_ms=1,
        job_worker_keepalive_s=0.2,
        job_shutdown_timeout_s=5.0,
    )


@pytest.fixture
async def database(test_settings, tmp_path) -> AsyncGenerator[Database, None]:
    """
    Fresh schema per test.

    Uses TEST_DATABASE_URL (PostgreSQL) when set, otherwise a SQLite file.
    """
    database_url = os.getenv("TEST_DATABASE_URL")

    if database_url:
        db = Database(test_settings, database_url=database_url)
        async with db.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
    else:
        db = Database(
            test_settings,
            database_url=f"sqlite+aiosqlite:///{tmp_path / 'filevault.db'}",
        )
        await db.create_all()

    yield db

    await db.close()


@pytest.fixture
def metrics() -> InMemoryMetricsSink:
    return InMemoryMetricsSink()


@pytest.fixture
def registry() -> JobRegistry:
    """Empty job registry so tests choose their own handlers."""
    return JobRegistry()


@pytest.fixture
def make_file(database):
    """Factory inserting a file record."""

    async def _make_file(
        owner_id: int = 1,
        content_type: str | None = "application/pdf",
        storage_key: str | None = None,
        uploaded_at: datetime | None = None,
        file_text: str | None = None,
    ) -> FileRecord:
        async with database.transaction() as session:
            record = FileRecord(
                owner_id=owner_id,
                original_filename="document.pdf",
                storage_key=storage_key or f"{owner_id}/{uuid4().hex}",
                content_type=content_type,
                size=0,
                uploaded_at=uploaded_at or utcnow(),
                file_text=file_text,
            )
            session.add(record)
            await session.flush()
        return record

    return _make_file


@pytest.fixture
def make_job(database, make_file):
    """Factory inserting a job row directly, bypassing the creation service."""

    async def _make_job(
        job_type: JobType = JobType.OCR,
        file_id: int | None = None,
        owner_id: int = 1,
        status: JobStatus = JobStatus.PENDING,
        priority: int = 5,
        attempts: int = 0,
        max_attempts: int = 3,
        next_attempt_at: datetime | None = None,
        created_at: datetime | None = None,
        depends_on_job_id: int | None = None,
        locked_by: str | None = None,
        locked_at: datetime | None = None,
    ) -> Job:
        if file_id is None:
            file_id = (await make_file(owner_id=owner_id)).id
        created_at = created_at or utcnow()

        async with database.transaction() as session:
            job = Job(
                owner_id=owner_id,
                file_id=file_id,
                job_type=job_type.value,
                status=status.value,
                priority=priority,
                attempts=attempts,
                max_attempts=max_attempts,
                next_attempt_at=next_attempt_at,
                depends_on_job_id=depends_on_job_id,
                locked_by=locked_by,
                locked_at=locked_at,
                created_at=created_at,
                updated_at=created_at,
            )
            session.add(job)
            await session.flush()
        return job

    return _make_job


@pytest.fixture
def load_job(database):
    """Read a job's current state."""

    async def _load_job(job_id: int) -> Job:
        async with database.session() as session:
            return await session.get(Job, job_id)

    return _load_job


@pytest.fixture
def app(database, test_settings):
    """FastAPI application wired to the test database."""
    from filevault.main import create_app

    application = create_app()
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_database] = lambda: database
    return application


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as async_client:
        yield async_client
