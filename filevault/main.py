import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from filevault.config.logging import get_logger, setup_logging
from filevault.config.settings import settings
from filevault.infra.database import get_database
from filevault.v1.core.exceptions import (
    RequestContextMiddleware,
    register_exception_handlers,
)
from filevault.v1.core.registries import (
    job_registry,
    text_extractor_registry,
    vectorizer_registry,
)
from filevault.v1.healthz import router as health_router
from filevault.v1.infra.jobs.registry_init import register_job_handlers
from filevault.v1.infra.jobs.routes import router as jobs_router
from filevault.v1.infra.jobs.worker import get_scheduler

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run the job worker alongside the API when enabled."""
    database = get_database(settings)
    worker_task = None
    scheduler = None

    if settings.worker_enabled:
        scheduler = get_scheduler(settings, database)
        worker_task = asyncio.create_task(scheduler.start(), name="job-worker")

    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()
            await worker_task
        await database.close()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    # Initialize structured logging
    setup_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        description="File storage backend with asynchronous post-upload processing",
        version=settings.version,
        debug=settings.debug,
        lifespan=lifespan,
        # All endpoints will be under /v1/ prefix
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
    )

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Add exception handlers
    register_exception_handlers(app)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")

    if not job_registry.is_frozen():
        register_job_handlers(settings)

    # Freeze registries in non-development environments to prevent runtime modifications
    if settings.environment != "development":
        text_extractor_registry.freeze()
        vectorizer_registry.freeze()
        job_registry.freeze()

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "filevault.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )
