"""
Job registry initialization.

Registers the processing engines and job handlers with the global registries.
"""

import logging

from filevault.config.settings import Settings, settings as default_settings
from filevault.v1.core.registries import (
    job_registry,
    text_extractor_registry,
    vectorizer_registry,
)
from filevault.v1.files.engines import (
    LocalStorageClient,
    StubTextExtractor,
    StubVectorizer,
)
from filevault.v1.infra.jobs.handlers import EmbedJobHandler, OcrJobHandler
from filevault.v1.infra.jobs.metrics import MetricsSink

logger = logging.getLogger(__name__)


def register_engines() -> None:
    """Register the bundled text extractors and vectorizers."""
    if "stub" not in text_extractor_registry.list():
        text_extractor_registry.register("stub", StubTextExtractor())
    if "stub" not in vectorizer_registry.list():
        vectorizer_registry.register("stub", StubVectorizer())


def register_job_handlers(
    settings: Settings | None = None, metrics: MetricsSink | None = None
) -> None:
    """Register all job handlers with the job registry."""
    settings = settings or default_settings

    logger.info("Registering job handlers")
    register_engines()

    # Fails fast when the configured engine is not registered
    extractor = text_extractor_registry.get(settings.ocr_engine.value)
    vectorizer = vectorizer_registry.get(settings.embeddings.value)

    job_registry.register(
        "ocr",
        OcrJobHandler(
            settings,
            extractor=extractor,
            storage=LocalStorageClient(settings.storage_root),
            metrics=metrics,
        ),
    )
    job_registry.register("embed", EmbedJobHandler(settings, vectorizer=vectorizer))

    logger.info(
        "Job handlers registered", extra={"registered_handlers": job_registry.list()}
    )
