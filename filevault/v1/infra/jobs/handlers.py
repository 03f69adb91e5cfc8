"""
Job handlers for post-upload processing.
"""

import asyncio
import hashlib
import logging
import struct
import time
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from filevault.config.settings import Settings
from filevault.v1.core.registries import TextExtractor, Vectorizer
from filevault.v1.files.engines import ObjectNotFoundError, StorageClient
from filevault.v1.files.models import FileRecord
from filevault.v1.infra.jobs.errors import JobError, NonRetryableJobError
from filevault.v1.infra.jobs.metrics import MetricsSink, create_metrics_sink
from filevault.v1.infra.jobs.models import Job, JobType

logger = logging.getLogger(__name__)

# Fixed label set keeps the error metric low cardinality
OCR_ERROR_TYPES = frozenset(
    {"pdf_encrypted", "s3_not_found", "unsupported_content_type", "unknown"}
)


class OcrJobHandler:
    """Extracts document text and stores it on the file record."""

    job_type = JobType.OCR

    def __init__(
        self,
        settings: Settings,
        extractor: TextExtractor,
        storage: StorageClient,
        metrics: MetricsSink | None = None,
    ):
        self.settings = settings
        self.extractor = extractor
        self.storage = storage
        self.metrics = metrics or create_metrics_sink(settings)

    def supports(self, job: Job) -> bool:
        return job.job_type == self.job_type.value

    async def execute(self, session: AsyncSession, job: Job) -> dict[str, Any]:
        started = time.monotonic()

        file = await session.get(FileRecord, job.file_id)
        if file is None:
            # Deleted by the user before the job ran
            logger.warning(
                "File deleted before OCR started, skipping",
                extra={"job_id": job.id, "file_id": job.file_id},
            )
            return {"status": "skipped", "reason": "file_not_found"}

        content_type = (file.content_type or "").split(";", 1)[0].strip().lower()
        kind = "pdf" if content_type == "application/pdf" else "image"

        try:
            if not self.extractor.supports(content_type):
                raise NonRetryableJobError(
                    f"UNSUPPORTED_CONTENT_TYPE: {content_type or 'unknown'}",
                    error_code="UNSUPPORTED_CONTENT_TYPE",
                )

            try:
                content = await self.storage.read(file.storage_key)
            except ObjectNotFoundError:
                raise NonRetryableJobError(
                    f"S3_NOT_FOUND: object {file.storage_key} is missing",
                    error_code="S3_NOT_FOUND",
                    details={"storage_key": file.storage_key},
                ) from None

            # Extraction is CPU bound; keep it off the event loop
            result = await asyncio.to_thread(
                self.extractor.extract, content, content_type
            )
        except JobError as e:
            self._record_error(e.error_code.lower())
            raise
        except Exception:
            self._record_error("unknown")
            raise

        await session.execute(
            update(FileRecord)
            .where(FileRecord.id == file.id)
            .values(
                file_text=result.text,
                ocr_confidence=result.confidence,
                ocr_model_version=result.model_version,
            )
            .execution_options(synchronize_session=False)
        )

        elapsed = time.monotonic() - started
        self.metrics.timing("ocr.duration", elapsed, type=kind)
        self.metrics.increment("ocr.pages", value=result.page_count, type=kind)

        logger.info(
            "OCR completed",
            extra={
                "file_id": file.id,
                "text_length": len(result.text),
                "page_count": result.page_count,
                "confidence": round(result.confidence, 2),
                "duration_ms": int(elapsed * 1000),
            },
        )

        return {
            "text_length": len(result.text),
            "page_count": result.page_count,
            "confidence": result.confidence,
            "model_version": result.model_version,
        }

    def _record_error(self, error_type: str) -> None:
        if error_type not in OCR_ERROR_TYPES:
            error_type = "unknown"
        self.metrics.increment("ocr.errors", type=error_type)


class EmbedJobHandler:
    """Computes an embedding of the file's extracted text."""

    job_type = JobType.EMBED

    def __init__(self, settings: Settings, vectorizer: Vectorizer):
        self.settings = settings
        self.vectorizer = vectorizer

    def supports(self, job: Job) -> bool:
        return job.job_type == self.job_type.value

    async def execute(self, session: AsyncSession, job: Job) -> dict[str, Any]:
        file = await session.get(FileRecord, job.file_id)
        if file is None:
            return {"status": "skipped", "reason": "file_not_found"}

        if not file.file_text:
            # Text arrives with the OCR job this one normally depends on
            raise NonRetryableJobError(
                f"TEXT_NOT_AVAILABLE: file {file.id} has no extracted text",
                error_code="TEXT_NOT_AVAILABLE",
            )

        vector = await asyncio.to_thread(self.vectorizer.vectorize, file.file_text)
        checksum = hashlib.sha256(
            struct.pack(f"{len(vector)}d", *vector)
        ).hexdigest()[:16]

        logger.info(
            "Embedding computed",
            extra={
                "file_id": file.id,
                "dimension": len(vector),
                "model_version": self.vectorizer.get_model_version(),
            },
        )

        return {
            "dimension": len(vector),
            "model_version": self.vectorizer.get_model_version(),
            "vector_checksum": checksum,
        }
