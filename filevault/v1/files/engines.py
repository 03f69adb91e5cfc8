"""
Default processing engines and object storage access.

The stubs are deterministic and dependency free so the job pipeline can run
end to end in development and tests. Real engines (Tesseract, hosted
embedding models, S3) register under their own names.
"""

import asyncio
import hashlib
import math
import re
from pathlib import Path
from typing import Protocol

from filevault.v1.core.registries import ExtractionResult
from filevault.v1.infra.jobs.errors import NonRetryableJobError

_PDF_PAGE = re.compile(rb"/Type\s*/Page(?!s)")


class ObjectNotFoundError(Exception):
    """The storage key has no object behind it."""


class StorageClient(Protocol):
    """Protocol for blob storage reads."""

    async def read(self, storage_key: str) -> bytes:
        """Return object bytes, raising ObjectNotFoundError if absent."""
        ...


class LocalStorageClient:
    """Reads objects from a directory on the local filesystem."""

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    def _path_for(self, storage_key: str) -> Path:
        path = (self.root / storage_key).resolve()
        if not path.is_relative_to(self.root):
            raise ObjectNotFoundError(f"Key escapes storage root: {storage_key}")
        return path

    async def read(self, storage_key: str) -> bytes:
        path = self._path_for(storage_key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except (FileNotFoundError, IsADirectoryError):
            raise ObjectNotFoundError(storage_key) from None


class StubTextExtractor:
    """
    Deterministic text extraction for development and testing.

    Plain text is decoded as-is. PDFs and images yield their printable
    ASCII runs, which is enough to exercise downstream handlers.
    """

    model_version = "stub-ocr-v1.0"

    def supports(self, content_type: str) -> bool:
        return content_type == "application/pdf" or content_type.startswith(
            ("image/", "text/")
        )

    def extract(self, content: bytes, content_type: str) -> ExtractionResult:
        if content_type.startswith("text/"):
            text = content.decode("utf-8", errors="replace")
            return ExtractionResult(
                text=text,
                page_count=1,
                confidence=1.0,
                model_version=self.model_version,
            )

        page_count = 1
        if content_type == "application/pdf":
            if b"/Encrypt" in content:
                raise NonRetryableJobError(
                    "PDF_ENCRYPTED: document is password protected",
                    error_code="PDF_ENCRYPTED",
                )
            page_count = max(1, len(_PDF_PAGE.findall(content)))

        runs = re.findall(rb"[ -~]{4,}", content)
        text = " ".join(run.decode("ascii") for run in runs)
        return ExtractionResult(
            text=text,
            page_count=page_count,
            confidence=0.85 if text else 0.0,
            model_version=self.model_version,
        )


class StubVectorizer:
    """
    Deterministic hash-based vectorizer for development and testing.

    Generates consistent vectors from SHA-256 text hashes.
    """

    def __init__(self, dimension: int = 768):
        self.dimension = dimension

    def vectorize(self, text: str) -> list[float]:
        normalized_text = text.strip().lower()
        text_hash = hashlib.sha256(normalized_text.encode("utf-8")).hexdigest()

        # Each pair of hex chars becomes a float between -1 and 1
        vector = [
            (int(text_hash[i : i + 2], 16) / 127.5) - 1.0
            for i in range(0, len(text_hash), 2)
        ]

        while len(vector) < self.dimension:
            pos_val = (len(vector) % 256) / 127.5 - 1.0
            text_val = (len(normalized_text) % 256) / 127.5 - 1.0
            vector.append((pos_val + text_val) / 2.0)

        vector = vector[: self.dimension]

        # L2 normalize the vector for cosine similarity
        norm = math.sqrt(sum(x * x for x in vector))
        if norm > 0:
            vector = [x / norm for x in vector]
        return vector

    def get_dimension(self) -> int:
        return self.dimension

    def get_model_version(self) -> str:
        return "stub-v1.0"
