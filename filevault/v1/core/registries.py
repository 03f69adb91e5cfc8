from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar

from filevault.v1.infra.jobs.errors import HandlerNotFoundError

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def clear(self) -> None:
        """Remove every registration (used when re-initialising a process)."""
        if self._frozen:
            raise RuntimeError(f"Cannot clear frozen {self.name.lower()} registry")
        self._implementations.clear()

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Text Extractor Registry - OCR engines
@dataclass(frozen=True)
class ExtractionResult:
    """Text pulled out of a document."""

    text: str
    page_count: int
    confidence: float
    model_version: str


class TextExtractor(Protocol):
    """Protocol for OCR / native text extraction engines."""

    def supports(self, content_type: str) -> bool:
        """Whether the engine can read documents of this content type."""
        ...

    def extract(self, content: bytes, content_type: str) -> ExtractionResult:
        """Extract text from raw document bytes (may block; run off the loop)."""
        ...


class TextExtractorRegistry(Registry[TextExtractor]):
    """Registry for text extraction engines (stub, tesseract, ...)."""

    def __init__(self):
        super().__init__("TextExtractor")


# Vectorizer Registry - compute embeddings
class Vectorizer(Protocol):
    """Protocol for embedding vectorizers."""

    def vectorize(self, text: str) -> list[float]:
        """Compute embedding vector for text."""
        ...

    def get_dimension(self) -> int:
        """Get the dimension of vectors produced."""
        ...

    def get_model_version(self) -> str:
        """Get the model version identifier."""
        ...


class VectorizerRegistry(Registry[Vectorizer]):
    """Registry for vectorizers (stub, ...)."""

    def __init__(self):
        super().__init__("Vectorizer")


# Job Registry - background processing handlers
class JobHandler(Protocol):
    """Protocol for handlers that execute one job type."""

    def supports(self, job: Any) -> bool:
        """Check if this handler can process the given job."""
        ...

    async def execute(
        self,
        session: Any,  # AsyncSession
        job: Any,  # Job
    ) -> dict[str, Any] | None:
        """
        Execute a claimed job.

        Args:
            session: Database session scoped to this job's unit of work
            job: Freshly loaded job row

        Returns:
            Optional output data to store with the completed job

        Raises:
            Any exception marks the attempt failed; NonRetryableJobError
            sends the job straight to the dead letter queue.
        """
        ...


class JobRegistry(Registry[JobHandler]):
    """Registry for background job handlers, resolved in registration order."""

    def __init__(self):
        super().__init__("Job")

    def resolve(self, job: Any) -> JobHandler:
        """Return the first registered handler that supports the job."""
        for handler in self._implementations.values():
            if handler.supports(job):
                return handler
        raise HandlerNotFoundError(
            f"No handler found for job type: {getattr(job, 'job_type', None)}",
            details={"registered_handlers": self.list()},
        )


# Global registry instances (singletons)
text_extractor_registry = TextExtractorRegistry()
vectorizer_registry = VectorizerRegistry()
job_registry = JobRegistry()
