"""
Job queue metrics.

Counters and timings are tagged by low-cardinality labels only (job type,
result); never by job id.
"""

from collections import defaultdict
from typing import Any, Protocol

from filevault.config.logging import get_logger
from filevault.config.settings import MetricsBackend, Settings

logger = get_logger(__name__)


class MetricsSink(Protocol):
    """Protocol for metric emitters."""

    def increment(self, name: str, value: int = 1, **tags: Any) -> None:
        """Add to a counter."""
        ...

    def timing(self, name: str, seconds: float, **tags: Any) -> None:
        """Record a duration."""
        ...


def _tag_key(tags: dict[str, Any]) -> tuple[tuple[str, str], ...]:
    return tuple(sorted((key, str(value)) for key, value in tags.items()))


class LogMetricsSink:
    """Emits every metric as a structured log event."""

    def increment(self, name: str, value: int = 1, **tags: Any) -> None:
        logger.info("metric", metric=name, kind="counter", value=value, **tags)

    def timing(self, name: str, seconds: float, **tags: Any) -> None:
        logger.info(
            "metric", metric=name, kind="timing", seconds=round(seconds, 4), **tags
        )


class InMemoryMetricsSink:
    """Aggregates metrics in process."""

    def __init__(self):
        self.counters: dict[str, dict[tuple, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self.timings: dict[str, list[tuple[tuple, float]]] = defaultdict(list)

    def increment(self, name: str, value: int = 1, **tags: Any) -> None:
        self.counters[name][_tag_key(tags)] += value

    def timing(self, name: str, seconds: float, **tags: Any) -> None:
        self.timings[name].append((_tag_key(tags), seconds))

    def count(self, name: str, **tags: Any) -> int:
        """Counter total, optionally restricted to series matching ``tags``."""
        wanted = set(_tag_key(tags))
        return sum(
            value
            for key, value in self.counters.get(name, {}).items()
            if wanted.issubset(key)
        )

    def snapshot(self) -> dict[str, int]:
        return {name: self.count(name) for name in sorted(self.counters)}


def create_metrics_sink(settings: Settings) -> MetricsSink:
    """Build the sink selected by configuration."""
    if settings.metrics_backend == MetricsBackend.MEMORY:
        return InMemoryMetricsSink()
    return LogMetricsSink()
