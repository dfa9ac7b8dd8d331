"""Observability helpers for refsearch."""

from __future__ import annotations

import logging
import time

import structlog
from prometheus_client import Counter, Gauge, Histogram

_logger_configured = False


def configure_logging(level: int = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger(name: str = "refsearch") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


class PipelineMetrics:
    """Prometheus metrics for indexing, embedding and search."""

    embedding_latency = Histogram(
        "refsearch_embedding_request_duration_seconds",
        "Time spent in a single embedding provider request.",
        buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    )
    embedded_tokens = Counter(
        "refsearch_embedded_tokens_total",
        "Tokens sent to the embedding provider.",
    )
    rate_limit_hits = Counter(
        "refsearch_rate_limit_hits_total",
        "Times a caller had to wait for, or was refused by, the rate limiter.",
    )
    embedding_errors = Counter(
        "refsearch_embedding_errors_total",
        "Embedding provider failures by classification.",
        ["kind"],
    )
    document_latency = Histogram(
        "refsearch_index_document_duration_seconds",
        "Time spent indexing one document end to end.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    )
    indexed_documents = Counter(
        "refsearch_indexed_documents_total",
        "Documents handled by the index builder by outcome.",
        ["outcome"],
    )
    search_latency = Histogram(
        "refsearch_search_duration_seconds",
        "Time spent scanning the vector store.",
        buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 2.0),
    )
    stored_vectors = Gauge(
        "refsearch_stored_vectors",
        "Number of vectors held by the store.",
    )

    @classmethod
    def observe_embedding(cls, duration_seconds: float, tokens: int) -> None:
        cls.embedding_latency.observe(duration_seconds)
        cls.embedded_tokens.inc(max(tokens, 0))

    @classmethod
    def observe_embedding_error(cls, kind: str) -> None:
        cls.embedding_errors.labels(kind=kind).inc()

    @classmethod
    def observe_rate_limit(cls) -> None:
        cls.rate_limit_hits.inc()

    @classmethod
    def observe_document(cls, duration_seconds: float, outcome: str) -> None:
        if outcome == "indexed":
            cls.document_latency.observe(duration_seconds)
        cls.indexed_documents.labels(outcome=outcome).inc()

    @classmethod
    def observe_search(cls, duration_seconds: float) -> None:
        cls.search_latency.observe(duration_seconds)

    @classmethod
    def set_stored_vectors(cls, count: int) -> None:
        cls.stored_vectors.set(count)


class TimedSection:
    """Context manager capturing elapsed time for metrics."""

    def __init__(self, callback) -> None:
        self._callback = callback
        self._start = 0.0
        self.duration = 0.0

    def __enter__(self) -> "TimedSection":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        self.duration = time.perf_counter() - self._start
        self._callback(self.duration)


__all__ = [
    "PipelineMetrics",
    "TimedSection",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_logger",
]
