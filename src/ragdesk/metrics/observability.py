"""Observability helpers for ragdesk."""

from __future__ import annotations

import logging
import time
from contextvars import ContextVar
from typing import Iterable

import structlog
from prometheus_client import Counter, Gauge, Histogram

_logger_configured = False
_correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")

BREAKER_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


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
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()
    _correlation_id_var.set("-")


def get_correlation_id() -> str:
    return _correlation_id_var.get()


def get_logger(name: str = "ragdesk") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def _clamp_score(score: float) -> float:
    if score < 0.0:
        return 0.0
    if score > 1.0:
        return 1.0
    return score


class PipelineMetrics:
    """Prometheus metrics for pipeline stages and external dependencies."""

    ingestion_latency = Histogram(
        "ragdesk_ingestion_duration_seconds",
        "Time spent ingesting one document.",
        buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
    )
    ingestion_chunks = Histogram(
        "ragdesk_ingestion_chunk_count",
        "Chunks produced per ingested document.",
        buckets=(0, 1, 5, 10, 20, 40, 80, 160),
    )
    documents_processed = Counter(
        "ragdesk_documents_processed_total",
        "Documents that finished ingestion.",
        ["status"],
    )
    retrieval_latency = Histogram(
        "ragdesk_retrieval_duration_seconds",
        "Time spent retrieving context chunks.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0),
    )
    retrieved_chunk_count = Histogram(
        "ragdesk_retrieved_chunk_count",
        "Number of chunks returned by retrieval.",
        buckets=(0, 1, 2, 3, 5, 8, 13),
    )
    grounding_score = Histogram(
        "ragdesk_grounding_score",
        "Similarity score of retrieved chunks.",
        buckets=(0.0, 0.25, 0.5, 0.75, 1.0),
    )
    generation_latency = Histogram(
        "ragdesk_generation_duration_seconds",
        "Time spent generating answers.",
        buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0),
    )
    queries = Counter(
        "ragdesk_queries_total",
        "Queries answered, labelled by cache outcome.",
        ["cache"],
    )
    external_calls = Counter(
        "ragdesk_external_calls_total",
        "Calls made through a circuit breaker.",
        ["dependency", "outcome"],
    )
    external_latency = Histogram(
        "ragdesk_external_call_duration_seconds",
        "Latency of calls made through a circuit breaker.",
        ["dependency", "outcome"],
        buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0),
    )
    breaker_state = Gauge(
        "ragdesk_circuit_breaker_state",
        "Circuit breaker state (0 closed, 1 half-open, 2 open).",
        ["dependency"],
    )

    @classmethod
    def observe_ingestion(cls, duration_seconds: float, chunk_count: int, status: str) -> None:
        cls.ingestion_latency.observe(duration_seconds)
        cls.ingestion_chunks.observe(chunk_count)
        cls.documents_processed.labels(status=status).inc()

    @classmethod
    def observe_retrieval(
        cls,
        duration_seconds: float,
        chunk_count: int,
        scores: Iterable[float],
    ) -> None:
        cls.retrieval_latency.observe(duration_seconds)
        cls.retrieved_chunk_count.observe(chunk_count)
        for score in scores:
            cls.grounding_score.observe(_clamp_score(score))

    @classmethod
    def observe_generation(cls, duration_seconds: float) -> None:
        cls.generation_latency.observe(duration_seconds)

    @classmethod
    def observe_query(cls, cached: bool) -> None:
        cls.queries.labels(cache="hit" if cached else "miss").inc()

    @classmethod
    def observe_external_call(cls, dependency: str, outcome: str, duration_seconds: float) -> None:
        cls.external_calls.labels(dependency=dependency, outcome=outcome).inc()
        cls.external_latency.labels(dependency=dependency, outcome=outcome).observe(duration_seconds)

    @classmethod
    def set_breaker_state(cls, dependency: str, state: str) -> None:
        cls.breaker_state.labels(dependency=dependency).set(BREAKER_STATE_VALUES.get(state, 0))


class TimedSection:
    """Context manager capturing elapsed time for metrics."""

    def __init__(self, callback) -> None:
        self._callback = callback
        self._start = 0.0

    def __enter__(self) -> "TimedSection":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        duration = time.perf_counter() - self._start
        self._callback(duration)


__all__ = [
    "PipelineMetrics",
    "TimedSection",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
]
