"""Observability: structured logging, Prometheus/OpenTelemetry metrics and tracing."""

from intern.observability.context import get_trace_context, new_trace_context, set_trace_context, trace_context
from intern.observability.logging import JsonFormatter, configure_logging
from intern.observability.metrics import (
    ACTIVE_CONNECTIONS,
    CRAWL_ERRORS,
    CRAWL_PASS_DURATION,
    DOCUMENTS_INDEXED,
    DOCUMENTS_REMOVED,
    INDEX_DOC_COUNT,
    QUERY_COUNT,
    QUERY_LATENCY,
    get_metrics,
    init_metrics,
    start_metrics_server,
    track_latency,
)
from intern.observability.tracing import create_span, get_tracer, init_tracing


__all__ = [
    "ACTIVE_CONNECTIONS",
    "CRAWL_ERRORS",
    "CRAWL_PASS_DURATION",
    "DOCUMENTS_INDEXED",
    "DOCUMENTS_REMOVED",
    "INDEX_DOC_COUNT",
    "QUERY_COUNT",
    "QUERY_LATENCY",
    "JsonFormatter",
    "configure_logging",
    "create_span",
    "get_metrics",
    "get_trace_context",
    "get_tracer",
    "init_metrics",
    "init_tracing",
    "new_trace_context",
    "set_trace_context",
    "start_metrics_server",
    "trace_context",
    "track_latency",
]
