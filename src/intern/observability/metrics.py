"""Prometheus metrics bridged to OpenTelemetry instruments."""

from __future__ import annotations

from contextlib import contextmanager
import logging
import time
from typing import TYPE_CHECKING, Any

from opentelemetry import metrics as otel_metrics
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.resources import Resource
from prometheus_client import Counter, Gauge, Histogram, generate_latest, start_http_server


if TYPE_CHECKING:
    from collections.abc import Generator


logger = logging.getLogger(__name__)

_meter_holder: dict[str, Any] = {"meter": None, "provider": None}


def init_metrics(
    service_name: str = "intern",
    resource_attributes: dict[str, str] | None = None,
) -> MeterProvider:
    """Initialize OpenTelemetry metrics."""
    provider = _meter_holder.get("provider")
    if isinstance(provider, MeterProvider):
        return provider

    attributes = {"service.name": service_name}
    if resource_attributes:
        attributes.update(resource_attributes)
    provider = MeterProvider(resource=Resource.create(attributes))
    otel_metrics.set_meter_provider(provider)
    _meter_holder["provider"] = provider
    _meter_holder["meter"] = otel_metrics.get_meter(__name__)
    return provider


def _get_meter():
    meter = _meter_holder.get("meter")
    if meter is None:
        init_metrics()
        meter = _meter_holder.get("meter")
    return meter


def _label_key(labels: dict[str, str]) -> tuple[tuple[str, str], ...]:
    return tuple(sorted(labels.items()))


class _BoundMetric:
    def __init__(self, wrapper: MetricBridge, labels: dict[str, str]) -> None:
        self._wrapper = wrapper
        self._labels = labels

    def inc(self, amount: float = 1.0) -> None:
        self._wrapper.inc(self._labels, amount)

    def observe(self, value: float) -> None:
        self._wrapper.observe(self._labels, value)

    def set(self, value: float) -> None:
        self._wrapper.set(self._labels, value)


class MetricBridge:
    """Bridge Prometheus metrics to OTel instruments."""

    def __init__(
        self,
        prom_metric: Counter | Histogram | Gauge,
        *,
        otel_name: str,
        otel_description: str,
        otel_kind: str,
    ) -> None:
        self._prom_metric = prom_metric
        self._otel_name = otel_name
        self._otel_description = otel_description
        self._otel_kind = otel_kind
        self._otel_instrument = None
        self._last_values: dict[tuple[tuple[str, str], ...], float] = {}

    def labels(self, **labels: str) -> _BoundMetric:
        return _BoundMetric(self, labels)

    def _ensure_otel_instrument(self):
        if self._otel_instrument is not None:
            return self._otel_instrument
        meter = _get_meter()
        if self._otel_kind == "counter":
            self._otel_instrument = meter.create_counter(self._otel_name, description=self._otel_description)
        elif self._otel_kind == "histogram":
            self._otel_instrument = meter.create_histogram(self._otel_name, description=self._otel_description)
        elif self._otel_kind == "gauge":
            self._otel_instrument = meter.create_up_down_counter(self._otel_name, description=self._otel_description)
        else:
            raise ValueError(f"Unknown metric kind: {self._otel_kind}")
        return self._otel_instrument

    def _prom(self, labels: dict[str, str]):
        return self._prom_metric.labels(**labels) if labels else self._prom_metric

    def inc(self, labels: dict[str, str], amount: float) -> None:
        self._prom(labels).inc(amount)
        self._ensure_otel_instrument().add(amount, labels)

    def observe(self, labels: dict[str, str], value: float) -> None:
        self._prom(labels).observe(value)
        self._ensure_otel_instrument().record(value, labels)

    def set(self, labels: dict[str, str], value: float) -> None:
        self._prom(labels).set(value)
        key = _label_key(labels)
        delta = value - self._last_values.get(key, 0.0)
        if delta:
            self._ensure_otel_instrument().add(delta, labels)
        self._last_values[key] = value


_QUERY_LATENCY_PROM = Histogram(
    "intern_query_latency_seconds",
    "Query evaluation latency in seconds",
    ["mode"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)
_QUERY_COUNT_PROM = Counter(
    "intern_queries_total",
    "Queries answered, by outcome",
    ["status"],
)
_ACTIVE_CONNECTIONS_PROM = Gauge(
    "intern_active_connections",
    "Open query server connections",
)
_DOCUMENTS_INDEXED_PROM = Counter(
    "intern_documents_indexed_total",
    "Documents normalized and upserted",
    ["kind"],
)
_DOCUMENTS_REMOVED_PROM = Counter(
    "intern_documents_removed_total",
    "Documents purged from the index",
)
_CRAWL_ERRORS_PROM = Counter(
    "intern_crawl_errors_total",
    "Per-document crawl failures",
    ["error_kind"],
)
_CRAWL_PASS_DURATION_PROM = Histogram(
    "intern_crawl_pass_seconds",
    "Crawl pass duration in seconds",
    ["status"],
    buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0],
)
_INDEX_DOC_COUNT_PROM = Gauge(
    "intern_index_documents",
    "Documents currently in the index",
)

QUERY_LATENCY = MetricBridge(
    _QUERY_LATENCY_PROM,
    otel_name="intern.query.latency",
    otel_description="Query evaluation latency in seconds",
    otel_kind="histogram",
)
QUERY_COUNT = MetricBridge(
    _QUERY_COUNT_PROM,
    otel_name="intern.queries",
    otel_description="Queries answered, by outcome",
    otel_kind="counter",
)
ACTIVE_CONNECTIONS = MetricBridge(
    _ACTIVE_CONNECTIONS_PROM,
    otel_name="intern.connections.active",
    otel_description="Open query server connections",
    otel_kind="gauge",
)
DOCUMENTS_INDEXED = MetricBridge(
    _DOCUMENTS_INDEXED_PROM,
    otel_name="intern.documents.indexed",
    otel_description="Documents normalized and upserted",
    otel_kind="counter",
)
DOCUMENTS_REMOVED = MetricBridge(
    _DOCUMENTS_REMOVED_PROM,
    otel_name="intern.documents.removed",
    otel_description="Documents purged from the index",
    otel_kind="counter",
)
CRAWL_ERRORS = MetricBridge(
    _CRAWL_ERRORS_PROM,
    otel_name="intern.crawl.errors",
    otel_description="Per-document crawl failures",
    otel_kind="counter",
)
CRAWL_PASS_DURATION = MetricBridge(
    _CRAWL_PASS_DURATION_PROM,
    otel_name="intern.crawl.pass.duration",
    otel_description="Crawl pass duration in seconds",
    otel_kind="histogram",
)
INDEX_DOC_COUNT = MetricBridge(
    _INDEX_DOC_COUNT_PROM,
    otel_name="intern.index.documents",
    otel_description="Documents currently in the index",
    otel_kind="gauge",
)


@contextmanager
def track_latency(histogram: MetricBridge, **labels: str) -> Generator[None, None, None]:
    """Context manager to track operation latency."""
    start = time.perf_counter()
    try:
        yield
    finally:
        histogram.labels(**labels).observe(time.perf_counter() - start)


def start_metrics_server(port: int, host: str = "127.0.0.1") -> None:
    """Expose the Prometheus registry over HTTP on ``host:port``."""
    start_http_server(port, addr=host)
    logger.info("Prometheus metrics exposed on http://%s:%d/metrics", host, port)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest()
