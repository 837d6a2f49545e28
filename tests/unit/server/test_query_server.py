"""Unit tests for ``QueryServer.answer`` with stand-in engines."""

import threading
import time

from prometheus_client import REGISTRY
import pytest

from intern.domain.model import SearchHit
from intern.errors import IndexCorruption, QueryParseError, QueryParseReason
from intern.observability.context import get_trace_context
from intern.server.query_server import QueryServer


class StubEngine:
    def __init__(self, hits=None, error: Exception | None = None) -> None:
        self.hits = hits or []
        self.error = error
        self.calls: list[tuple[str, int | None]] = []
        self.contexts: list[dict] = []

    def search(self, query_text, *, deadline=None, limit=None, ranked=True):
        self.calls.append((query_text, limit))
        self.contexts.append(get_trace_context())
        if self.error is not None:
            raise self.error
        return self.hits


class SlowEngine:
    """Ignores the deadline until it is cancelled, like a worker stuck in one step."""

    def __init__(self) -> None:
        self.cancelled = threading.Event()

    def search(self, query_text, *, deadline=None, limit=None, ranked=True):
        while not deadline.cancelled.is_set():
            time.sleep(0.005)
        self.cancelled.set()
        return []


@pytest.mark.unit
class TestAnswer:
    @pytest.mark.asyncio
    async def test_results(self):
        engine = StubEngine([SearchHit(doc_id="d1", score=2.0, source_path="/a.md", matched_snippet="apple")])
        server = QueryServer(engine, max_results=5)

        payload = await server.answer("apple", connection_id=7)

        assert payload == b"2.0000\t/a.md\tapple\n\n"
        assert engine.calls == [("apple", 5)]
        assert engine.contexts[0]["connection"] == 7

    @pytest.mark.asyncio
    async def test_parse_error(self):
        error = QueryParseError(QueryParseReason.UNBALANCED_QUOTES, "missing closing quote", offset=4)
        server = QueryServer(StubEngine(error=error))

        payload = await server.answer('say "hi')

        assert payload == b"!QueryParseError\tUnbalancedQuotes: missing closing quote at offset 4\n\n"

    @pytest.mark.asyncio
    async def test_timeout_cancels_worker(self):
        engine = SlowEngine()
        server = QueryServer(engine, timeout_ms=20, grace_seconds=0.02)

        payload = await server.answer("anything")

        assert payload == b"!QueryTimeout\tquery exceeded 20 ms\n\n"
        assert engine.cancelled.wait(2)

    @pytest.mark.asyncio
    async def test_index_corruption(self):
        server = QueryServer(StubEngine(error=IndexCorruption("database disk image is malformed")))

        payload = await server.answer("apple")

        assert payload.startswith(b"!IndexCorruption\tindex is being rebuilt")

    @pytest.mark.asyncio
    async def test_unexpected_error_is_reported_without_details(self):
        server = QueryServer(StubEngine(error=KeyError("secret")))

        payload = await server.answer("apple")

        assert payload == b"!InternalError\tquery failed: KeyError\n\n"


def _latency_count(mode: str) -> float:
    return REGISTRY.get_sample_value("intern_query_latency_seconds_count", {"mode": mode}) or 0.0


@pytest.mark.unit
class TestLatencyMetrics:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(("query", "mode"), [("@on 2024-03-05", "date"), ("@ago 2", "date"), ("apple", "ranked")])
    async def test_latency_is_labelled_with_query_mode(self, query, mode):
        server = QueryServer(StubEngine())
        before = _latency_count(mode)

        await server.answer(query)

        assert _latency_count(mode) == before + 1

    @pytest.mark.asyncio
    async def test_at_word_is_a_ranked_query(self):
        server = QueryServer(StubEngine())
        date_before = _latency_count("date")
        ranked_before = _latency_count("ranked")

        await server.answer("@alice")

        assert _latency_count("date") == date_before
        assert _latency_count("ranked") == ranked_before + 1
