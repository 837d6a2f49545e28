"""Integration tests for the query server over real local sockets.

Run with: pytest tests/integration -v
"""

import asyncio
import threading
import time

import pytest
import pytest_asyncio

from intern.client import QueryClient
from intern.search.query_engine import QueryEngine
from intern.server.protocol import MAX_LINE_BYTES, ErrorLine, ResultLine
from intern.server.query_server import QueryServer


async def _read_block(reader: asyncio.StreamReader) -> list[bytes]:
    lines = []
    while True:
        line = await asyncio.wait_for(reader.readline(), timeout=5)
        if line in (b"\n", b""):
            return lines
        lines.append(line)


@pytest.fixture
def engine(store, normalizer, index_text):
    index_text("/notes/pie.md", "Apple pie needs apples and butter.", modified_time=10.0)
    index_text("/notes/bread.md", "Banana bread needs ripe bananas.", modified_time=20.0)
    index_text("/notes/salad.md", "Fruit salad: apple, banana and cherry.", modified_time=30.0)
    return QueryEngine(store, normalizer)


@pytest_asyncio.fixture
async def running_server(engine):
    servers = []

    async def _start(**kwargs) -> QueryServer:
        server = QueryServer(kwargs.pop("engine", engine), **kwargs)
        await server.start()
        servers.append(server)
        return server

    yield _start
    for server in servers:
        await server.stop()


@pytest.mark.integration
class TestQueryServer:
    @pytest.mark.asyncio
    async def test_keep_alive_answers_several_queries(self, running_server):
        server = await running_server()
        reader, writer = await asyncio.open_connection(*server.address)
        try:
            writer.write(b"apple\n")
            first = await _read_block(reader)
            writer.write(b"banana AND NOT cherry\n")
            second = await _read_block(reader)
        finally:
            writer.close()
            await writer.wait_closed()

        assert sorted(line.split(b"\t")[1] for line in first) == [b"/notes/pie.md", b"/notes/salad.md"]
        assert [line.split(b"\t")[1] for line in second] == [b"/notes/bread.md"]

    @pytest.mark.asyncio
    async def test_no_matches_is_an_empty_block(self, running_server):
        server = await running_server()
        reader, writer = await asyncio.open_connection(*server.address)
        try:
            writer.write(b"durian\n")
            assert await _read_block(reader) == []
        finally:
            writer.close()
            await writer.wait_closed()

    @pytest.mark.asyncio
    async def test_parse_error_keeps_connection_open(self, running_server):
        server = await running_server()
        reader, writer = await asyncio.open_connection(*server.address)
        try:
            writer.write(b'"apple pie\n')
            error = await _read_block(reader)
            writer.write(b'"apple pie"\n')
            results = await _read_block(reader)
        finally:
            writer.close()
            await writer.wait_closed()

        assert len(error) == 1
        assert error[0].startswith(b"!QueryParseError\tUnbalancedQuotes")
        assert [line.split(b"\t")[1] for line in results] == [b"/notes/pie.md"]

    @pytest.mark.asyncio
    async def test_single_query_per_connection(self, running_server):
        server = await running_server(keep_alive=False)
        reader, writer = await asyncio.open_connection(*server.address)
        try:
            writer.write(b"apple\n")
            assert len(await _read_block(reader)) == 2
            assert await asyncio.wait_for(reader.read(), timeout=5) == b""
        finally:
            writer.close()

    @pytest.mark.asyncio
    async def test_overlong_line_is_rejected(self, running_server):
        server = await running_server()
        reader, writer = await asyncio.open_connection(*server.address)
        try:
            writer.write(b"a" * (MAX_LINE_BYTES * 2) + b"\n")
            await writer.drain()
            rejected = await _read_block(reader)
            writer.write(b"cherry\n")
            answered = await _read_block(reader)
        finally:
            writer.close()

        assert rejected == [f"!QueryParseError\tquery longer than {MAX_LINE_BYTES} bytes\n".encode()]
        assert [line.split(b"\t")[1] for line in answered] == [b"/notes/salad.md"]

    @pytest.mark.asyncio
    async def test_slow_query_times_out(self, running_server):
        release = threading.Event()

        class StuckEngine:
            def search(self, query_text, *, deadline=None, limit=None, ranked=True):
                while not release.is_set() and not deadline.cancelled.is_set():
                    time.sleep(0.005)
                return []

        server = await running_server(engine=StuckEngine(), timeout_ms=50, grace_seconds=0.05)
        reader, writer = await asyncio.open_connection(*server.address)
        try:
            started = time.monotonic()
            writer.write(b"anything\n")
            block = await _read_block(reader)
            elapsed = time.monotonic() - started
        finally:
            release.set()
            writer.close()

        assert block == [b"!QueryTimeout\tquery exceeded 50 ms\n"]
        assert elapsed < 2

    @pytest.mark.asyncio
    async def test_concurrent_connections(self, running_server):
        server = await running_server()

        async def _ask(text: bytes) -> list[bytes]:
            reader, writer = await asyncio.open_connection(*server.address)
            try:
                writer.write(text + b"\n")
                return await _read_block(reader)
            finally:
                writer.close()

        blocks = await asyncio.gather(*(_ask(b"banana") for _ in range(8)))

        assert all(len(block) == 2 for block in blocks)

    @pytest.mark.asyncio
    async def test_blocking_client(self, running_server):
        server = await running_server()
        host, port = server.address

        def _use_client():
            with QueryClient(host, port, timeout=5) as client:
                return client.ask("cherry"), client.ask("apple AND")

        results, error = await asyncio.to_thread(_use_client)

        assert results == [ResultLine(score=results[0].score, source_path="/notes/salad.md", snippet=results[0].snippet)]
        assert "cherry" in results[0].snippet
        assert isinstance(error, ErrorLine)
