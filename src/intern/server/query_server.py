"""Asyncio TCP server answering one query per line."""

from __future__ import annotations

import asyncio
from concurrent.futures import Executor
from contextlib import suppress
import contextvars
from itertools import count
import logging
import time

from intern.domain.model import SearchHit
from intern.errors import IndexCorruption, QueryParseError, QueryTimeout
from intern.observability.context import new_trace_context
from intern.observability.metrics import ACTIVE_CONNECTIONS, QUERY_COUNT, QUERY_LATENCY
from intern.search.query_engine import Deadline, QueryEngine, is_date_query
from intern.server.protocol import MAX_LINE_BYTES, decode_request, encode_error, encode_results


logger = logging.getLogger(__name__)

TIMEOUT_GRACE_SECONDS = 0.5


class QueryServer:
    """Serves queries over local TCP.

    Each connection is handled by its own coroutine and keeps no state
    outside it. Query evaluation runs on the worker pool under a
    ``Deadline``; when the budget runs out the client receives
    ``!QueryTimeout`` even if the worker has not noticed yet.
    """

    def __init__(
        self,
        engine: QueryEngine,
        executor: Executor | None = None,
        *,
        host: str = "127.0.0.1",
        port: int = 0,
        timeout_ms: int = 2000,
        keep_alive: bool = True,
        max_results: int | None = None,
        grace_seconds: float = TIMEOUT_GRACE_SECONDS,
    ) -> None:
        self.engine = engine
        self.executor = executor
        self.host = host
        self.port = port
        self.timeout_ms = timeout_ms
        self.keep_alive = keep_alive
        self.max_results = max_results
        self.grace_seconds = grace_seconds
        self._server: asyncio.base_events.Server | None = None
        self._writers: set[asyncio.StreamWriter] = set()
        self._connection_ids = count(1)

    @property
    def address(self) -> tuple[str, int]:
        if self._server is None or not self._server.sockets:
            return self.host, self.port
        sockname = self._server.sockets[0].getsockname()
        return sockname[0], sockname[1]

    async def start(self) -> tuple[str, int]:
        self._server = await asyncio.start_server(self._handle_connection, self.host, self.port, limit=MAX_LINE_BYTES)
        host, port = self.address
        logger.info("Query server listening on %s:%d", host, port)
        return host, port

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        assert self._server is not None
        async with self._server:
            await self._server.serve_forever()

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        for writer in list(self._writers):
            writer.close()
        await self._server.wait_closed()
        self._server = None
        logger.info("Query server stopped")

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        connection_id = next(self._connection_ids)
        peer = writer.get_extra_info("peername")
        self._writers.add(writer)
        ACTIVE_CONNECTIONS.labels().set(len(self._writers))
        logger.debug("Connection %d opened from %s", connection_id, peer)
        try:
            while True:
                try:
                    line = await reader.readuntil(b"\n")
                except asyncio.IncompleteReadError as exc:
                    line = exc.partial
                except asyncio.LimitOverrunError:
                    if not await _skip_line(reader):
                        break
                    writer.write(encode_error(QueryParseError.kind, f"query longer than {MAX_LINE_BYTES} bytes"))
                    await writer.drain()
                    if not self.keep_alive:
                        break
                    continue
                if not line:
                    break
                query_text = decode_request(line)
                writer.write(await self.answer(query_text, connection_id=connection_id))
                await writer.drain()
                if not self.keep_alive:
                    break
        except ConnectionError as exc:
            logger.debug("Connection %d dropped: %s", connection_id, exc)
        finally:
            self._writers.discard(writer)
            ACTIVE_CONNECTIONS.labels().set(len(self._writers))
            writer.close()
            with suppress(ConnectionError):
                await writer.wait_closed()
            logger.debug("Connection %d closed", connection_id)

    async def answer(self, query_text: str, *, connection_id: int | None = None) -> bytes:
        """Evaluate one query and return the encoded response block."""
        new_trace_context(connection=connection_id, query_id=f"{connection_id}-{time.monotonic_ns()}")
        deadline = Deadline.after_ms(self.timeout_ms)
        loop = asyncio.get_running_loop()
        context = contextvars.copy_context()
        started = time.perf_counter()
        status = "ok"
        mode = "date" if is_date_query(query_text) else "ranked"
        try:
            future = loop.run_in_executor(self.executor, context.run, self._search, query_text, deadline)
            hits = await asyncio.wait_for(future, timeout=self.timeout_ms / 1000.0 + self.grace_seconds)
            return encode_results(hits)
        except (asyncio.TimeoutError, QueryTimeout):
            deadline.cancel()
            status = "timeout"
            logger.warning("Query timed out after %d ms: %r", self.timeout_ms, query_text)
            return encode_error(QueryTimeout.kind, f"query exceeded {self.timeout_ms} ms")
        except QueryParseError as exc:
            status = "rejected"
            logger.info("Rejected query %r: %s", query_text, exc)
            return encode_error(exc.kind, str(exc))
        except IndexCorruption as exc:
            status = "error"
            logger.error("Index unavailable while answering %r: %s", query_text, exc)
            return encode_error(exc.kind, "index is being rebuilt; try again later")
        except Exception as exc:
            status = "error"
            logger.error("Query %r failed", query_text, exc_info=True)
            return encode_error("InternalError", f"query failed: {type(exc).__name__}")
        finally:
            QUERY_COUNT.labels(status=status).inc()
            QUERY_LATENCY.labels(mode=mode).observe(time.perf_counter() - started)

    def _search(self, query_text: str, deadline: Deadline) -> list[SearchHit]:
        return self.engine.search(query_text, deadline=deadline, limit=self.max_results)


async def _skip_line(reader: asyncio.StreamReader) -> bool:
    """Discard the rest of an over-long request line; False when the peer closed first."""
    while True:
        try:
            await reader.readuntil(b"\n")
            return True
        except asyncio.LimitOverrunError as exc:
            await reader.readexactly(exc.consumed)
        except asyncio.IncompleteReadError:
            return False
