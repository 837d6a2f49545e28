"""Blocking client for the INTERN query server."""

from __future__ import annotations

import logging
import socket
from types import TracebackType

from intern.config import DEFAULT_QUERY_PORT
from intern.server.protocol import ENCODING, ErrorLine, ResultLine, parse_response


logger = logging.getLogger(__name__)


class QueryClient:
    """One TCP connection; several queries can be sent when the server keeps it alive.

    Example:
        with QueryClient(port=48813) as client:
            for result in client.ask("apple AND banana"):
                print(result.source_path)
    """

    def __init__(self, host: str = "127.0.0.1", port: int = DEFAULT_QUERY_PORT, *, timeout: float = 10.0) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self._sock: socket.socket | None = None
        self._reader = None

    def connect(self) -> QueryClient:
        if self._sock is None:
            self._sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
            self._reader = self._sock.makefile("rb")
        return self

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()
            self._reader = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def __enter__(self) -> QueryClient:
        return self.connect()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def ask(self, query_text: str) -> list[ResultLine] | ErrorLine:
        """Send one query and read its response block.

        Raises:
            ConnectionError: when the server closes the connection mid-response
        """
        self.connect()
        assert self._sock is not None and self._reader is not None
        line = " ".join(query_text.splitlines())
        self._sock.sendall((line + "\n").encode(ENCODING))

        lines: list[str] = []
        while True:
            raw = self._reader.readline()
            if not raw:
                raise ConnectionError("server closed the connection before the end of the response")
            decoded = raw.decode(ENCODING, errors="replace").rstrip("\r\n")
            if not decoded:
                break
            lines.append(decoded)
        return parse_response(lines)


def ask(query_text: str, *, host: str = "127.0.0.1", port: int = DEFAULT_QUERY_PORT, timeout: float = 10.0):
    """Send a single query on a fresh connection."""
    with QueryClient(host, port, timeout=timeout) as client:
        return client.ask(query_text)
