"""Line protocol of the query server.

Request: one line of query text (UTF-8, ``\\n`` terminated).
Response: zero or more ``score<TAB>source_path<TAB>snippet`` lines followed by
an empty line. A failed query answers ``!<ErrorKind><TAB><message>`` followed
by an empty line; the connection stays usable.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from intern.domain.model import SearchHit
from intern.search.snippet import flatten


ENCODING = "utf-8"
MAX_LINE_BYTES = 64 * 1024
ERROR_PREFIX = "!"
FIELD_SEPARATOR = "\t"
SCORE_FORMAT = "{:.4f}"


@dataclass(frozen=True)
class ResultLine:
    score: float
    source_path: str
    snippet: str


@dataclass(frozen=True)
class ErrorLine:
    kind: str
    message: str


def _field(value: str) -> str:
    return flatten(value.replace(FIELD_SEPARATOR, " "))


def format_hit(hit: SearchHit) -> str:
    return FIELD_SEPARATOR.join(
        (SCORE_FORMAT.format(hit.score), _field(hit.source_path), _field(hit.matched_snippet))
    )


def encode_results(hits: Iterable[SearchHit]) -> bytes:
    """Result lines plus the terminating empty line."""
    lines = [format_hit(hit) + "\n" for hit in hits]
    return ("".join(lines) + "\n").encode(ENCODING)


def encode_error(kind: str, message: str) -> bytes:
    return f"{ERROR_PREFIX}{kind}{FIELD_SEPARATOR}{_field(message)}\n\n".encode(ENCODING)


def decode_request(line: bytes) -> str:
    return line.decode(ENCODING, errors="replace").rstrip("\r\n")


def parse_response(lines: Sequence[str]) -> list[ResultLine] | ErrorLine:
    """Parse the lines of one response block (without the terminating empty line)."""
    if lines and lines[0].startswith(ERROR_PREFIX):
        kind, _, message = lines[0][len(ERROR_PREFIX) :].partition(FIELD_SEPARATOR)
        return ErrorLine(kind=kind, message=message)
    results = []
    for line in lines:
        score, _, rest = line.partition(FIELD_SEPARATOR)
        source_path, _, snippet = rest.partition(FIELD_SEPARATOR)
        results.append(ResultLine(score=float(score), source_path=source_path, snippet=snippet))
    return results
