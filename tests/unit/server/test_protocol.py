"""Unit tests for the query line protocol."""

import pytest

from intern.domain.model import SearchHit
from intern.server.protocol import (
    ErrorLine,
    ResultLine,
    decode_request,
    encode_error,
    encode_results,
    format_hit,
    parse_response,
)


def _hit(path: str, score: float, snippet: str) -> SearchHit:
    return SearchHit(doc_id="d", score=score, source_path=path, matched_snippet=snippet)


@pytest.mark.unit
class TestEncoding:
    def test_result_lines_end_with_blank_line(self):
        payload = encode_results([_hit("/a.md", 1.23456, "apple pie"), _hit("/b.md", 0.5, "banana")])

        assert payload == b"1.2346\t/a.md\tapple pie\n0.5000\t/b.md\tbanana\n\n"

    def test_no_results_is_just_the_terminator(self):
        assert encode_results([]) == b"\n"

    def test_tabs_and_newlines_are_flattened(self):
        line = format_hit(_hit("/odd\tname.md", 1.0, "line one\nline\ttwo"))

        assert line == "1.0000\t/odd name.md\tline one line two"

    def test_error_block(self):
        assert encode_error("QueryParseError", "bad\nquery") == b"!QueryParseError\tbad query\n\n"

    def test_decode_request_strips_line_ending(self):
        assert decode_request(b"apple AND pie\r\n") == "apple AND pie"
        assert decode_request(b"caf\xe9\n") == "caf�"


@pytest.mark.unit
class TestParseResponse:
    def test_results(self):
        parsed = parse_response(["1.5000\t/a.md\tapple pie", "0.2500\t/b.md\t"])

        assert parsed == [ResultLine(1.5, "/a.md", "apple pie"), ResultLine(0.25, "/b.md", "")]

    def test_error(self):
        assert parse_response(["!QueryTimeout\tquery exceeded 10 ms"]) == ErrorLine("QueryTimeout", "query exceeded 10 ms")

    def test_empty(self):
        assert parse_response([]) == []
