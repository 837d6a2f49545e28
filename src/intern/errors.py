"""Error taxonomy shared by the crawler, index store, query engine and server.

Crawl-time errors (``ExtractionError``, ``NormalizationError``) are recorded and
skipped. Query-time errors (``QueryParseError``, ``QueryTimeout``) are turned
into protocol error lines. ``IndexCorruption`` flags the index for a rebuild.
"""

from __future__ import annotations

from enum import Enum


class InternError(RuntimeError):
    """Base class carrying the document context needed to reproduce a failure."""

    kind = "InternError"

    def __init__(
        self,
        message: str,
        *,
        source_path: str | None = None,
        doc_id: str | None = None,
        revision: str | None = None,
    ) -> None:
        self.message = message
        self.source_path = source_path
        self.doc_id = doc_id
        self.revision = revision
        super().__init__(self._render())

    def _render(self) -> str:
        context = [
            f"{label}={value}"
            for label, value in (("path", self.source_path), ("doc_id", self.doc_id), ("revision", self.revision))
            if value
        ]
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"

    def context(self) -> dict[str, str]:
        """Return the non-empty document context as logging ``extra`` fields."""
        payload = {"error_kind": self.kind}
        if self.source_path:
            payload["source_path"] = self.source_path
        if self.doc_id:
            payload["doc_id"] = self.doc_id
        if self.revision:
            payload["revision"] = self.revision
        return payload


class NormalizationReason(str, Enum):
    ENCODING_INVALID = "EncodingInvalid"
    EMPTY_CONTENT = "EmptyContent"


class NormalizationError(InternError):
    """Raised when extracted text cannot be turned into index tokens."""

    kind = "NormalizationError"

    def __init__(self, reason: NormalizationReason, message: str | None = None, **context: str | None) -> None:
        self.reason = reason
        super().__init__(message or reason.value, **context)


class ExtractionError(InternError):
    """Raised by source adapters when a file cannot be read as a document."""

    kind = "ExtractionError"


class QueryParseReason(str, Enum):
    UNBALANCED_QUOTES = "UnbalancedQuotes"
    UNKNOWN_OPERATOR = "UnknownOperator"
    UNBALANCED_PARENTHESES = "UnbalancedParentheses"
    EMPTY_QUERY = "EmptyQuery"


class QueryParseError(InternError):
    """Raised for query text that does not follow the query grammar."""

    kind = "QueryParseError"

    def __init__(self, reason: QueryParseReason, message: str, *, offset: int | None = None) -> None:
        self.reason = reason
        self.offset = offset
        detail = f"{reason.value}: {message}"
        if offset is not None:
            detail = f"{detail} at offset {offset}"
        super().__init__(detail)


class QueryTimeout(InternError):
    """Raised when query evaluation runs past its deadline."""

    kind = "QueryTimeout"


class IndexCorruption(InternError):
    """Raised when the on-disk index cannot be trusted; the index is rebuilt from source."""

    kind = "IndexCorruption"


class ConfigError(InternError):
    """Raised when the configuration file is missing or invalid."""

    kind = "ConfigError"
