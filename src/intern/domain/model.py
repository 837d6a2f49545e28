"""Domain model - value objects passed between crawler, normalizer and index.

Value objects that cross the adapter boundary are Pydantic dataclasses so
adapters get validation at construction. The hot-path token containers stay
plain frozen dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass as std_dataclass, field
from datetime import datetime, timezone
import hashlib
from typing import Annotated, Any

from pydantic import Field
from pydantic.dataclasses import dataclass


DOC_ID_LENGTH = 32


def derive_doc_id(source_path: str) -> str:
    """Return the stable identifier for a source path.

    Content changes never change identity: the id depends only on the path.
    """
    return hashlib.sha256(source_path.encode("utf-8")).hexdigest()[:DOC_ID_LENGTH]


@dataclass(frozen=True)
class Candidate:
    """A document location reported by an adapter listing, with its current revision."""

    path: Annotated[str, Field(min_length=1)]
    revision: Annotated[str, Field(min_length=1)]
    modified_time: float = 0.0


@dataclass(frozen=True)
class RawDocument:
    """Extracted text and metadata produced by a source adapter."""

    source_path: Annotated[str, Field(min_length=1)]
    source_kind: Annotated[str, Field(min_length=1)]
    extracted_text: str | bytes
    revision: Annotated[str, Field(min_length=1)]
    extracted_metadata: dict[str, Any] = Field(default_factory=dict)
    modified_time: float = 0.0

    @property
    def doc_id(self) -> str:
        return derive_doc_id(self.source_path)


@std_dataclass(frozen=True, slots=True)
class IndexedToken:
    """A normalized term with its position in the unfiltered token stream."""

    term: str
    position: int
    start_char: int = 0
    end_char: int = 0


@std_dataclass(frozen=True)
class IndexableDocument:
    """Normalized document ready for the index. Superseded, never mutated, on re-index."""

    doc_id: str
    source_path: str
    source_kind: str
    revision: str
    tokens: tuple[IndexedToken, ...]
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)
    modified_time: float = 0.0

    @property
    def length(self) -> int:
        return len(self.tokens)

    def term_positions(self) -> dict[str, list[int]]:
        """Group token positions by term, preserving position order."""
        grouped: dict[str, list[int]] = {}
        for token in self.tokens:
            grouped.setdefault(token.term, []).append(token.position)
        return grouped


@std_dataclass(frozen=True, slots=True)
class DocumentRecord:
    """Catalog entry: the index's view of one document."""

    doc_id: str
    source_path: str
    source_kind: str
    revision: str
    length: int
    last_indexed_time: float
    modified_time: float = 0.0
    title: str = ""

    @property
    def last_indexed_at(self) -> datetime:
        return datetime.fromtimestamp(self.last_indexed_time, tz=timezone.utc)


@std_dataclass(frozen=True, slots=True)
class SearchHit:
    """One ranked query result."""

    doc_id: str
    score: float
    source_path: str
    matched_snippet: str
    last_indexed_time: float = 0.0
