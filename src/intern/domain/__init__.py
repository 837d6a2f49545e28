"""Domain layer - value objects shared by the crawler, index and query engine.

Nothing in this package touches SQLite, sockets or the filesystem.
"""

from intern.domain.model import (
    Candidate,
    DocumentRecord,
    IndexableDocument,
    IndexedToken,
    RawDocument,
    SearchHit,
    derive_doc_id,
)


__all__ = [
    "Candidate",
    "DocumentRecord",
    "IndexableDocument",
    "IndexedToken",
    "RawDocument",
    "SearchHit",
    "derive_doc_id",
]
