"""In-memory document catalog guarded by a single short-held lock."""

from __future__ import annotations

from collections.abc import Iterable
import threading

from intern.domain.model import DocumentRecord


class DocumentCatalog:
    """doc_id -> ``DocumentRecord`` map used for staleness checks.

    The lock only guards dictionary access; callers never perform I/O while
    holding it. The SQLite ``documents`` table is the persisted copy and the
    index store refreshes this map after each committed write.
    """

    def __init__(self, records: Iterable[DocumentRecord] = ()) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, DocumentRecord] = {record.doc_id: record for record in records}

    def get(self, doc_id: str) -> DocumentRecord | None:
        with self._lock:
            return self._records.get(doc_id)

    def revision_of(self, doc_id: str) -> str | None:
        with self._lock:
            record = self._records.get(doc_id)
            return record.revision if record else None

    def is_stale(self, doc_id: str, revision: str) -> bool:
        """True when the document is unknown or its stored revision differs from ``revision``."""
        return self.revision_of(doc_id) != revision

    def put(self, record: DocumentRecord) -> None:
        with self._lock:
            self._records[record.doc_id] = record

    def discard(self, doc_id: str) -> DocumentRecord | None:
        with self._lock:
            return self._records.pop(doc_id, None)

    def replace_all(self, records: Iterable[DocumentRecord]) -> None:
        fresh = {record.doc_id: record for record in records}
        with self._lock:
            self._records = fresh

    def records(self) -> list[DocumentRecord]:
        with self._lock:
            return list(self._records.values())

    def doc_ids_under(self, prefix: str) -> set[str]:
        """doc_ids whose source path lies under ``prefix`` (a directory path or mailbox path)."""
        with self._lock:
            return {
                doc_id
                for doc_id, record in self._records.items()
                if record.source_path == prefix or record.source_path.startswith(_with_separator(prefix))
                or record.source_path.startswith(f"{prefix}#")
            }

    def __contains__(self, doc_id: object) -> bool:
        with self._lock:
            return doc_id in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


def _with_separator(prefix: str) -> str:
    return prefix if prefix.endswith("/") else prefix + "/"
