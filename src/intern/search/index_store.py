"""SQLite-backed inverted index with per-document writes and snapshot reads.

Layout (``FORMAT_VERSION``):

* ``metadata``      - key/value pairs (format version, creation time)
* ``documents``     - the persisted catalog plus stored text for snippets
* ``postings``      - one row per (term, doc_id) with binary-encoded positions
* ``crawl_errors``  - last failure per document so unchanged failures are not retried

Concurrency model:

* Writes take the per-doc_id lock from ``KeyedLock`` and run as one SQLite
  transaction, so a document's postings and catalog row change together.
  Writers on different doc_ids never wait on each other's locks; SQLite
  serializes their commits for the length of one document transaction.
* Reads go through ``snapshot()``: one read transaction on a thread-local
  connection. WAL mode gives that transaction a stable view, so no query ever
  sees half of an upsert and readers never block on writers.
* The in-memory ``DocumentCatalog`` mirrors the ``documents`` table for
  staleness checks and is updated only after a commit succeeds.
"""

from __future__ import annotations

from array import array
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import logging
from pathlib import Path
import sqlite3
import threading
import time
from typing import Any

import orjson

from intern.domain.model import DocumentRecord, IndexableDocument
from intern.errors import IndexCorruption
from intern.search.catalog import DocumentCatalog
from intern.search.locks import KeyedLock
from intern.search.models import Posting
from intern.search.sqlite_pragmas import apply_read_pragmas, apply_write_pragmas


logger = logging.getLogger(__name__)

FORMAT_VERSION = "intern-index-v1"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT
) WITHOUT ROWID;

CREATE TABLE IF NOT EXISTS documents (
    doc_id TEXT PRIMARY KEY,
    source_path TEXT NOT NULL,
    source_kind TEXT NOT NULL,
    revision TEXT NOT NULL,
    length INTEGER NOT NULL,
    last_indexed_time REAL NOT NULL,
    modified_time REAL NOT NULL DEFAULT 0,
    fingerprint TEXT NOT NULL,
    title TEXT,
    metadata_json BLOB,
    body TEXT
) WITHOUT ROWID;

CREATE TABLE IF NOT EXISTS postings (
    term TEXT NOT NULL,
    doc_id TEXT NOT NULL REFERENCES documents(doc_id),
    tf INTEGER NOT NULL,
    positions_blob BLOB NOT NULL,
    PRIMARY KEY (term, doc_id)
) WITHOUT ROWID;

CREATE INDEX IF NOT EXISTS idx_postings_doc ON postings(doc_id);
CREATE INDEX IF NOT EXISTS idx_documents_modified ON documents(modified_time);

CREATE TABLE IF NOT EXISTS crawl_errors (
    doc_id TEXT PRIMARY KEY,
    source_path TEXT NOT NULL,
    revision TEXT,
    error_kind TEXT NOT NULL,
    message TEXT NOT NULL,
    recorded_at TEXT NOT NULL
) WITHOUT ROWID;
"""

_RECORD_COLUMNS = (
    "doc_id, source_path, source_kind, revision, length, last_indexed_time, modified_time, title"
)

_MAX_STORED_BODY_CHARS = 65536


def _record_from_row(row: Sequence[Any]) -> DocumentRecord:
    return DocumentRecord(
        doc_id=row[0],
        source_path=row[1],
        source_kind=row[2],
        revision=row[3],
        length=int(row[4]),
        last_indexed_time=float(row[5]),
        modified_time=float(row[6] or 0.0),
        title=row[7] or "",
    )


def _fingerprint(document: IndexableDocument) -> str:
    digest = hashlib.sha1()
    for token in document.tokens:
        digest.update(token.term.encode("utf-8"))
        digest.update(b"\x1f")
        digest.update(str(token.position).encode("ascii"))
        digest.update(b"\x1e")
    return digest.hexdigest()


@dataclass(frozen=True)
class CrawlErrorRecord:
    """Last recorded crawl failure for a document."""

    doc_id: str
    source_path: str
    revision: str | None
    error_kind: str
    message: str
    recorded_at: str


@dataclass(frozen=True)
class IndexStats:
    document_count: int
    term_count: int
    posting_count: int
    crawl_error_count: int
    db_size_bytes: int
    format_version: str


class IndexSnapshot:
    """Read-only view of the index bound to one SQLite read transaction."""

    def __init__(self, conn: sqlite3.Connection, store: InvertedIndexStore) -> None:
        self._conn = conn
        self._store = store
        self._corpus: tuple[int, float] | None = None

    def lookup(self, term: str) -> list[Posting]:
        """Postings for ``term`` ordered by doc_id."""
        rows = self._execute("SELECT doc_id, positions_blob FROM postings WHERE term = ? ORDER BY doc_id", (term,))
        return [Posting.from_blob(doc_id, blob) for doc_id, blob in rows]

    def document_frequency(self, term: str) -> int:
        row = self._execute("SELECT COUNT(*) FROM postings WHERE term = ?", (term,))
        return int(row[0][0]) if row else 0

    def all_doc_ids(self) -> list[str]:
        """The full catalog domain, ordered by doc_id."""
        return [row[0] for row in self._execute("SELECT doc_id FROM documents ORDER BY doc_id")]

    def document(self, doc_id: str) -> DocumentRecord | None:
        rows = self._execute(f"SELECT {_RECORD_COLUMNS} FROM documents WHERE doc_id = ?", (doc_id,))
        return _record_from_row(rows[0]) if rows else None

    def documents(self, doc_ids: Iterable[str]) -> dict[str, DocumentRecord]:
        wanted = list(doc_ids)
        records: dict[str, DocumentRecord] = {}
        for offset in range(0, len(wanted), 500):
            chunk = wanted[offset : offset + 500]
            placeholders = ", ".join("?" for _ in chunk)
            rows = self._execute(f"SELECT {_RECORD_COLUMNS} FROM documents WHERE doc_id IN ({placeholders})", chunk)
            for row in rows:
                record = _record_from_row(row)
                records[record.doc_id] = record
        return records

    def document_text(self, doc_id: str) -> str:
        rows = self._execute("SELECT body FROM documents WHERE doc_id = ?", (doc_id,))
        return (rows[0][0] or "") if rows else ""

    @property
    def document_count(self) -> int:
        return self._corpus_stats()[0]

    @property
    def average_length(self) -> float:
        return self._corpus_stats()[1]

    def documents_modified_between(self, start: float, end: float) -> list[DocumentRecord]:
        rows = self._execute(
            f"SELECT {_RECORD_COLUMNS} FROM documents "
            "WHERE modified_time >= ? AND modified_time < ? ORDER BY modified_time, source_path",
            (start, end),
        )
        return [_record_from_row(row) for row in rows]

    def _corpus_stats(self) -> tuple[int, float]:
        if self._corpus is None:
            row = self._execute("SELECT COUNT(*), AVG(length) FROM documents")[0]
            self._corpus = (int(row[0] or 0), float(row[1] or 0.0))
        return self._corpus

    def _execute(self, query: str, params: Sequence[Any] = ()) -> list[tuple]:
        try:
            return self._conn.execute(query, params).fetchall()
        except sqlite3.OperationalError:
            raise
        except sqlite3.DatabaseError as exc:
            raise self._store.mark_corrupted(exc) from exc


class InvertedIndexStore:
    """Persistent term -> postings index plus the document catalog."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.catalog = DocumentCatalog()
        self._write_locks = KeyedLock()
        self._local = threading.local()
        self._connections_lock = threading.Lock()
        self._connections: list[sqlite3.Connection] = []
        self._generation = 0
        self._needs_rebuild = False
        self._opened = False

    @property
    def needs_rebuild(self) -> bool:
        """True after corruption or a format change; the next crawl pass re-indexes everything."""
        return self._needs_rebuild

    def open(self) -> InvertedIndexStore:
        """Open (or create) the index and load the catalog into memory."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._initialize()
        except sqlite3.OperationalError:
            raise
        except (sqlite3.DatabaseError, IndexCorruption) as exc:
            logger.error("Index at %s is corrupt (%s); moving it aside and rebuilding", self.db_path, exc)
            self._quarantine()
            self._initialize()
            self._needs_rebuild = True
        self._opened = True
        logger.info("Index opened at %s with %d documents", self.db_path, len(self.catalog))
        return self

    def close(self) -> None:
        with self._connections_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error as exc:
                    logger.warning("Failed to close SQLite connection for %s: %s", self.db_path, exc)
            self._connections.clear()
            self._generation += 1
        self._opened = False

    def __enter__(self) -> InvertedIndexStore:
        return self if self._opened else self.open()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def upsert(self, document: IndexableDocument) -> DocumentRecord:
        """Replace every posting of ``document.doc_id`` and its catalog entry in one transaction.

        Upserting the same content at the same revision again is a no-op and
        returns the existing record unchanged.
        """
        fingerprint = _fingerprint(document)
        with self._write_locks.hold(document.doc_id):
            existing = self.catalog.get(document.doc_id)
            if existing is not None and existing.revision == document.revision:
                if self._stored_fingerprint(document.doc_id) == fingerprint:
                    return existing

            record = DocumentRecord(
                doc_id=document.doc_id,
                source_path=document.source_path,
                source_kind=document.source_kind,
                revision=document.revision,
                length=document.length,
                last_indexed_time=time.time(),
                modified_time=document.modified_time,
                title=str(document.metadata.get("title") or ""),
            )
            rows = [
                (term, document.doc_id, len(positions), Posting(document.doc_id, array("I", positions)).to_blob())
                for term, positions in document.term_positions().items()
            ]
            with self._write_transaction() as conn:
                conn.execute("DELETE FROM postings WHERE doc_id = ?", (document.doc_id,))
                conn.execute(
                    "INSERT INTO documents (doc_id, source_path, source_kind, revision, length, last_indexed_time, "
                    "modified_time, fingerprint, title, metadata_json, body) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT(doc_id) DO UPDATE SET source_path = excluded.source_path, "
                    "source_kind = excluded.source_kind, revision = excluded.revision, length = excluded.length, "
                    "last_indexed_time = excluded.last_indexed_time, modified_time = excluded.modified_time, "
                    "fingerprint = excluded.fingerprint, title = excluded.title, "
                    "metadata_json = excluded.metadata_json, body = excluded.body",
                    (
                        record.doc_id,
                        record.source_path,
                        record.source_kind,
                        record.revision,
                        record.length,
                        record.last_indexed_time,
                        record.modified_time,
                        fingerprint,
                        record.title,
                        orjson.dumps(document.metadata, default=str, option=orjson.OPT_NON_STR_KEYS),
                        document.text[:_MAX_STORED_BODY_CHARS],
                    ),
                )
                conn.executemany(
                    "INSERT INTO postings (term, doc_id, tf, positions_blob) VALUES (?, ?, ?, ?)",
                    rows,
                )
                conn.execute("DELETE FROM crawl_errors WHERE doc_id = ?", (document.doc_id,))
            self.catalog.put(record)

        logger.debug("Indexed %s (%d terms, revision %s)", document.source_path, len(rows), document.revision)
        return record

    def remove(self, doc_id: str) -> bool:
        """Purge a document's postings and catalog entry. Removing an unknown doc_id is a no-op."""
        with self._write_locks.hold(doc_id):
            with self._write_transaction() as conn:
                conn.execute("DELETE FROM postings WHERE doc_id = ?", (doc_id,))
                deleted = conn.execute("DELETE FROM documents WHERE doc_id = ?", (doc_id,)).rowcount
                conn.execute("DELETE FROM crawl_errors WHERE doc_id = ?", (doc_id,))
            self.catalog.discard(doc_id)
        if deleted:
            logger.debug("Removed %s from index", doc_id)
        return bool(deleted)

    def lookup(self, term: str) -> list[Posting]:
        with self.snapshot() as snapshot:
            return snapshot.lookup(term)

    @contextmanager
    def snapshot(self) -> Iterator[IndexSnapshot]:
        """Yield a consistent read-only view; nested use on one thread reuses the open transaction."""
        conn = self._reader()
        if conn.in_transaction:
            yield IndexSnapshot(conn, self)
            return
        try:
            conn.execute("BEGIN")
        except sqlite3.OperationalError:
            raise
        except sqlite3.DatabaseError as exc:
            raise self.mark_corrupted(exc) from exc
        try:
            yield IndexSnapshot(conn, self)
        finally:
            if conn.in_transaction:
                conn.execute("ROLLBACK")

    def record_crawl_error(
        self,
        *,
        doc_id: str,
        source_path: str,
        revision: str | None,
        error_kind: str,
        message: str,
    ) -> None:
        recorded_at = datetime.now(timezone.utc).isoformat()
        with self._write_locks.hold(doc_id), self._write_transaction() as conn:
            conn.execute(
                "INSERT INTO crawl_errors (doc_id, source_path, revision, error_kind, message, recorded_at) "
                "VALUES (?, ?, ?, ?, ?, ?) ON CONFLICT(doc_id) DO UPDATE SET source_path = excluded.source_path, "
                "revision = excluded.revision, error_kind = excluded.error_kind, message = excluded.message, "
                "recorded_at = excluded.recorded_at",
                (doc_id, source_path, revision, error_kind, message, recorded_at),
            )

    def clear_crawl_error(self, doc_id: str) -> None:
        with self._write_locks.hold(doc_id), self._write_transaction() as conn:
            conn.execute("DELETE FROM crawl_errors WHERE doc_id = ?", (doc_id,))

    def crawl_errors(self) -> list[CrawlErrorRecord]:
        conn = self._reader()
        rows = conn.execute(
            "SELECT doc_id, source_path, revision, error_kind, message, recorded_at FROM crawl_errors "
            "ORDER BY source_path"
        ).fetchall()
        return [CrawlErrorRecord(*row) for row in rows]

    def failed_revisions(self) -> dict[str, str | None]:
        """doc_id -> revision that last failed to extract or normalize."""
        return {record.doc_id: record.revision for record in self.crawl_errors()}

    def stats(self) -> IndexStats:
        with self.snapshot() as snapshot:
            conn = snapshot._conn
            term_count = conn.execute("SELECT COUNT(DISTINCT term) FROM postings").fetchone()[0]
            posting_count = conn.execute("SELECT COUNT(*) FROM postings").fetchone()[0]
            error_count = conn.execute("SELECT COUNT(*) FROM crawl_errors").fetchone()[0]
            document_count = snapshot.document_count
        try:
            size = self.db_path.stat().st_size
        except OSError:
            size = 0
        return IndexStats(
            document_count=document_count,
            term_count=int(term_count or 0),
            posting_count=int(posting_count or 0),
            crawl_error_count=int(error_count or 0),
            db_size_bytes=size,
            format_version=FORMAT_VERSION,
        )

    def rebuild(self) -> None:
        """Drop every document so the next crawl pass re-indexes all sources."""
        if not self.db_path.exists() or self._integrity_problem() is not None:
            self._quarantine()
            self._initialize()
        else:
            with self._write_transaction() as conn:
                self._clear_tables(conn)
        self.catalog.replace_all([])
        self._needs_rebuild = False
        logger.warning("Index at %s cleared for rebuild", self.db_path)

    def mark_corrupted(self, exc: BaseException) -> IndexCorruption:
        """Flag the index for rebuild and return the error to raise."""
        self._needs_rebuild = True
        logger.error("Index corruption detected at %s: %s", self.db_path, exc)
        return IndexCorruption(f"index database is unreadable: {exc}", source_path=str(self.db_path))

    def _initialize(self) -> None:
        conn = self._writer()
        problem = self._integrity_problem(conn)
        if problem is not None:
            raise IndexCorruption(f"integrity check failed: {problem}", source_path=str(self.db_path))

        conn.executescript(_SCHEMA)
        version_row = conn.execute("SELECT value FROM metadata WHERE key = 'format_version'").fetchone()
        if version_row is None or version_row[0] != FORMAT_VERSION:
            has_documents = conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]
            if version_row is not None or has_documents:
                logger.warning(
                    "Index format %s differs from %s; rebuilding from source",
                    version_row[0] if version_row else "unknown",
                    FORMAT_VERSION,
                )
                self._needs_rebuild = True
            with self._write_transaction() as tx:
                self._clear_tables(tx)
                tx.executemany(
                    "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
                    [
                        ("format_version", FORMAT_VERSION),
                        ("created_at", datetime.now(timezone.utc).isoformat()),
                    ],
                )

        rows = conn.execute(f"SELECT {_RECORD_COLUMNS} FROM documents").fetchall()
        self.catalog.replace_all(_record_from_row(row) for row in rows)

    def _integrity_problem(self, conn: sqlite3.Connection | None = None) -> str | None:
        try:
            conn = conn or self._writer()
            result = conn.execute("PRAGMA quick_check").fetchone()
        except sqlite3.OperationalError:
            raise
        except sqlite3.DatabaseError as exc:
            return str(exc)
        if result is None or result[0] != "ok":
            return str(result[0]) if result else "no result"
        return None

    def _clear_tables(self, conn: sqlite3.Connection) -> None:
        conn.execute("DELETE FROM postings")
        conn.execute("DELETE FROM documents")
        conn.execute("DELETE FROM crawl_errors")

    def _quarantine(self) -> None:
        self.close()
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        for suffix in ("", "-wal", "-shm"):
            path = self.db_path.with_name(self.db_path.name + suffix)
            if not path.exists():
                continue
            target = path.with_name(f"{path.name}.corrupt-{stamp}")
            try:
                path.replace(target)
            except OSError as exc:
                logger.warning("Failed to move corrupt index file %s aside: %s", path, exc)
                path.unlink(missing_ok=True)
        self.catalog.replace_all([])

    @contextmanager
    def _write_transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._writer()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except BaseException as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            if isinstance(exc, sqlite3.DatabaseError) and not isinstance(exc, sqlite3.OperationalError):
                raise self.mark_corrupted(exc) from exc
            raise

    def _writer(self) -> sqlite3.Connection:
        return self._thread_connection("writer", read_only=False)

    def _reader(self) -> sqlite3.Connection:
        return self._thread_connection("reader", read_only=True)

    def _thread_connection(self, role: str, *, read_only: bool) -> sqlite3.Connection:
        cached = getattr(self._local, role, None)
        if cached is not None and cached[0] == self._generation:
            return cached[1]
        conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None, timeout=30.0)
        if read_only:
            apply_read_pragmas(conn)
        else:
            apply_write_pragmas(conn)
        with self._connections_lock:
            self._connections.append(conn)
            generation = self._generation
        setattr(self._local, role, (generation, conn))
        return conn

    def _stored_fingerprint(self, doc_id: str) -> str | None:
        row = self._writer().execute("SELECT fingerprint FROM documents WHERE doc_id = ?", (doc_id,)).fetchone()
        return row[0] if row else None
