"""Incremental crawl passes: list, compare revisions, extract, normalize, upsert, remove."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
import logging
from pathlib import Path
import threading
import time
from typing import Any
from uuid import uuid4

from intern.config import RootConfig
from intern.crawl.adapters import MESSAGE_SUFFIX, SourceAdapter, create_adapter
from intern.crawl.ignore import IgnoreRules
from intern.crawl.listers import ListingStatus
from intern.domain.model import Candidate, derive_doc_id
from intern.errors import ExtractionError, IndexCorruption, InternError, NormalizationError
from intern.observability.context import new_trace_context
from intern.observability.metrics import (
    CRAWL_ERRORS,
    CRAWL_PASS_DURATION,
    DOCUMENTS_INDEXED,
    DOCUMENTS_REMOVED,
    INDEX_DOC_COUNT,
)
from intern.observability.tracing import create_span
from intern.search.index_store import InvertedIndexStore
from intern.search.normalizer import DocumentNormalizer


logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 50


@dataclass
class CrawlReport:
    """Outcome of one crawl pass."""

    pass_id: str
    listed: int = 0
    indexed: int = 0
    unchanged: int = 0
    removed: int = 0
    failed: int = 0
    skipped_failures: int = 0
    incomplete_roots: list[str] = field(default_factory=list)
    cancelled: bool = False
    rebuilt: bool = False
    duration_seconds: float = 0.0
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.cancelled

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "pass_id": self.pass_id,
            "listed": self.listed,
            "indexed": self.indexed,
            "unchanged": self.unchanged,
            "removed": self.removed,
            "failed": self.failed,
            "skipped_failures": self.skipped_failures,
            "incomplete_roots": list(self.incomplete_roots),
            "cancelled": self.cancelled,
            "rebuilt": self.rebuilt,
            "duration_seconds": round(self.duration_seconds, 3),
            "errors": list(self.errors),
        }


class IncrementalCrawler:
    """Brings the index in line with the configured roots.

    A pass forwards only new or changed candidates (revision differs from the
    catalog) to extraction. Documents that fail keep a crawl error keyed by
    revision and are not retried until their revision changes. Passes are
    cancellable between documents; a cancelled pass performs no removals and
    the next pass picks up where it stopped because finished documents are no
    longer stale.
    """

    def __init__(
        self,
        store: InvertedIndexStore,
        normalizer: DocumentNormalizer,
        roots: Sequence[RootConfig],
        *,
        adapters: Mapping[str, SourceAdapter] | None = None,
    ) -> None:
        self.store = store
        self.normalizer = normalizer
        self.roots = list(roots)
        self._adapters: dict[str, SourceAdapter] = dict(adapters or {})
        self._pass_lock = threading.Lock()

    def adapter(self, kind: str) -> SourceAdapter:
        if kind not in self._adapters:
            self._adapters[kind] = create_adapter(kind)
        return self._adapters[kind]

    def run_pass(self, cancel: threading.Event | None = None) -> CrawlReport:
        """Run one pass over every root; only one pass runs at a time."""
        cancel = cancel or threading.Event()
        with self._pass_lock:
            report = CrawlReport(pass_id=uuid4().hex[:12])
            new_trace_context(crawl_pass=report.pass_id)
            started = time.perf_counter()
            with create_span("intern.crawl_pass", attributes={"crawl.roots": len(self.roots)}) as span:
                try:
                    self._run(report, cancel)
                finally:
                    report.duration_seconds = time.perf_counter() - started
                    status = "cancelled" if report.cancelled else "ok"
                    CRAWL_PASS_DURATION.labels(status=status).observe(report.duration_seconds)
                    INDEX_DOC_COUNT.labels().set(len(self.store.catalog))
                span.set_attribute("crawl.indexed", report.indexed)
                span.set_attribute("crawl.removed", report.removed)

        logger.info(
            "Crawl pass %s %s: %d listed, %d indexed, %d unchanged, %d removed, %d failed in %.2fs",
            report.pass_id,
            "cancelled" if report.cancelled else "finished",
            report.listed,
            report.indexed,
            report.unchanged,
            report.removed,
            report.failed,
            report.duration_seconds,
        )
        return report

    def process_paths(self, paths: Iterable[str], cancel: threading.Event | None = None) -> CrawlReport:
        """Bring the index in line with specific changed files or directories.

        Paths outside every root or hidden by ignore rules are skipped. A path
        that no longer exists drops its documents (every message of a deleted
        mailbox, every file of a deleted directory).
        """
        cancel = cancel or threading.Event()
        with self._pass_lock:
            report = CrawlReport(pass_id=uuid4().hex[:12])
            new_trace_context(crawl_pass=report.pass_id)
            started = time.perf_counter()
            if self.store.needs_rebuild:
                # Rebuilding needs the full listing of every root.
                self._run(report, cancel)
            else:
                self._refresh_paths(paths, report, cancel)
            report.duration_seconds = time.perf_counter() - started
            INDEX_DOC_COUNT.labels().set(len(self.store.catalog))

        logger.info(
            "Refreshed changed paths (%s): %d listed, %d indexed, %d removed, %d failed",
            report.pass_id,
            report.listed,
            report.indexed,
            report.removed,
            report.failed,
        )
        return report

    def _refresh_paths(self, paths: Iterable[str], report: CrawlReport, cancel: threading.Event) -> None:
        failed_revisions = self.store.failed_revisions()
        for raw_path in sorted(set(paths)):
            if cancel.is_set():
                report.cancelled = True
                return
            path = Path(raw_path)
            root = self._root_for(path)
            if root is None or self._is_ignored(root, path):
                continue
            self._refresh_path(root, path, failed_revisions, report)

    def _root_for(self, path: Path) -> RootConfig | None:
        for root in self.roots:
            root_path = root.resolved_path
            if path == root_path:
                return root
            if root_path in path.parents and (root.recurse or path.parent == root_path):
                return root
        return None

    def _is_ignored(self, root: RootConfig, path: Path) -> bool:
        root_path = root.resolved_path
        if path == root_path:
            return False
        rules = IgnoreRules().child(root_path)
        directory = root_path
        for part in path.relative_to(root_path).parts[:-1]:
            directory = directory / part
            if rules.is_ignored(directory, is_dir=True):
                return True
            rules = rules.child(directory)
        return rules.is_ignored(path, is_dir=path.is_dir())

    def _refresh_path(
        self,
        root: RootConfig,
        path: Path,
        failed_revisions: Mapping[str, str | None],
        report: CrawlReport,
    ) -> None:
        is_dir = path.is_dir()
        if is_dir and path != root.resolved_path and not root.recurse:
            return
        adapter = self.adapter(root.kind)
        seen: set[str] = set()
        status = ListingStatus()
        if path.exists():
            for candidate in adapter.list_candidates(path, recurse=root.recurse, vcs="none", status=status):
                # The listing below a subdirectory only sees that directory's own ignore files.
                if is_dir and self._is_ignored(root, Path(MESSAGE_SUFFIX.sub("", candidate.path))):
                    continue
                doc_id = derive_doc_id(candidate.path)
                seen.add(doc_id)
                report.listed += 1
                self._process(adapter, candidate, doc_id, failed_revisions, report)
        if not status.complete:
            report.incomplete_roots.append(str(path))
            return

        for doc_id in sorted(self.store.catalog.doc_ids_under(str(path)) - seen):
            if self.store.remove(doc_id):
                report.removed += 1
                DOCUMENTS_REMOVED.labels().inc()
        for error in self.store.crawl_errors():
            if error.doc_id not in seen and _is_under(error.source_path, path):
                self.store.clear_crawl_error(error.doc_id)

    def _run(self, report: CrawlReport, cancel: threading.Event) -> None:
        if self.store.needs_rebuild:
            logger.warning("Rebuilding index from source")
            self.store.rebuild()
            report.rebuilt = True

        failed_revisions = self.store.failed_revisions()
        seen: set[str] = set()
        complete_roots: list[Path] = []

        for root in self.roots:
            if cancel.is_set():
                report.cancelled = True
                break
            root_path = root.resolved_path
            if not root_path.exists():
                logger.warning("Crawl root %s does not exist; keeping its documents", root_path)
                report.incomplete_roots.append(str(root_path))
                continue

            adapter = self.adapter(root.kind)
            status = ListingStatus()
            for candidate in adapter.list_candidates(root_path, recurse=root.recurse, vcs=root.vcs, status=status):
                if cancel.is_set():
                    report.cancelled = True
                    break
                doc_id = derive_doc_id(candidate.path)
                seen.add(doc_id)
                report.listed += 1
                self._process(adapter, candidate, doc_id, failed_revisions, report)

            if report.cancelled:
                break
            if status.complete:
                complete_roots.append(root_path)
            else:
                report.incomplete_roots.append(str(root_path))

        if report.cancelled:
            logger.info("Crawl pass %s cancelled; skipping removals", report.pass_id)
            return

        for root_path in complete_roots:
            for doc_id in sorted(self.store.catalog.doc_ids_under(str(root_path)) - seen):
                if self.store.remove(doc_id):
                    report.removed += 1
                    DOCUMENTS_REMOVED.labels().inc()

        for error in self.store.crawl_errors():
            if error.doc_id not in seen and any(_is_under(error.source_path, root) for root in complete_roots):
                self.store.clear_crawl_error(error.doc_id)

    def _process(
        self,
        adapter: SourceAdapter,
        candidate: Candidate,
        doc_id: str,
        failed_revisions: Mapping[str, str | None],
        report: CrawlReport,
    ) -> None:
        if not self.store.catalog.is_stale(doc_id, candidate.revision):
            report.unchanged += 1
            return
        if doc_id in failed_revisions and failed_revisions[doc_id] == candidate.revision:
            report.skipped_failures += 1
            return

        try:
            raw = adapter.extract(candidate.path)
            if raw.revision != candidate.revision:
                # Keep the listing's revision so the next pass compares like with like.
                raw = replace(raw, revision=candidate.revision)
            document = self.normalizer.normalize(raw)
            self.store.upsert(document)
        except IndexCorruption:
            raise
        except (ExtractionError, NormalizationError) as exc:
            self._record_failure(candidate, doc_id, exc, report)
            return
        except Exception as exc:
            logger.error("Unexpected error indexing %s", candidate.path, exc_info=True)
            self._record_failure(candidate, doc_id, exc, report)
            return

        report.indexed += 1
        DOCUMENTS_INDEXED.labels(kind=raw.source_kind).inc()

    def _record_failure(self, candidate: Candidate, doc_id: str, exc: Exception, report: CrawlReport) -> None:
        if isinstance(exc, NormalizationError):
            error_kind = exc.reason.value
        elif isinstance(exc, InternError):
            error_kind = exc.kind
        else:
            error_kind = type(exc).__name__
        message = exc.message if isinstance(exc, InternError) else str(exc)

        logger.warning(
            "Skipping %s: %s",
            candidate.path,
            message,
            extra={
                "source_path": candidate.path,
                "doc_id": doc_id,
                "revision": candidate.revision,
                "error_kind": error_kind,
            },
        )
        report.failed += 1
        if len(report.errors) < MAX_REPORTED_ERRORS:
            report.errors.append({"source_path": candidate.path, "error_kind": error_kind, "message": message})
        CRAWL_ERRORS.labels(error_kind=error_kind).inc()

        # A document that no longer extracts must not keep answering queries with old content.
        if doc_id in self.store.catalog:
            self.store.remove(doc_id)
        self.store.record_crawl_error(
            doc_id=doc_id,
            source_path=candidate.path,
            revision=candidate.revision,
            error_kind=error_kind,
            message=message,
        )


def _is_under(source_path: str, root: Path) -> bool:
    prefix = str(root)
    return source_path == prefix or source_path.startswith((prefix.rstrip("/") + "/", prefix + "#"))
