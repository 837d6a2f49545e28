"""Query evaluation and TF-IDF ranking over one index snapshot."""

from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
import logging
import re
import threading
import time

from intern.domain.model import DocumentRecord, SearchHit
from intern.errors import QueryParseError, QueryParseReason, QueryTimeout
from intern.observability.tracing import create_span
from intern.search.index_store import IndexSnapshot, InvertedIndexStore
from intern.search.models import Posting
from intern.search.normalizer import DocumentNormalizer
from intern.search.phrase import get_min_span, phrase_starts
from intern.search.query_parser import (
    AndNode,
    MatchNoneNode,
    NotNode,
    OrNode,
    PhraseNode,
    QueryExpression,
    QueryParser,
    TermNode,
    expression_terms,
)
from intern.search.snippet import SnippetSettings, build_snippet
from intern.search.stats import proximity_bonus, sum_scores, tf_idf


logger = logging.getLogger(__name__)

DATE_COMMAND = re.compile(r"^@(?P<command>on|ago)(?:\s+(?P<argument>.*))?$")


def is_date_query(text: str) -> bool:
    """True for ``@on``/``@ago`` listings; other text starting with ``@`` is an ordinary query."""
    return DATE_COMMAND.match(text.strip()) is not None


@dataclass
class Deadline:
    """Cancellation point shared by the caller and the evaluating worker.

    ``check()`` raises ``QueryTimeout`` once the time budget is spent or
    ``cancel()`` was called from another thread.
    """

    expires_at: float | None = None
    cancelled: threading.Event = field(default_factory=threading.Event)

    @classmethod
    def after_ms(cls, timeout_ms: int | None) -> Deadline:
        if not timeout_ms:
            return cls()
        return cls(expires_at=time.monotonic() + timeout_ms / 1000.0)

    @property
    def expired(self) -> bool:
        if self.cancelled.is_set():
            return True
        return self.expires_at is not None and time.monotonic() >= self.expires_at

    def cancel(self) -> None:
        self.cancelled.set()

    def check(self) -> None:
        if self.expired:
            raise QueryTimeout("query exceeded its time budget")


class _Evaluator:
    """Walks a query tree against one snapshot, caching postings per term."""

    def __init__(self, snapshot: IndexSnapshot, deadline: Deadline) -> None:
        self.snapshot = snapshot
        self.deadline = deadline
        self._postings: dict[str, dict[str, Posting]] = {}
        self._domain: set[str] | None = None

    def postings(self, term: str) -> dict[str, Posting]:
        cached = self._postings.get(term)
        if cached is None:
            self.deadline.check()
            cached = {}
            for posting in self.snapshot.lookup(term):
                self.deadline.check()
                cached[posting.doc_id] = posting
            self._postings[term] = cached
        return cached

    def domain(self) -> set[str]:
        if self._domain is None:
            self.deadline.check()
            self._domain = set(self.snapshot.all_doc_ids())
        return self._domain

    def evaluate(self, node: QueryExpression) -> set[str]:
        self.deadline.check()
        if isinstance(node, TermNode):
            return set(self.postings(node.term))
        if isinstance(node, PhraseNode):
            return self._phrase(node)
        if isinstance(node, AndNode):
            return self._and(node)
        if isinstance(node, OrNode):
            result: set[str] = set()
            for child in node.children:
                result |= self.evaluate(child)
            return result
        if isinstance(node, NotNode):
            return self._difference(self.domain(), self.evaluate(node.child))
        if isinstance(node, MatchNoneNode):
            return set()
        raise TypeError(f"Unknown query node: {node!r}")

    def _and(self, node: AndNode) -> set[str]:
        positives = [child for child in node.children if not isinstance(child, NotNode)]
        negatives = [child.child for child in node.children if isinstance(child, NotNode)]

        if positives:
            sets = sorted((self.evaluate(child) for child in positives), key=len)
            result = sets[0]
            for other in sets[1:]:
                result = self._intersect(result, other)
                if not result:
                    return result
        else:
            result = set(self.domain())

        for negative in negatives:
            if not result:
                break
            result = self._difference(result, self.evaluate(negative))
        return result

    def _phrase(self, node: PhraseNode) -> set[str]:
        lists = [self.postings(term) for term in node.terms]
        candidates = set(min(lists, key=len)) if lists else set()
        for postings in lists:
            candidates = self._intersect(candidates, postings.keys())
        matched = set()
        for doc_id in candidates:
            self.deadline.check()
            offset_positions = [
                (offset, postings[doc_id].positions) for offset, postings in zip(node.offsets, lists)
            ]
            if phrase_starts(offset_positions):
                matched.add(doc_id)
        return matched

    def _intersect(self, left: Collection[str], right: Collection[str]) -> set[str]:
        small, large = (left, right) if len(left) <= len(right) else (right, left)
        result = set()
        for doc_id in small:
            self.deadline.check()
            if doc_id in large:
                result.add(doc_id)
        return result

    def _difference(self, left: set[str], right: set[str]) -> set[str]:
        result = set()
        for doc_id in left:
            self.deadline.check()
            if doc_id not in right:
                result.add(doc_id)
        return result


class QueryEngine:
    """Parses query text, evaluates it against one snapshot and ranks matches."""

    def __init__(
        self,
        store: InvertedIndexStore,
        normalizer: DocumentNormalizer | None = None,
        *,
        max_results: int = 20,
        snippet_settings: SnippetSettings | None = None,
        proximity_weight: float = 0.5,
    ) -> None:
        self.store = store
        self.normalizer = normalizer or DocumentNormalizer()
        self.parser = QueryParser(self.normalizer.query_terms)
        self.max_results = max_results
        self.snippet_settings = snippet_settings or SnippetSettings()
        self.proximity_weight = proximity_weight

    def parse(self, query_text: str) -> QueryExpression:
        return self.parser.parse(query_text)

    def search(
        self,
        query_text: str,
        *,
        deadline: Deadline | None = None,
        limit: int | None = None,
        ranked: bool = True,
    ) -> list[SearchHit]:
        """Answer ``query_text``.

        Raises:
            QueryParseError: when the text does not follow the query grammar.
            QueryTimeout: when ``deadline`` expires during evaluation.
            IndexCorruption: when the index cannot be read.
        """
        deadline = deadline or Deadline()
        limit = self.max_results if limit is None else limit
        text = query_text.strip()
        if is_date_query(text):
            return self.date_query(text, deadline=deadline, limit=limit)

        expression = self.parse(text)
        with create_span("intern.query", attributes={"query.ranked": ranked, "query.length": len(text)}) as span:
            with self.store.snapshot() as snapshot:
                evaluator = _Evaluator(snapshot, deadline)
                matched = evaluator.evaluate(expression)
                span.set_attribute("query.matches", len(matched))
                if not matched:
                    return []
                records = snapshot.documents(matched)
                terms = expression_terms(expression)
                if ranked:
                    scored = self._rank(evaluator, records, terms, snapshot.document_count, deadline)
                else:
                    scored = [
                        (0.0, record)
                        for record in sorted(records.values(), key=lambda r: (-r.last_indexed_time, r.doc_id))
                    ]
                if limit:
                    scored = scored[:limit]
                hits = [
                    SearchHit(
                        doc_id=record.doc_id,
                        score=score,
                        source_path=record.source_path,
                        matched_snippet=self._snippet(snapshot, record, terms),
                        last_indexed_time=record.last_indexed_time,
                    )
                    for score, record in scored
                ]
        logger.debug("Query %r matched %d documents, returning %d", text, len(matched), len(hits))
        return hits

    def _rank(
        self,
        evaluator: _Evaluator,
        records: dict[str, DocumentRecord],
        terms: list[str],
        total_docs: int,
        deadline: Deadline,
    ) -> list[tuple[float, DocumentRecord]]:
        term_postings = {term: evaluator.postings(term) for term in terms}
        scored = []
        for doc_id, record in records.items():
            deadline.check()
            parts = []
            positions = {}
            for term, postings in term_postings.items():
                posting = postings.get(doc_id)
                if posting is None:
                    continue
                parts.append(tf_idf(posting.term_frequency, len(postings), total_docs))
                positions[term] = posting.positions
            if len(terms) > 1 and len(positions) == len(terms):
                parts.append(proximity_bonus(get_min_span(positions), len(terms), weight=self.proximity_weight))
            scored.append((sum_scores(parts), record))
        scored.sort(key=lambda item: (-item[0], -item[1].last_indexed_time, item[1].doc_id))
        return scored

    def _snippet(self, snapshot: IndexSnapshot, record: DocumentRecord, terms: list[str]) -> str:
        text = snapshot.document_text(record.doc_id)
        wanted = set(terms)
        spans = []
        if wanted:
            spans = [
                (token.start_char, token.end_char)
                for token in self.normalizer.query_terms(text)
                if token.term in wanted
            ]
        snippet = build_snippet(text, spans, self.snippet_settings)
        return snippet or record.title

    def date_query(self, text: str, *, deadline: Deadline | None = None, limit: int | None = None) -> list[SearchHit]:
        """Answer ``@on YYYY-MM-DD`` and ``@ago N`` listings, most recently modified first."""
        deadline = deadline or Deadline()
        match = DATE_COMMAND.match(text)
        if match is None:
            raise QueryParseError(QueryParseReason.UNKNOWN_OPERATOR, f"unsupported command {text!r}", offset=0)
        day = _resolve_day(match.group("command"), (match.group("argument") or "").strip())
        start = datetime.combine(day, datetime.min.time()).timestamp()
        end = datetime.combine(day + timedelta(days=1), datetime.min.time()).timestamp()

        with self.store.snapshot() as snapshot:
            records = snapshot.documents_modified_between(start, end)
            records.sort(key=lambda record: (-record.modified_time, record.source_path))
            if limit:
                records = records[:limit]
            hits = []
            for record in records:
                deadline.check()
                hits.append(
                    SearchHit(
                        doc_id=record.doc_id,
                        score=0.0,
                        source_path=record.source_path,
                        matched_snippet=record.title or self._snippet(snapshot, record, []),
                        last_indexed_time=record.last_indexed_time,
                    )
                )
        return hits


def _resolve_day(command: str, argument: str) -> date:
    if command == "on":
        try:
            return date.fromisoformat(argument)
        except ValueError as exc:
            raise QueryParseError(
                QueryParseReason.UNKNOWN_OPERATOR, f"@on expects YYYY-MM-DD, got {argument!r}", offset=4
            ) from exc
    if command == "ago":
        if not argument.isdigit():
            raise QueryParseError(
                QueryParseReason.UNKNOWN_OPERATOR, f"@ago expects a number of days, got {argument!r}", offset=5
            )
        try:
            return date.today() - timedelta(days=int(argument))
        except (OverflowError, ValueError) as exc:
            raise QueryParseError(
                QueryParseReason.UNKNOWN_OPERATOR, f"@ago {argument} is out of range", offset=5
            ) from exc
    raise QueryParseError(QueryParseReason.UNKNOWN_OPERATOR, f"unsupported command @{command}", offset=0)
