"""Turn adapter output (``RawDocument``) into ``IndexableDocument`` values."""

from __future__ import annotations

import logging

from intern.domain.model import IndexableDocument, IndexedToken, RawDocument
from intern.errors import NormalizationError, NormalizationReason
from intern.search.analyzers import Analyzer, AnalyzerSettings, build_analyzer


logger = logging.getLogger(__name__)

MAX_STORED_TEXT_CHARS = 65536


class DocumentNormalizer:
    """Applies the configured tokenization policy to extracted documents."""

    def __init__(self, settings: AnalyzerSettings | None = None, *, analyzer: Analyzer | None = None) -> None:
        self.settings = settings or AnalyzerSettings()
        self.analyzer = analyzer or build_analyzer(self.settings)

    def normalize(self, raw: RawDocument) -> IndexableDocument:
        """Return the indexable form of ``raw``.

        Raises:
            NormalizationError: ``EncodingInvalid`` when the text cannot be
                decoded, ``EmptyContent`` when nothing indexable remains.
        """
        context = {"source_path": raw.source_path, "doc_id": raw.doc_id, "revision": raw.revision}
        text = _decode_text(raw.extracted_text, context)
        if not text.strip():
            raise NormalizationError(NormalizationReason.EMPTY_CONTENT, "document has no text", **context)

        tokens = tuple(
            IndexedToken(term=token.text, position=token.position, start_char=token.start_char, end_char=token.end_char)
            for token in self.analyzer(text)
            if token.text
        )
        if not tokens:
            raise NormalizationError(NormalizationReason.EMPTY_CONTENT, "document produced no tokens", **context)

        logger.debug("Normalized %s into %d tokens", raw.source_path, len(tokens))
        return IndexableDocument(
            doc_id=raw.doc_id,
            source_path=raw.source_path,
            source_kind=raw.source_kind,
            revision=raw.revision,
            tokens=tokens,
            text=text[:MAX_STORED_TEXT_CHARS],
            metadata=dict(raw.extracted_metadata),
            modified_time=raw.modified_time,
        )

    def query_terms(self, text: str) -> list[IndexedToken]:
        """Analyze query text with the same policy used for documents."""
        return [
            IndexedToken(term=token.text, position=token.position, start_char=token.start_char, end_char=token.end_char)
            for token in self.analyzer(text)
            if token.text
        ]


def _decode_text(payload: str | bytes, context: dict[str, str]) -> str:
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise NormalizationError(
                NormalizationReason.ENCODING_INVALID,
                f"text is not valid UTF-8 ({exc.reason} at byte {exc.start})",
                **context,
            ) from exc
    if "\x00" in payload:
        raise NormalizationError(NormalizationReason.ENCODING_INVALID, "text contains NUL characters", **context)
    return payload
