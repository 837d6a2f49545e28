"""Unit tests for the analyzer pipeline and the document normalizer."""

import pytest

from intern.domain.model import RawDocument, derive_doc_id
from intern.errors import NormalizationError, NormalizationReason
from intern.search.analyzers import (
    AccentFoldFilter,
    AnalyzerSettings,
    LowercaseFilter,
    MinLengthFilter,
    RegexTokenizer,
    StopFilter,
    Token,
    build_analyzer,
)
from intern.search.normalizer import DocumentNormalizer


def _raw(text, *, path="/notes/a.txt", revision="r1"):
    return RawDocument(source_path=path, source_kind="text", extracted_text=text, revision=revision)


@pytest.mark.unit
class TestAnalyzerFilters:
    def test_tokenizer_emits_positions_and_offsets(self):
        tokens = list(RegexTokenizer()("Hello, world"))

        assert [(t.text, t.position, t.start_char, t.end_char) for t in tokens] == [
            ("Hello", 0, 0, 5),
            ("world", 1, 7, 12),
        ]

    def test_filters_keep_original_positions(self):
        stream = [Token("The", 0, 0, 3), Token("Fox", 1, 4, 7)]
        filtered = list(StopFilter(["the"])(LowercaseFilter()(stream)))

        assert [(t.text, t.position) for t in filtered] == [("fox", 1)]

    def test_accent_folding(self):
        folded = list(AccentFoldFilter()([Token("café", 0, 0, 4), Token("plain", 1, 5, 10)]))
        assert [t.text for t in folded] == ["cafe", "plain"]

    def test_min_length(self):
        kept = list(MinLengthFilter(3)([Token("ab", 0, 0, 2), Token("abc", 1, 3, 6)]))
        assert [t.text for t in kept] == ["abc"]

    def test_default_analyzer_stems_and_drops_stop_words(self):
        analyzer = build_analyzer()
        tokens = analyzer("The dogs were jumping")

        assert [(t.text, t.position) for t in tokens] == [("dog", 1), ("were", 2), ("jump", 3)]

    def test_policy_can_disable_stemming_and_stop_words(self):
        analyzer = build_analyzer(AnalyzerSettings(stop_words=frozenset(), stemming=False))
        assert [t.text for t in analyzer("The dogs")] == ["the", "dogs"]


@pytest.mark.unit
class TestDocumentNormalizer:
    def test_normalize_produces_tokens_and_identity(self, normalizer):
        document = normalizer.normalize(_raw("Quick brown fox. The lazy dog!"))

        assert document.doc_id == derive_doc_id("/notes/a.txt")
        assert document.revision == "r1"
        assert [token.term for token in document.tokens] == ["quick", "brown", "fox", "lazy", "dog"]
        assert document.term_positions()["lazy"] == [4]
        assert document.length == 5

    def test_doc_id_depends_only_on_path(self, normalizer):
        first = normalizer.normalize(_raw("apple", revision="r1"))
        second = normalizer.normalize(_raw("banana cherry", revision="r2"))
        assert first.doc_id == second.doc_id

    def test_offsets_point_into_text(self, normalizer):
        text = "Notes about Café culture"
        document = normalizer.normalize(_raw(text))
        cafe = next(token for token in document.tokens if token.term == "cafe")

        assert text[cafe.start_char : cafe.end_char] == "Café"

    def test_bytes_are_decoded_as_utf8(self, normalizer):
        document = normalizer.normalize(_raw("apple banana".encode("utf-8")))
        assert [token.term for token in document.tokens] == ["apple", "banana"]

    def test_invalid_utf8_is_rejected(self, normalizer):
        with pytest.raises(NormalizationError) as excinfo:
            normalizer.normalize(_raw(b"caf\xe9 au lait"))

        assert excinfo.value.reason is NormalizationReason.ENCODING_INVALID
        assert excinfo.value.source_path == "/notes/a.txt"
        assert "path=/notes/a.txt" in str(excinfo.value)

    @pytest.mark.parametrize("text", ["", "   \n\t", "the and of"])
    def test_empty_content_is_rejected(self, normalizer, text):
        with pytest.raises(NormalizationError) as excinfo:
            normalizer.normalize(_raw(text))
        assert excinfo.value.reason is NormalizationReason.EMPTY_CONTENT

    def test_query_terms_use_document_policy(self, normalizer):
        terms = normalizer.query_terms("Jumping DOGS")
        assert [term.term for term in terms] == ["jump", "dog"]

    @pytest.mark.parametrize(
        ("singular", "plural"),
        [("note", "notes"), ("file", "files"), ("box", "boxes"), ("wish", "wishes"), ("class", "classes")],
    )
    def test_plurals_share_a_term_with_singulars(self, normalizer, singular, plural):
        [single] = normalizer.query_terms(singular)
        [many] = normalizer.query_terms(plural)
        assert single.term == many.term

    def test_plural_stems(self, normalizer):
        assert [term.term for term in normalizer.query_terms("notes files boxes")] == ["note", "file", "box"]
