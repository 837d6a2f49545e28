"""Unit tests for the query language parser."""

import pytest

from intern.errors import QueryParseError, QueryParseReason
from intern.search.normalizer import DocumentNormalizer
from intern.search.query_parser import (
    MAX_NESTING_DEPTH,
    AndNode,
    MatchNoneNode,
    NotNode,
    OrNode,
    PhraseNode,
    QueryParser,
    TermNode,
    expression_terms,
    tokenize_query,
)


@pytest.fixture
def parser():
    return QueryParser(DocumentNormalizer().query_terms)


@pytest.mark.unit
class TestGrammar:
    def test_single_word(self, parser):
        assert parser.parse("Apple") == TermNode("apple")

    def test_implicit_and(self, parser):
        assert parser.parse("apple banana") == AndNode((TermNode("apple"), TermNode("banana")))

    def test_left_to_right_without_precedence(self, parser):
        assert parser.parse("apple OR banana cherry") == AndNode(
            (OrNode((TermNode("apple"), TermNode("banana"))), TermNode("cherry"))
        )

    def test_parentheses_group(self, parser):
        assert parser.parse("apple OR (banana cherry)") == OrNode(
            (TermNode("apple"), AndNode((TermNode("banana"), TermNode("cherry"))))
        )

    def test_not_is_unary_prefix(self, parser):
        assert parser.parse("apple NOT banana") == AndNode((TermNode("apple"), NotNode(TermNode("banana"))))
        assert parser.parse("NOT banana") == NotNode(TermNode("banana"))

    def test_lowercase_keywords_are_words(self, parser):
        # "and"/"or" are stop words once treated as words, so only the fruit remain.
        assert parser.parse("apple or banana") == AndNode((TermNode("apple"), TermNode("banana")))

    def test_quoted_phrase(self, parser):
        assert parser.parse('"quick brown fox"') == PhraseNode(("quick", "brown", "fox"), (0, 1, 2))

    def test_phrase_keeps_stop_word_gaps(self, parser):
        assert parser.parse('"fox in the box"') == PhraseNode(("fox", "box"), (0, 3))

    def test_operator_inside_quotes_is_text(self, parser):
        assert parser.parse('apple AND "OR"') == TermNode("apple")

    def test_multi_token_word_becomes_phrase(self, parser):
        assert parser.parse("re-use") == PhraseNode(("re", "use"), (0, 1))

    def test_stop_word_operand_is_dropped_with_operator(self, parser):
        assert parser.parse("apple AND the") == TermNode("apple")
        assert parser.parse("apple OR NOT the") == TermNode("apple")

    def test_only_stop_words_match_nothing(self, parser):
        assert parser.parse("the") == MatchNoneNode()

    def test_expression_terms_skip_negated(self, parser):
        node = parser.parse('apple NOT banana "quick fox"')
        assert expression_terms(node) == ["apple", "quick", "fox"]


@pytest.mark.unit
class TestParseErrors:
    @pytest.mark.parametrize(
        ("query", "reason"),
        [
            ("", QueryParseReason.EMPTY_QUERY),
            ("   ", QueryParseReason.EMPTY_QUERY),
            ("()", QueryParseReason.EMPTY_QUERY),
            ('apple "banana', QueryParseReason.UNBALANCED_QUOTES),
            ("(apple banana", QueryParseReason.UNBALANCED_PARENTHESES),
            ("apple banana)", QueryParseReason.UNBALANCED_PARENTHESES),
            ("apple && banana", QueryParseReason.UNKNOWN_OPERATOR),
            ("apple || banana", QueryParseReason.UNKNOWN_OPERATOR),
            ("apple XOR banana", QueryParseReason.UNKNOWN_OPERATOR),
            ("apple NEAR/3 banana", QueryParseReason.UNKNOWN_OPERATOR),
            ("AND apple", QueryParseReason.UNKNOWN_OPERATOR),
            ("apple OR", QueryParseReason.UNKNOWN_OPERATOR),
            ("apple NOT", QueryParseReason.UNKNOWN_OPERATOR),
            ("apple AND OR banana", QueryParseReason.UNKNOWN_OPERATOR),
        ],
    )
    def test_reason(self, parser, query, reason):
        with pytest.raises(QueryParseError) as excinfo:
            parser.parse(query)
        assert excinfo.value.reason is reason

    def test_error_reports_offset(self, parser):
        with pytest.raises(QueryParseError) as excinfo:
            parser.parse('apple "banana')
        assert excinfo.value.offset == 6
        assert "UnbalancedQuotes" in str(excinfo.value)

    @pytest.mark.parametrize(
        "query",
        [
            "(" * 5000 + "apple" + ")" * 5000,
            "NOT " * 5000 + "apple",
            "(NOT " * 3000 + "apple" + ")" * 3000,
        ],
    )
    def test_deep_nesting_is_a_parse_error(self, parser, query):
        with pytest.raises(QueryParseError) as excinfo:
            parser.parse(query)
        assert excinfo.value.reason is QueryParseReason.UNBALANCED_PARENTHESES
        assert "nested deeper" in str(excinfo.value)

    def test_nesting_up_to_the_limit_is_accepted(self, parser):
        query = "(" * MAX_NESTING_DEPTH + "apple" + ")" * MAX_NESTING_DEPTH
        assert parser.parse(query) == TermNode("apple")
        assert parser.parse("NOT NOT apple") == NotNode(NotNode(TermNode("apple")))


@pytest.mark.unit
def test_tokenize_query_kinds():
    lexemes = tokenize_query('NOT (a "b c") OR d')
    assert [lexeme.kind for lexeme in lexemes] == ["op", "lparen", "word", "phrase", "rparen", "op", "word"]
