"""Query language parser.

Grammar::

    expression := unary ( [AND | OR] unary )*
    unary      := NOT unary | primary
    primary    := WORD | "quoted phrase" | ( expression )

Binary operators associate left to right with no precedence between them
(``a OR b c`` is ``(a OR b) AND c``). A missing operator means ``AND``.
Operator keywords are upper-case; ``and``/``or``/``not`` in lower case are
ordinary words.

Words and phrases go through the same analyzer as documents. A word that
analyzes to several tokens (``e-mail``) becomes a phrase, and a word that
analyzes to nothing (a stop word) is dropped together with the operator that
applied to it.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
import re
from typing import Union

from intern.domain.model import IndexedToken
from intern.errors import QueryParseError, QueryParseReason


OPERATORS = frozenset({"AND", "OR", "NOT"})
MAX_NESTING_DEPTH = 100
UNKNOWN_OPERATOR_PATTERN = re.compile(r"^(?:&&?|\|\|?|!|XOR|NEAR(?:/\d+)?|ADJ(?:/\d+)?|ANDNOT)$")

QueryAnalyzer = Callable[[str], Sequence[IndexedToken]]


@dataclass(frozen=True)
class TermNode:
    term: str


@dataclass(frozen=True)
class PhraseNode:
    """Consecutive terms; ``offsets`` are relative to the first term."""

    terms: tuple[str, ...]
    offsets: tuple[int, ...]


@dataclass(frozen=True)
class AndNode:
    children: tuple[QueryExpression, ...]


@dataclass(frozen=True)
class OrNode:
    children: tuple[QueryExpression, ...]


@dataclass(frozen=True)
class NotNode:
    child: QueryExpression


@dataclass(frozen=True)
class MatchNoneNode:
    """Expression left after every word was dropped by the analyzer; matches nothing."""


QueryExpression = Union[TermNode, PhraseNode, AndNode, OrNode, NotNode, MatchNoneNode]


@dataclass(frozen=True)
class _Lexeme:
    kind: str  # word, phrase, op, lparen, rparen
    text: str
    offset: int


def tokenize_query(query_text: str) -> list[_Lexeme]:
    """Split raw query text into words, phrases, operators and parentheses."""
    lexemes: list[_Lexeme] = []
    index = 0
    length = len(query_text)
    while index < length:
        char = query_text[index]
        if char.isspace():
            index += 1
            continue
        if char == '"':
            closing = query_text.find('"', index + 1)
            if closing == -1:
                raise QueryParseError(QueryParseReason.UNBALANCED_QUOTES, "missing closing quote", offset=index)
            lexemes.append(_Lexeme("phrase", query_text[index + 1 : closing], index))
            index = closing + 1
            continue
        if char == "(":
            lexemes.append(_Lexeme("lparen", char, index))
            index += 1
            continue
        if char == ")":
            lexemes.append(_Lexeme("rparen", char, index))
            index += 1
            continue

        start = index
        while index < length and not query_text[index].isspace() and query_text[index] not in '"()':
            index += 1
        word = query_text[start:index]
        if word in OPERATORS:
            lexemes.append(_Lexeme("op", word, start))
        elif UNKNOWN_OPERATOR_PATTERN.match(word):
            raise QueryParseError(QueryParseReason.UNKNOWN_OPERATOR, f"unsupported operator {word!r}", offset=start)
        else:
            lexemes.append(_Lexeme("word", word, start))
    return lexemes


class QueryParser:
    """Recursive-descent parser producing ``QueryExpression`` trees."""

    def __init__(self, analyze: QueryAnalyzer) -> None:
        self._analyze = analyze

    def parse(self, query_text: str) -> QueryExpression:
        if not query_text or not query_text.strip():
            raise QueryParseError(QueryParseReason.EMPTY_QUERY, "query is empty", offset=0)
        state = _ParseState(tokenize_query(query_text), self._analyze)
        node = state.expression(depth=0)
        if state.peek() is not None:
            lexeme = state.peek()
            raise QueryParseError(
                QueryParseReason.UNBALANCED_PARENTHESES, "unexpected closing parenthesis", offset=lexeme.offset
            )
        return node if node is not None else MatchNoneNode()


class _ParseState:
    def __init__(self, lexemes: list[_Lexeme], analyze: QueryAnalyzer) -> None:
        self.lexemes = lexemes
        self.index = 0
        self.analyze = analyze
        self.depth = 0

    def peek(self) -> _Lexeme | None:
        return self.lexemes[self.index] if self.index < len(self.lexemes) else None

    def advance(self) -> _Lexeme:
        lexeme = self.lexemes[self.index]
        self.index += 1
        return lexeme

    def expression(self, depth: int) -> QueryExpression | None:
        first = self.peek()
        if first is None or first.kind == "rparen":
            offset = first.offset if first else None
            raise QueryParseError(QueryParseReason.EMPTY_QUERY, "expected a term", offset=offset)
        if first.kind == "op" and first.text != "NOT":
            raise QueryParseError(
                QueryParseReason.UNKNOWN_OPERATOR, f"operator {first.text} has no left operand", offset=first.offset
            )

        node = self.unary()
        while True:
            lexeme = self.peek()
            if lexeme is None:
                break
            if lexeme.kind == "rparen":
                if depth == 0:
                    raise QueryParseError(
                        QueryParseReason.UNBALANCED_PARENTHESES,
                        "unexpected closing parenthesis",
                        offset=lexeme.offset,
                    )
                break
            operator = "AND"
            if lexeme.kind == "op" and lexeme.text in ("AND", "OR"):
                operator = self.advance().text
                following = self.peek()
                if _lacks_operand(following):
                    raise QueryParseError(
                        QueryParseReason.UNKNOWN_OPERATOR,
                        f"operator {operator} has no right operand",
                        offset=lexeme.offset,
                    )
            right = self.unary()
            node = _combine(operator, node, right)
        return node

    def unary(self) -> QueryExpression | None:
        lexeme = self.peek()
        if lexeme is None:
            raise QueryParseError(QueryParseReason.EMPTY_QUERY, "expected a term")
        if lexeme.kind == "op":
            if lexeme.text != "NOT":
                raise QueryParseError(
                    QueryParseReason.UNKNOWN_OPERATOR, f"operator {lexeme.text} has no operand", offset=lexeme.offset
                )
            self.advance()
            following = self.peek()
            if _lacks_operand(following):
                raise QueryParseError(
                    QueryParseReason.UNKNOWN_OPERATOR, "operator NOT has no operand", offset=lexeme.offset
                )
            self._descend(lexeme)
            operand = self.unary()
            self.depth -= 1
            return NotNode(operand) if operand is not None else None
        return self.primary()

    def primary(self) -> QueryExpression | None:
        lexeme = self.advance()
        if lexeme.kind == "lparen":
            closing = self.peek()
            if closing is not None and closing.kind == "rparen":
                raise QueryParseError(QueryParseReason.EMPTY_QUERY, "empty parentheses", offset=lexeme.offset)
            self._descend(lexeme)
            node = self.expression(depth=self.depth)
            self.depth -= 1
            closing = self.peek()
            if closing is None or closing.kind != "rparen":
                raise QueryParseError(
                    QueryParseReason.UNBALANCED_PARENTHESES, "missing closing parenthesis", offset=lexeme.offset
                )
            self.advance()
            return node
        if lexeme.kind == "rparen":
            raise QueryParseError(
                QueryParseReason.UNBALANCED_PARENTHESES, "unexpected closing parenthesis", offset=lexeme.offset
            )
        return self._analyzed(lexeme.text)

    def _descend(self, lexeme: _Lexeme) -> None:
        self.depth += 1
        if self.depth > MAX_NESTING_DEPTH:
            raise QueryParseError(
                QueryParseReason.UNBALANCED_PARENTHESES,
                f"query nested deeper than {MAX_NESTING_DEPTH} levels",
                offset=lexeme.offset,
            )

    def _analyzed(self, text: str) -> QueryExpression | None:
        tokens = list(self.analyze(text))
        if not tokens:
            return None
        if len(tokens) == 1:
            return TermNode(tokens[0].term)
        first = tokens[0].position
        return PhraseNode(
            terms=tuple(token.term for token in tokens),
            offsets=tuple(token.position - first for token in tokens),
        )


def _combine(operator: str, left: QueryExpression | None, right: QueryExpression | None) -> QueryExpression | None:
    if left is None:
        return right
    if right is None:
        return left
    node_type = AndNode if operator == "AND" else OrNode
    children: list[QueryExpression] = []
    for side in (left, right):
        if isinstance(side, node_type):
            children.extend(side.children)
        else:
            children.append(side)
    return node_type(tuple(children))


def expression_terms(node: QueryExpression) -> list[str]:
    """Terms that contribute to ranking: everything not under a ``NOT``."""
    if isinstance(node, TermNode):
        return [node.term]
    if isinstance(node, PhraseNode):
        return list(node.terms)
    if isinstance(node, (AndNode, OrNode)):
        terms: list[str] = []
        for child in node.children:
            for term in expression_terms(child):
                if term not in terms:
                    terms.append(term)
        return terms
    return []


def _lacks_operand(lexeme: _Lexeme | None) -> bool:
    return lexeme is None or lexeme.kind == "rparen" or (lexeme.kind == "op" and lexeme.text != "NOT")
