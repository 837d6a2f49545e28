"""Analyzer utilities for the index and query paths.

Analyzers follow Whoosh's composable tokenizer/filter design: a tokenizer
yields ``Token`` objects and each filter transforms the stream. Filters never
renumber positions, so a token keeps its ordinal in the unfiltered stream and
phrase queries can still demand adjacency in the original text.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, MutableMapping, Sequence
from dataclasses import dataclass, field
import re
from typing import Any, Protocol
import unicodedata


DEFAULT_TOKEN_PATTERN = r"[\w']+"


@dataclass
class Token:
    """Represents a token emitted by analyzers."""

    text: str
    position: int
    start_char: int
    end_char: int
    attributes: MutableMapping[str, Any] = field(default_factory=dict)

    def copy_with(self, **updates: Any) -> Token:
        data = {
            "text": self.text,
            "position": self.position,
            "start_char": self.start_char,
            "end_char": self.end_char,
            "attributes": dict(self.attributes),
        }
        data.update(updates)
        return Token(**data)


class Analyzer(Protocol):
    """Protocol implemented by analyzers."""

    def __call__(self, text: str) -> list[Token]:  # pragma: no cover - interface definition
        ...


class Tokenizer(Protocol):
    """Protocol implemented by tokenizers."""

    def __call__(self, text: str) -> Iterator[Token]:  # pragma: no cover - interface definition
        ...


class TokenFilter(Protocol):
    """Protocol implemented by token filters."""

    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:  # pragma: no cover - interface definition
        ...


class RegexTokenizer:
    """Regex-based tokenizer; the pattern is the token boundary rule."""

    def __init__(self, pattern: str = DEFAULT_TOKEN_PATTERN, flags: int = re.UNICODE | re.MULTILINE) -> None:
        self.pattern = re.compile(pattern, flags)

    def __call__(self, text: str) -> Iterator[Token]:
        for position, match in enumerate(self.pattern.finditer(text)):
            yield Token(
                text=match.group(0),
                position=position,
                start_char=match.start(),
                end_char=match.end(),
            )


class StripPunctuationFilter:
    """Trims leading/trailing apostrophes and underscores left by the tokenizer."""

    def __init__(self, characters: str = "'_") -> None:
        self.characters = characters

    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:
        for token in tokens:
            stripped = token.text.strip(self.characters)
            if not stripped:
                continue
            yield token if stripped == token.text else token.copy_with(text=stripped)


class LowercaseFilter:
    """Filter that case-folds token text."""

    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:
        for token in tokens:
            folded = token.text.casefold()
            yield token if folded == token.text else token.copy_with(text=folded)


class AccentFoldFilter:
    """Decomposes to NFD and drops combining marks (``café`` -> ``cafe``)."""

    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:
        for token in tokens:
            if token.text.isascii():
                yield token
                continue
            decomposed = unicodedata.normalize("NFD", token.text)
            folded = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
            yield token.copy_with(text=unicodedata.normalize("NFC", folded))


class MinLengthFilter:
    """Discards tokens shorter than ``min_length`` characters."""

    def __init__(self, min_length: int = 1) -> None:
        self.min_length = max(0, min_length)

    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:
        for token in tokens:
            if len(token.text) >= self.min_length:
                yield token


DEFAULT_STOPWORDS: tuple[str, ...] = tuple(
    "a an and are as at be but by for if in into is it no not "
    "of on or such that the their then there these they this to was will with"
    .split()
)

_SUFFIX_RULES: tuple[tuple[str, str], ...] = (
    ("ization", "ize"),
    ("ational", "ate"),
    ("fulness", "ful"),
    ("ousness", "ous"),
    ("iveness", "ive"),
    ("tional", "tion"),
    ("biliti", "ble"),
    ("lessli", "less"),
    ("entli", "ent"),
    ("enci", "ence"),
    ("anci", "ance"),
    ("izer", "ize"),
    ("abli", "able"),
    ("alli", "al"),
    ("ator", "ate"),
    ("alism", "al"),
    ("aliti", "al"),
    ("ousli", "ous"),
    ("ration", "rate"),
    ("ation", "ate"),
    ("ness", ""),
    ("ment", ""),
    ("ance", "an"),
    ("ence", "en"),
    ("able", ""),
    ("ible", ""),
)

_SIMPLE_SUFFIXES: tuple[str, ...] = ("ingly", "edly", "ing", "ed", "ly")
_SIBILANT_ENDINGS: tuple[str, ...] = ("s", "x", "z", "ch", "sh")


class StopFilter:
    """Removes stopwords from the stream."""

    def __init__(self, stopwords: Iterable[str] | None = None) -> None:
        vocab = stopwords if stopwords is not None else DEFAULT_STOPWORDS
        self.stopwords = {word.casefold() for word in vocab}

    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:
        for token in tokens:
            if token.text.casefold() not in self.stopwords:
                yield token


class PorterStemFilter:
    """Applies a minimal Porter-style stemming routine."""

    def __init__(self) -> None:
        self._stem = _build_porter_stemmer()

    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:
        for token in tokens:
            stemmed = self._stem(token.text)
            yield token if stemmed == token.text else token.copy_with(text=stemmed)


def _build_porter_stemmer() -> Callable[[str], str]:
    """Return a very small Porter-like stemmer for English notes."""

    def stem(word: str) -> str:
        lower = word.lower()
        candidate = _strip_complex_suffix(lower)
        if candidate:
            return candidate
        fallback = _strip_simple_suffix(lower)
        if fallback:
            return fallback
        return lower

    return stem


def _strip_complex_suffix(lower: str) -> str | None:
    for suffix, replacement in _SUFFIX_RULES:
        if lower.endswith(suffix) and len(lower) - len(suffix) >= 2:
            candidate = lower[: -len(suffix)] + replacement
            if len(candidate) >= 2:
                return candidate
    return None


def _strip_simple_suffix(lower: str) -> str | None:
    for suffix in _SIMPLE_SUFFIXES:
        if lower.endswith(suffix) and len(lower) - len(suffix) >= 2:
            candidate = lower[: -len(suffix)]
            if len(candidate) >= 2:
                return candidate
    return _strip_plural(lower)


def _strip_plural(lower: str) -> str | None:
    # "es" is only a plural ending after sibilants: boxes, wishes, but notes, files.
    if lower.endswith("es") and lower[:-2].endswith(_SIBILANT_ENDINGS) and len(lower) >= 5:
        return lower[:-2]
    if lower.endswith("s") and not lower.endswith("ss") and len(lower) >= 4:
        return lower[:-1]
    return None


class AnalyzerPipeline:
    """Composable analyzer pipeline (tokenizer + filters)."""

    def __init__(self, tokenizer: Tokenizer, filters: Sequence[TokenFilter] | None = None) -> None:
        self.tokenizer = tokenizer
        self.filters = list(filters or [])

    def __call__(self, text: str) -> list[Token]:
        stream: Iterable[Token] = self.tokenizer(text)
        for token_filter in self.filters:
            stream = token_filter(stream)
        return list(stream)


@dataclass(frozen=True)
class AnalyzerSettings:
    """Tokenization policy shared by the normalizer and the query parser."""

    token_pattern: str = DEFAULT_TOKEN_PATTERN
    min_token_length: int = 2
    stop_words: frozenset[str] = frozenset(DEFAULT_STOPWORDS)
    stemming: bool = True
    fold_accents: bool = True


def build_analyzer(settings: AnalyzerSettings | None = None) -> AnalyzerPipeline:
    """Build the analyzer for a tokenization policy.

    Documents and queries must go through the same pipeline, otherwise query
    terms would never line up with indexed terms.
    """
    settings = settings or AnalyzerSettings()
    filters: list[TokenFilter] = [StripPunctuationFilter()]
    if settings.fold_accents:
        filters.append(AccentFoldFilter())
    filters.append(LowercaseFilter())
    filters.append(MinLengthFilter(settings.min_token_length))
    if settings.stop_words:
        filters.append(StopFilter(settings.stop_words))
    if settings.stemming:
        filters.append(PorterStemFilter())
    return AnalyzerPipeline(RegexTokenizer(settings.token_pattern), filters)
