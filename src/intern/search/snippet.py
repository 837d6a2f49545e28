"""Snippet extraction with sentence-boundary awareness.

Snippets try to start and end on sentence boundaries, fall back to word
boundaries, and are flattened to a single line so they fit one protocol
record.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import re


SENTENCE_END_PATTERN = re.compile(r"[.!?]\s+")
WORD_BOUNDARY_PATTERN = re.compile(r"\s+")
WHITESPACE_RUN = re.compile(r"\s+")

HIGHLIGHT_OPEN = "[["
HIGHLIGHT_CLOSE = "]]"


@dataclass(frozen=True)
class SnippetSettings:
    max_chars: int = 200
    surrounding_context: int = 80
    highlight: bool = False


def find_sentence_start(text: str, position: int, max_lookback: int = 200) -> int:
    """Find the start of the sentence containing ``position``."""
    if position <= 0:
        return 0

    start_search = max(0, position - max_lookback)
    search_text = text[start_search:position]

    matches = list(SENTENCE_END_PATTERN.finditer(search_text))
    if matches:
        return start_search + matches[-1].end()

    for match in WORD_BOUNDARY_PATTERN.finditer(search_text):
        if match.start() >= len(search_text) // 4:
            return start_search + match.end()

    return start_search


def find_sentence_end(text: str, position: int, max_lookahead: int = 200) -> int:
    """Find the end of the sentence containing ``position``."""
    if position >= len(text):
        return len(text)

    end_search = min(len(text), position + max_lookahead)
    search_text = text[position:end_search]

    match = SENTENCE_END_PATTERN.search(search_text)
    if match:
        return position + match.end()

    if end_search == len(text):
        return end_search
    three_quarter_pos = (len(search_text) * 3) // 4
    for match in reversed(list(WORD_BOUNDARY_PATTERN.finditer(search_text))):
        if match.start() <= three_quarter_pos:
            return position + match.start()

    return end_search


def flatten(text: str) -> str:
    """Collapse tabs, newlines and runs of spaces to single spaces."""
    return WHITESPACE_RUN.sub(" ", text).strip()


def build_snippet(
    text: str,
    match_spans: Sequence[tuple[int, int]],
    settings: SnippetSettings | None = None,
) -> str:
    """Build a one-line snippet around the first match.

    Args:
        text: Stored document text.
        match_spans: Character ``(start, end)`` spans of matching tokens in
            ``text``, in document order. Without spans the snippet is the
            beginning of the text.
        settings: Length and highlighting policy.
    """
    settings = settings or SnippetSettings()
    if not text:
        return ""

    if not match_spans:
        end = find_sentence_end(text, min(len(text), settings.max_chars // 2), settings.max_chars // 2)
        return flatten(text[: min(end, settings.max_chars)])

    match_start, match_end = match_spans[0]
    initial_start = max(0, match_start - settings.surrounding_context)
    initial_end = min(len(text), match_end + settings.surrounding_context)

    start = find_sentence_start(text, initial_start, max_lookback=settings.surrounding_context)
    end = find_sentence_end(text, initial_end, max_lookahead=settings.surrounding_context)

    if end - start > settings.max_chars:
        half = settings.max_chars // 2
        center = (match_start + match_end) // 2
        start = max(0, min(center - half, match_start))
        end = min(len(text), start + settings.max_chars)

    window = text[start:end]
    if settings.highlight:
        local_spans = [(s - start, e - start) for s, e in match_spans if s >= start and e <= end]
        window = highlight_spans(window, local_spans)
    return flatten(window)


def highlight_spans(snippet: str, spans: Sequence[tuple[int, int]], max_highlights: int = 3) -> str:
    """Wrap up to ``max_highlights`` character spans in ``[[...]]`` markers."""
    if not snippet or not spans:
        return snippet
    chosen: list[tuple[int, int]] = []
    last_end = -1
    for start, end in sorted(spans):
        if start < last_end or start >= end:
            continue
        chosen.append((start, end))
        last_end = end
        if len(chosen) >= max_highlights:
            break

    parts: list[str] = []
    cursor = 0
    for start, end in chosen:
        parts.append(snippet[cursor:start])
        parts.append(f"{HIGHLIGHT_OPEN}{snippet[start:end]}{HIGHLIGHT_CLOSE}")
        cursor = end
    parts.append(snippet[cursor:])
    return "".join(parts)
