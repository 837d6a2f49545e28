"""Positional helpers: exact phrase matching and proximity spans."""

from __future__ import annotations

from collections.abc import Mapping, Sequence


def phrase_starts(offset_positions: Sequence[tuple[int, Sequence[int]]]) -> list[int]:
    """Return the positions where a phrase starts in one document.

    Args:
        offset_positions: For each phrase token, its offset relative to the
            first phrase token and the document positions of its term.

    A start ``p`` matches when every token ``i`` occurs at ``p + offset_i``.
    Offsets come from the unfiltered query stream, so a stop word inside a
    quoted phrase still has to occupy its slot in the document.
    """
    if not offset_positions:
        return []
    ordered = sorted(offset_positions, key=lambda item: len(item[1]))
    anchor_offset, anchor_positions = ordered[0]
    others = [(offset - anchor_offset, set(positions)) for offset, positions in ordered[1:]]
    base_offset = min(offset for offset, _ in offset_positions)
    starts = []
    for position in anchor_positions:
        if all(position + delta in positions for delta, positions in others):
            starts.append(position - (anchor_offset - base_offset))
    return sorted(starts)


def get_min_span(term_positions: Mapping[str, Sequence[int]]) -> float:
    """Calculate minimum span containing at least one of each term.

    The span is the number of positions from first to last term inclusive.
    For adjacent terms, span equals the number of terms.

    Returns:
        Minimum span, or infinity if not all terms are present.
    """
    if not term_positions or any(not positions for positions in term_positions.values()):
        return float("inf")
    if len(term_positions) == 1:
        return 1.0

    # Sliding window over the merged, sorted occurrence list.
    events = sorted((position, term) for term, positions in term_positions.items() for position in positions)
    needed = len(term_positions)
    counts: dict[str, int] = {}
    covered = 0
    left = 0
    best = float("inf")
    for position, term in events:
        counts[term] = counts.get(term, 0) + 1
        if counts[term] == 1:
            covered += 1
        while covered == needed:
            left_position, left_term = events[left]
            best = min(best, position - left_position + 1)
            counts[left_term] -= 1
            if counts[left_term] == 0:
                covered -= 1
            left += 1
    return best
