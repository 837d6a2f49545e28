"""Statistical helpers for TF-IDF scoring.

The functions here stay independent of the storage backend so they can be
unit tested without an index.
"""

from __future__ import annotations

from collections.abc import Iterable
import math


def term_frequency_weight(tf: int) -> float:
    """Sublinear term frequency: ``1 + ln(tf)``, zero when the term is absent."""
    if tf <= 0:
        return 0.0
    return 1.0 + math.log(tf)


def calculate_idf(doc_freq: int, total_docs: int) -> float:
    """Return ``ln(1 + N / df)``.

    Always positive for a term that occurs somewhere, so a term present in
    every document still contributes a little.
    """
    if total_docs <= 0 or doc_freq <= 0:
        return 0.0
    df = min(doc_freq, total_docs)
    return math.log(1.0 + total_docs / df)


def tf_idf(tf: int, doc_freq: int, total_docs: int) -> float:
    return term_frequency_weight(tf) * calculate_idf(doc_freq, total_docs)


def proximity_bonus(min_span: float, term_count: int, *, weight: float = 0.5) -> float:
    """Bonus for query terms that appear close together.

    Adjacent terms (span equal to the number of terms) earn the full weight;
    the bonus decays with the extra distance.
    """
    if term_count < 2 or math.isinf(min_span) or min_span <= 0:
        return 0.0
    slack = max(0.0, min_span - term_count)
    return weight / (1.0 + slack)


def sum_scores(parts: Iterable[float]) -> float:
    return math.fsum(parts)
