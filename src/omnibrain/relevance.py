"""Lexical relevance scoring for smart search.

Scores how well a query matches a memory's fact and tags without any
embeddings.  An exact (case-insensitive) substring match is the only way to
reach a score of ``1.0``; word-level matches are capped at ``0.95``.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import TypeVar

T = TypeVar("T")

# Results scoring below this are not considered matches.
MATCH_THRESHOLD = 0.2

FULL_MATCH_WEIGHT = 0.8
PARTIAL_MATCH_WEIGHT = 0.4
MAX_WORD_SCORE = 0.95
TAG_BOOST = 0.15


def score(fact: str, query: str, tags: Iterable[str] = ()) -> float:
    """Compute the lexical relevance of *fact* (and *tags*) to *query*.

    1. If the fact contains the whole query, the score is ``1.0``.
    2. Otherwise each whitespace-separated query word is compared against
       the fact's words and the tags.  A word present verbatim counts as a
       full match.  Otherwise the best partial match counts as credit:
       ``len(q) / len(f)`` for fact words containing the query word, and
       ``len(f) / len(q)`` for fact words contained in it.
    3. ``full_fraction * 0.8 + partial_fraction * 0.4``, capped at ``0.95``.

    Args:
        fact: The memory's text.
        query: The search query.
        tags: The memory's tags.

    Returns:
        A float in ``[0, 1]``.
    """
    fact_lower = fact.lower()
    query_lower = query.lower()

    if query_lower in fact_lower:
        return 1.0

    query_words = query_lower.split()
    if not query_words:
        return 0.0

    fact_words = set(fact_lower.split())
    fact_words.update(tag.lower() for tag in tags)

    matched = 0
    partial = 0.0
    for qw in query_words:
        if qw in fact_words:
            matched += 1
            continue
        best = 0.0
        for fw in fact_words:
            if qw in fw:
                best = max(best, len(qw) / len(fw))
            elif fw in qw:
                best = max(best, len(fw) / len(qw))
        partial += best

    n = len(query_words)
    combined = (matched / n) * FULL_MATCH_WEIGHT + (partial / n) * PARTIAL_MATCH_WEIGHT
    return min(combined, MAX_WORD_SCORE)


def tag_boost(relevance: float, query: str, tags: Iterable[str]) -> float:
    """Boost *relevance* when any query word appears inside any tag."""
    words = query.lower().split()
    tag_list = [t.lower() for t in tags]
    if any(w in t for w in words for t in tag_list):
        return min(relevance + TAG_BOOST, 1.0)
    return relevance


def rank(scored: Sequence[tuple[float, T]]) -> list[tuple[float, T]]:
    """Sort ``(score, item)`` pairs by descending score.

    The sort is stable: items with equal scores keep their relative order.
    """
    return sorted(scored, key=lambda pair: pair[0], reverse=True)
