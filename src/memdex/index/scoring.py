"""Score normalization and hybrid merging of keyword and vector candidates.

Both engines report relevance on their own native scale. They are mapped to
a common [0, 1] similarity and combined linearly:

    score = vector_weight * vector_score + text_weight * text_score

A chunk found by only one engine gets 0 for the other term.
"""

from __future__ import annotations

from typing import Dict, Iterable, List

from memdex.models import KeywordCandidate, MergedResult, ScoredCandidate, VectorCandidate

# Keyword ranks at or below this value saturate to a score of 0.
LEXICAL_RANK_FLOOR = -50.0
# Cosine distance spans [0, 2]; the vector score is linear over this range.
VECTOR_DISTANCE_RANGE = 2.0


def bm25_rank_to_score(rank: float, *, floor: float = LEXICAL_RANK_FLOOR) -> float:
    """Map a keyword rank (0 best, more negative worse) onto [0, 1]."""
    clamped = min(0.0, max(floor, rank))
    return (clamped - floor) / -floor


def cosine_distance_to_score(
    distance: float, *, distance_range: float = VECTOR_DISTANCE_RANGE
) -> float:
    """Map a cosine distance (0 identical, 2 opposite) onto [0, 1]."""
    return min(1.0, max(0.0, 1.0 - distance / distance_range))


def score_keyword_candidates(
    candidates: Iterable[KeywordCandidate], *, floor: float = LEXICAL_RANK_FLOOR
) -> List[ScoredCandidate]:
    return [
        ScoredCandidate(
            id=c.id,
            path=c.path,
            source=c.source,
            start_line=c.start_line,
            end_line=c.end_line,
            snippet=c.snippet,
            score=bm25_rank_to_score(c.rank, floor=floor),
        )
        for c in candidates
    ]


def score_vector_candidates(
    candidates: Iterable[VectorCandidate], *, distance_range: float = VECTOR_DISTANCE_RANGE
) -> List[ScoredCandidate]:
    return [
        ScoredCandidate(
            id=c.id,
            path=c.path,
            source=c.source,
            start_line=c.start_line,
            end_line=c.end_line,
            snippet=c.snippet,
            score=cosine_distance_to_score(c.distance, distance_range=distance_range),
        )
        for c in candidates
    ]


def merge_hybrid_results(
    vector: Iterable[ScoredCandidate],
    keyword: Iterable[ScoredCandidate],
    *,
    vector_weight: float,
    text_weight: float,
) -> List[MergedResult]:
    """Combine both candidate lists into one list ordered by score.

    Metadata comes from the vector candidate when an id appears in both
    lists. Equal scores keep first-seen order (vector list scanned first).
    """
    by_id: Dict[str, MergedResult] = {}

    for candidate in vector:
        if candidate.id in by_id:
            continue
        by_id[candidate.id] = MergedResult(
            id=candidate.id,
            path=candidate.path,
            source=candidate.source,
            start_line=candidate.start_line,
            end_line=candidate.end_line,
            snippet=candidate.snippet,
            score=0.0,
            vector_score=candidate.score,
        )

    seen_keyword: set[str] = set()
    for candidate in keyword:
        if candidate.id in seen_keyword:
            continue
        seen_keyword.add(candidate.id)
        existing = by_id.get(candidate.id)
        if existing is not None:
            existing.text_score = candidate.score
            continue
        by_id[candidate.id] = MergedResult(
            id=candidate.id,
            path=candidate.path,
            source=candidate.source,
            start_line=candidate.start_line,
            end_line=candidate.end_line,
            snippet=candidate.snippet,
            score=0.0,
            text_score=candidate.score,
        )

    merged = list(by_id.values())
    for entry in merged:
        entry.score = vector_weight * entry.vector_score + text_weight * entry.text_score
    # list.sort is stable, so ties keep insertion order.
    merged.sort(key=lambda entry: entry.score, reverse=True)
    return merged
