"""
Cosine ranking with keyset pagination.

Ordering:
    similarity DESC, fact id DESC

The id tie-break makes the order total, so a page boundary can be described
by the last row alone. Page N+1 for cursor (last_id, last_similarity) keeps a
row iff:

    similarity < last_similarity
    OR (similarity == last_similarity AND id < last_id)

which advances past every row already returned, ties included.

Similarities are quantized to SIMILARITY_PRECISION decimal places before any
comparison. The cursor carries the quantized value, so the equality test in
the keyset predicate compares identical floats on every page instead of
values that drift in the last bits between numpy builds or query runs.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np
from numpy.typing import NDArray

from ..backends.base import FactSearchResult, SearchCandidate, SearchCursor

SIMILARITY_PRECISION = 6


def quantize_similarity(value: float) -> float:
    """Round a similarity to the precision used for ranking and cursors."""
    return round(float(value), SIMILARITY_PRECISION)


def cosine_similarity(a: NDArray, b: NDArray) -> float:
    """
    Compute cosine similarity between two vectors.

    Returns:
        Similarity in [-1, 1]; 0.0 when either vector has zero length
    """
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)

    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(a, b) / (norm_a * norm_b))


def cosine_similarities(query: NDArray, matrix: NDArray) -> NDArray:
    """
    Cosine similarity of ``query`` against every row of ``matrix``.

    Rows (or a query) with zero length score 0.0.

    Raises:
        ValueError: If row dimensions differ from the query's
    """
    if matrix.ndim != 2 or matrix.shape[1] != query.shape[0]:
        raise ValueError(
            f"Candidate vectors have shape {matrix.shape}, "
            f"but query has {query.shape[0]} dimensions"
        )

    query_norm = np.linalg.norm(query)
    row_norms = np.linalg.norm(matrix, axis=1)
    denominators = row_norms * query_norm

    dots = matrix @ query
    scores = np.zeros(len(matrix), dtype=np.float64)
    nonzero = denominators > 0
    scores[nonzero] = dots[nonzero] / denominators[nonzero]
    return scores


def _passes_cursor(similarity: float, fact_id: int, cursor: SearchCursor | None) -> bool:
    if cursor is None:
        return True
    return similarity < cursor.last_similarity or (
        similarity == cursor.last_similarity and fact_id < cursor.last_id
    )


def rank_candidates(
    candidates: Sequence[SearchCandidate],
    query_vector: Sequence[float],
    *,
    min_similarity: float,
    limit: int,
    cursor: SearchCursor | None = None,
) -> tuple[list[FactSearchResult], SearchCursor | None]:
    """
    Rank candidates against a query and cut one page.

    Args:
        candidates: Facts with their vectors
        query_vector: Query embedding
        min_similarity: Inclusive lower bound, compared against the similarity
            after rounding to 6 places; a raw cosine within 5e-7 below the
            bound rounds up to it and is kept
        limit: Page size (>= 1)
        cursor: Position after the previous page, or None for the first page

    Returns:
        (results, next_cursor); next_cursor is None on the last page

    Raises:
        ValueError: If limit < 1 or vector dimensions disagree
    """
    if limit < 1:
        raise ValueError(f"limit must be >= 1, got {limit}")

    if not candidates:
        return [], None

    query = np.asarray(query_vector, dtype=np.float64)
    matrix = np.asarray([c.vector for c in candidates], dtype=np.float64)
    scores = cosine_similarities(query, matrix)

    ranked: list[tuple[float, SearchCandidate]] = []
    for candidate, score in zip(candidates, scores, strict=True):
        similarity = quantize_similarity(score)
        if similarity < min_similarity:
            continue
        if not _passes_cursor(similarity, candidate.fact_id, cursor):
            continue
        ranked.append((similarity, candidate))

    ranked.sort(key=lambda item: (item[0], item[1].fact_id), reverse=True)

    # limit + 1 rows tell us whether another page exists
    window = ranked[: limit + 1]
    has_more = len(window) > limit
    page = window[:limit]

    results = [
        FactSearchResult(
            id=candidate.fact_id,
            text=candidate.text,
            similarity=similarity,
            chapter=candidate.chapter,
            page_number=candidate.page_number,
        )
        for similarity, candidate in page
    ]

    next_cursor = None
    if has_more and results:
        last = results[-1]
        next_cursor = SearchCursor(last_id=last.id, last_similarity=last.similarity)

    return results, next_cursor
