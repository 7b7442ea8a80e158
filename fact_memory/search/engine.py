"""
Similarity search over stored facts.

Reads are allowed to fail soft: any error while loading or ranking
candidates is logged and returned as an empty page with ``error`` set,
never raised. Invalid arguments are still raised, before any I/O.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from ..backends.base import FactStorageBackend, SearchCursor, SearchResultPage
from .similarity import rank_candidates

logger = logging.getLogger(__name__)

DEFAULT_MIN_SIMILARITY = 0.2
DEFAULT_LIMIT = 10


class SimilaritySearchEngine:
    """Ranks facts against a query vector with stable keyset pagination."""

    def __init__(self, backend: FactStorageBackend):
        self.backend = backend

    async def search(
        self,
        query_vector: Sequence[float],
        *,
        min_similarity: float = DEFAULT_MIN_SIMILARITY,
        limit: int = DEFAULT_LIMIT,
        cursor: SearchCursor | None = None,
        chapter_id: str | None = None,
        book_id: str | None = None,
    ) -> SearchResultPage:
        """
        Return one page of facts ranked by cosine similarity.

        Args:
            query_vector: Query embedding
            min_similarity: Inclusive similarity threshold
            limit: Page size
            cursor: ``next_cursor`` of the previous page
            chapter_id: Restrict to one chapter
            book_id: Restrict to one book

        Raises:
            ValueError: If limit < 1
        """
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")

        try:
            candidates = await self.backend.get_search_candidates(
                chapter_id=chapter_id, book_id=book_id
            )
            facts, next_cursor = rank_candidates(
                candidates,
                query_vector,
                min_similarity=min_similarity,
                limit=limit,
                cursor=cursor,
            )
        except Exception as e:
            logger.error(
                f"Fact search failed (chapter={chapter_id}, book={book_id}): {e}",
                exc_info=True,
            )
            return SearchResultPage(error=str(e) or type(e).__name__)

        logger.debug(
            f"Fact search returned {len(facts)} of {len(candidates)} candidates "
            f"(min_similarity={min_similarity}, more={next_cursor is not None})"
        )
        return SearchResultPage(facts=facts, next_cursor=next_cursor)
