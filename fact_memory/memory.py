"""
Chapter memory: reconciliation and near-duplicate suppression.

``ChapterMemory`` is the entry point callers use. It owns the embedding
cache, the fact store and the search engine built over one backend, and
adds the operations that span them:

- ``upsert_facts`` converges a chapter's stored facts to a freshly
  extracted set (insert new texts, re-embed kept ones, drop stale ones)
- ``find_similar_facts`` / ``fact_exists`` / ``add_fact_if_new`` use the
  search engine as a semantic duplicate detector

Writes to one chapter are serialized with a per-chapter lock so two
reconciliations of the same chapter cannot interleave their diff and
their writes. The lock is in-process only, and a chapter's lock is
dropped once no task holds or waits on it.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Iterable
from typing import Any

from .backends.base import (
    Fact,
    FactStorageBackend,
    FactWithEmbedding,
    FeatureTag,
    SearchCursor,
    SearchResultPage,
)
from .config import MemoryConfig
from .embeddings.base import EmbeddingProvider
from .embeddings.cache import EmbeddingCache
from .exceptions import SearchFailedError
from .logging_utils import MemoryLoggerAdapter
from .search.engine import SimilaritySearchEngine
from .store import FactStore

logger = logging.getLogger(__name__)

_QUERY_TAGS = frozenset({FeatureTag.SEARCH_QUERY})


class ChapterMemory:
    """Semantic fact memory scoped by chapter."""

    def __init__(
        self,
        backend: FactStorageBackend,
        provider: EmbeddingProvider,
        config: MemoryConfig | None = None,
    ):
        """
        Raises:
            ValueError: If the backend enforces a vector width the provider
                does not produce
        """
        expected = backend.vector_dimensions
        if expected is not None and provider.dimensions != expected:
            raise ValueError(
                f"Embedding provider {provider.model_name!r} produces "
                f"{provider.dimensions}-dimensional vectors but the backend stores "
                f"{expected}; configure both with the same width"
            )

        self.backend = backend
        self.provider = provider
        self.config = config or MemoryConfig()
        self.cache = EmbeddingCache(backend, provider, retry_config=self.config.retry)
        self.store = FactStore(backend, self.cache)
        self.engine = SimilaritySearchEngine(backend)
        self._dedup_lock = asyncio.Lock()
        self._chapter_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @classmethod
    async def create(
        cls,
        backend: FactStorageBackend,
        provider: EmbeddingProvider,
        config: MemoryConfig | None = None,
    ) -> ChapterMemory:
        """Build a memory over the backend, then initialize the backend."""
        memory = cls(backend, provider, config)
        await backend.initialize()
        return memory

    async def close(self) -> None:
        await self.backend.close()
        await self.provider.close()

    async def __aenter__(self) -> ChapterMemory:
        return self

    async def __aexit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        await self.close()

    def _chapter_lock(self, chapter_id: str) -> asyncio.Lock:
        lock = self._chapter_locks.get(chapter_id)
        if lock is None:
            lock = self._chapter_locks[chapter_id] = asyncio.Lock()
        return lock

    # =========================================================================
    # Fact CRUD
    # =========================================================================

    async def add_facts(self, chapter_id: str, facts: list[str]) -> list[Fact]:
        async with self._chapter_lock(chapter_id):
            return await self.store.add_many(chapter_id, facts)

    async def add_fact(self, chapter_id: str, fact_text: str) -> Fact:
        async with self._chapter_lock(chapter_id):
            return await self.store.add_one(chapter_id, fact_text)

    async def update_fact(self, chapter_id: str, fact_id: int, new_text: str) -> Fact:
        async with self._chapter_lock(chapter_id):
            return await self.store.update(fact_id, chapter_id, new_text)

    async def update_facts(
        self, chapter_id: str, facts: Iterable[tuple[int, str]]
    ) -> list[Fact]:
        async with self._chapter_lock(chapter_id):
            return await self.store.update_many(chapter_id, facts)

    async def delete_fact(self, chapter_id: str, fact_id: int) -> None:
        async with self._chapter_lock(chapter_id):
            await self.store.delete(fact_id, chapter_id)

    async def delete_facts(self, chapter_id: str, fact_ids: Iterable[int]) -> None:
        async with self._chapter_lock(chapter_id):
            await self.store.delete_many(chapter_id, fact_ids)

    async def delete_all_facts(self, chapter_id: str) -> int:
        async with self._chapter_lock(chapter_id):
            return await self.store.delete_all(chapter_id)

    async def get_facts(
        self, chapter_id: str, texts: Iterable[str] | None = None
    ) -> list[FactWithEmbedding]:
        return await self.store.list(chapter_id, texts)

    async def update_page_numbers(
        self, chapter_id: str, page_mapping: dict[str, int | None]
    ) -> int:
        async with self._chapter_lock(chapter_id):
            return await self.store.update_page_numbers(chapter_id, page_mapping)

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def upsert_facts(
        self,
        chapter_id: str,
        facts: list[str],
        with_delete: bool = True,
        reembed_unchanged: bool = True,
    ) -> list[Fact]:
        """
        Converge a chapter's stored facts to ``facts``.

        - texts with no stored fact are inserted
        - stored facts whose text is still wanted are kept in place; with
          ``reembed_unchanged`` they are re-run through ``update`` (a cache
          hit, so no service call) which refreshes their embedding binding
        - stored facts whose text is no longer wanted are deleted when
          ``with_delete`` is set, kept otherwise

        Texts are compared after stripping surrounding whitespace, the form
        every store write persists, so repeated runs with the same input
        keep the same fact ids.

        An empty ``facts`` list is a no-op; use ``delete_all_facts`` to
        clear a chapter.

        Returns:
            Newly inserted facts followed by the kept facts
        """
        if not facts:
            return []

        log = MemoryLoggerAdapter(logger, {"chapter_id": chapter_id})

        async with self._chapter_lock(chapter_id):
            existing = await self.store.list(chapter_id)
            existing_texts = {item.text for item in existing}
            wanted = list(dict.fromkeys(text.strip() for text in facts))
            desired = set(wanted)

            new_texts = [text for text in wanted if text not in existing_texts]
            retained = [item for item in existing if item.text in desired]
            stale = [item for item in existing if item.text not in desired]

            added = await self.store.add_many(chapter_id, new_texts)

            if reembed_unchanged:
                kept = await self.store.update_many(
                    chapter_id, [(item.id, item.text) for item in retained]
                )
            else:
                kept = [item.fact for item in retained]

            if with_delete:
                await self.store.delete_many(chapter_id, [item.id for item in stale])

            log.info(
                f"Reconciled chapter facts: {len(added)} added, {len(kept)} kept, "
                f"{len(stale) if with_delete else 0} deleted",
                extra={"added": len(added), "kept": len(kept), "stale": len(stale)},
            )
            return [*added, *kept]

    # =========================================================================
    # Search and dedup
    # =========================================================================

    async def search_facts(
        self,
        search_topic: str | None,
        similarity: float | None = None,
        limit: int | None = None,
        cursor: SearchCursor | None = None,
        chapter_id: str | None = None,
        book_id: str | None = None,
    ) -> SearchResultPage:
        """
        Search facts by semantic similarity to a free-text topic.

        Never raises for upstream failures: a failed embedding or query
        returns an empty page with ``error`` set.

        Raises:
            ValueError: If limit < 1
        """
        min_similarity = self.config.search_similarity if similarity is None else similarity
        limit = self.config.search_limit if limit is None else limit
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")

        if not search_topic:
            return SearchResultPage()

        try:
            query = await self.cache.resolve(search_topic, _QUERY_TAGS)
        except Exception as e:
            logger.error(f"Failed to embed search topic {search_topic[:50]!r}: {e}")
            return SearchResultPage(error=str(e) or type(e).__name__)

        return await self.engine.search(
            query.vector,
            min_similarity=min_similarity,
            limit=limit,
            cursor=cursor,
            chapter_id=chapter_id,
            book_id=book_id,
        )

    async def search_facts_by_chapter(
        self,
        chapter_id: str,
        search_topic: str | None,
        similarity: float | None = None,
        limit: int | None = None,
        cursor: SearchCursor | None = None,
    ) -> SearchResultPage:
        return await self.search_facts(
            search_topic,
            similarity=similarity,
            limit=limit,
            cursor=cursor,
            chapter_id=chapter_id,
        )

    async def find_similar_facts(
        self,
        fact_text: str,
        min_similarity: float | None = None,
        limit: int | None = None,
    ) -> SearchResultPage:
        """Facts across all chapters at least ``min_similarity`` (default 0.9) similar."""
        return await self.search_facts(
            fact_text,
            similarity=self.config.similar_threshold if min_similarity is None else min_similarity,
            limit=self.config.similar_limit if limit is None else limit,
        )

    async def fact_exists(self, fact_text: str, min_similarity: float | None = None) -> bool:
        """
        Whether any stored fact is at least ``min_similarity`` (default 0.95) similar.

        Raises:
            SearchFailedError: If the search failed, since an empty failed
                page says nothing about duplicates
        """
        threshold = self.config.exists_threshold if min_similarity is None else min_similarity
        page = await self.find_similar_facts(fact_text, min_similarity=threshold, limit=1)
        if page.failed:
            raise SearchFailedError(f"Duplicate check failed: {page.error}", query=fact_text)
        return len(page.facts) > 0

    async def add_fact_if_new(
        self,
        chapter_id: str,
        fact_text: str,
        min_similarity: float | None = None,
    ) -> Fact | None:
        """
        Add a fact unless a near-duplicate exists anywhere.

        The duplicate check uses ``min_similarity`` (default 0.9), not the
        stricter ``fact_exists`` default. Check and insert run under one lock
        shared by all ``add_fact_if_new`` calls, so concurrent calls with the
        same text add it once. Other writers (``add_facts``, ``upsert_facts``)
        do not take that lock.

        Returns:
            The created fact, or None if it was suppressed as a duplicate
        """
        threshold = self.config.similar_threshold if min_similarity is None else min_similarity
        async with self._dedup_lock, self._chapter_lock(chapter_id):
            if await self.fact_exists(fact_text, min_similarity=threshold):
                logger.debug(f"Suppressed near-duplicate fact: {fact_text[:50]!r}")
                return None
            return await self.store.add_one(chapter_id, fact_text)

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def prune_embeddings(self) -> int:
        """Drop cached embeddings no fact references."""
        return await self.cache.prune_orphans()

    async def stats(self) -> dict[str, Any]:
        return {"cache": await self.cache.stats()}
