"""
Persistent, content-addressed embedding cache.

Maps an exact text to the vector previously computed for it so the
embedding service is only called for texts never seen before. Keys are
the caller's text as-is: no case folding, no whitespace normalization.

Rows are never evicted automatically. ``prune_orphans()`` removes rows no
fact references any more when an operator wants to reclaim space.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from ..backends.base import CachedEmbedding, FactStorageBackend, FeatureTag
from ..exceptions import EmbeddingError
from .base import EmbeddingProvider
from .resilience import EMBED_BATCH_SIZE, RetryConfig, retry_with_backoff
from .tokens import clip_for_embedding

logger = logging.getLogger(__name__)

DEFAULT_FEATURE_TAGS = frozenset({FeatureTag.FACT})


class EmbeddingCache:
    """
    Embedding cache backed by a storage backend, fronting an embedding provider.

    Features:
    - Exact-text keying, one stored row per distinct text
    - Atomic get-or-create, safe against concurrent misses on the same text
    - Batched, retried provider calls for cache misses
    - Hit/miss counters for monitoring
    """

    def __init__(
        self,
        backend: FactStorageBackend,
        provider: EmbeddingProvider,
        retry_config: RetryConfig | None = None,
        batch_size: int = EMBED_BATCH_SIZE,
    ):
        """
        Initialize embedding cache.

        Args:
            backend: Storage holding the cached_embeddings rows
            provider: Embedding service used on cache misses
            retry_config: Retry policy for provider calls
            batch_size: Max texts per embed_batch request
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")

        self.backend = backend
        self.provider = provider
        self.retry_config = retry_config or RetryConfig()
        self.batch_size = batch_size
        self._hits = 0
        self._misses = 0

    # =========================================================================
    # Raw cache access
    # =========================================================================

    async def lookup_one(self, text: str) -> CachedEmbedding | None:
        """Exact-match lookup. Returns None on a miss."""
        return await self.backend.get_cached_embedding(text)

    async def lookup_many(self, texts: Iterable[str]) -> list[CachedEmbedding]:
        """
        Exact-match lookup of many texts.

        Only the found rows are returned, in no particular order; callers
        find the misses by comparing ``.text`` against their input.
        """
        texts = list(texts)
        if not texts:
            return []
        return await self.backend.get_cached_embeddings(texts)

    async def insert(
        self,
        text: str,
        vector: list[float],
        feature_tags: Iterable[FeatureTag] = DEFAULT_FEATURE_TAGS,
    ) -> CachedEmbedding:
        """
        Insert a new row.

        Raises:
            DuplicateEmbeddingError: If the text is already cached
        """
        return await self.backend.insert_cached_embedding(
            text, vector, feature_tags, model=self.provider.model_name
        )

    async def get_or_create(
        self,
        text: str,
        vector: list[float],
        feature_tags: Iterable[FeatureTag] = DEFAULT_FEATURE_TAGS,
    ) -> CachedEmbedding:
        """Insert unless the text is cached already; return the stored row either way."""
        return await self.backend.get_or_create_cached_embedding(
            text, vector, feature_tags, model=self.provider.model_name
        )

    # =========================================================================
    # Resolution (lookup, then compute on miss)
    # =========================================================================

    async def resolve(
        self,
        text: str,
        feature_tags: Iterable[FeatureTag] = DEFAULT_FEATURE_TAGS,
    ) -> CachedEmbedding:
        """
        Return the cached embedding for ``text``, computing it on a miss.

        Raises:
            Exception: Provider failures after retries, storage failures
        """
        tags = frozenset(feature_tags)
        cached = await self.lookup_one(text)
        if cached is not None:
            self._hits += 1
            logger.debug(f"Cache hit for text (len={len(text)})")
            if not tags <= cached.feature_tags:
                cached = await self.get_or_create(text, cached.vector, tags)
            return cached

        self._misses += 1
        vector = await retry_with_backoff(
            self.provider.embed_text,
            clip_for_embedding(text, self.provider.max_input_tokens),
            config=self.retry_config,
            context_msg=f"embed_text len={len(text)}",
        )
        return await self.get_or_create(text, vector, tags)

    async def resolve_many(
        self,
        texts: Iterable[str],
        feature_tags: Iterable[FeatureTag] = DEFAULT_FEATURE_TAGS,
    ) -> dict[str, CachedEmbedding]:
        """
        Resolve many texts at once.

        Looks all texts up in one query, then embeds the misses in batches.
        Not atomic: if a later batch fails, rows stored for earlier batches
        stay cached and the error propagates.

        Returns:
            Mapping from each distinct input text to its cached embedding
        """
        tags = frozenset(feature_tags)
        unique_texts = list(dict.fromkeys(texts))
        if not unique_texts:
            return {}

        resolved: dict[str, CachedEmbedding] = {}
        for cached in await self.lookup_many(unique_texts):
            if not tags <= cached.feature_tags:
                cached = await self.get_or_create(cached.text, cached.vector, tags)
            resolved[cached.text] = cached

        misses = [text for text in unique_texts if text not in resolved]
        self._hits += len(resolved)
        self._misses += len(misses)

        total_batches = (len(misses) + self.batch_size - 1) // self.batch_size
        for batch_start in range(0, len(misses), self.batch_size):
            batch = misses[batch_start : batch_start + self.batch_size]
            batch_num = batch_start // self.batch_size + 1

            vectors = await retry_with_backoff(
                self.provider.embed_batch,
                [clip_for_embedding(text, self.provider.max_input_tokens) for text in batch],
                config=self.retry_config,
                context_msg=f"batch {batch_num}/{total_batches} ({len(batch)} texts)",
            )
            if len(vectors) != len(batch):
                raise EmbeddingError(
                    f"Embedding service returned {len(vectors)} vectors for {len(batch)} texts"
                )

            for text, vector in zip(batch, vectors, strict=True):
                resolved[text] = await self.get_or_create(text, vector, tags)

        if misses:
            logger.info(
                f"Generated {len(misses)} embeddings, "
                f"{len(unique_texts) - len(misses)} from cache"
            )
        return resolved

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def prune_orphans(self) -> int:
        """Delete cached rows that no fact references. Returns number deleted."""
        deleted = await self.backend.delete_orphan_embeddings()
        if deleted:
            logger.info(f"Pruned {deleted} orphaned cached embeddings")
        return deleted

    async def stats(self) -> dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Dict with stored row count and hit/miss counters since startup
        """
        lookups = self._hits + self._misses
        return {
            "size": await self.backend.count_cached_embeddings(),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / lookups if lookups else 0.0,
        }
