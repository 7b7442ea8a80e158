"""
Chapter-scoped fact persistence bound to the embedding cache.

Every write resolves the embedding first and only then touches the fact
row, so a stored fact always references an existing cached vector.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from .backends.base import Fact, FactStorageBackend, FactWithEmbedding, FeatureTag
from .embeddings.cache import EmbeddingCache
from .exceptions import FactNotFoundError

logger = logging.getLogger(__name__)

_FACT_TAGS = frozenset({FeatureTag.FACT})


class FactStore:
    """CRUD for facts, each bound to exactly one cached embedding."""

    def __init__(self, backend: FactStorageBackend, cache: EmbeddingCache):
        self.backend = backend
        self.cache = cache

    async def add_many(self, chapter_id: str, texts: list[str]) -> list[Fact]:
        """
        Add one fact per text to a chapter, in input order.

        Surrounding whitespace is stripped from each text, as in ``add_one``
        and ``update``, so every write path stores the same form.

        Embeddings for all texts are resolved before any fact row is
        written. Not atomic across the batch: embeddings cached before a
        failure stay cached.

        Raises:
            ChapterNotFoundError: If the chapter does not exist
        """
        if not texts:
            return []

        texts = [text.strip() for text in texts]
        embeddings = await self.cache.resolve_many(texts, _FACT_TAGS)
        rows = [(text, embeddings[text].id) for text in texts]
        facts = await self.backend.insert_facts(chapter_id, rows)

        logger.info(f"Added {len(facts)} facts to chapter {chapter_id}")
        return facts

    async def add_one(self, chapter_id: str, text: str) -> Fact:
        """Add a single fact; surrounding whitespace is stripped first."""
        text = text.strip()
        embedding = await self.cache.resolve(text, _FACT_TAGS)
        facts = await self.backend.insert_facts(chapter_id, [(text, embedding.id)])
        return facts[0]

    async def update(self, fact_id: int, chapter_id: str, new_text: str) -> Fact:
        """
        Replace a fact's text and rebind it to the new text's embedding.

        The fact keeps its id.

        Raises:
            FactNotFoundError: If the fact does not exist in the chapter
        """
        new_text = new_text.strip()
        embedding = await self.cache.resolve(new_text, _FACT_TAGS)
        fact = await self.backend.update_fact(fact_id, chapter_id, new_text, embedding.id)
        if fact is None:
            raise FactNotFoundError(fact_id, chapter_id)
        return fact

    async def update_many(
        self, chapter_id: str, facts: Iterable[tuple[int, str]]
    ) -> list[Fact]:
        """Update (fact_id, text) pairs one after another."""
        return [await self.update(fact_id, chapter_id, text) for fact_id, text in facts]

    async def delete(self, fact_id: int, chapter_id: str) -> None:
        """
        Delete one fact.

        Raises:
            FactNotFoundError: If the fact does not exist in the chapter
        """
        if not await self.backend.delete_fact(fact_id, chapter_id):
            raise FactNotFoundError(fact_id, chapter_id)

    async def delete_many(self, chapter_id: str, fact_ids: Iterable[int]) -> None:
        for fact_id in fact_ids:
            await self.delete(fact_id, chapter_id)

    async def delete_all(self, chapter_id: str) -> int:
        """Delete every fact of a chapter. Returns number deleted."""
        deleted = await self.backend.delete_chapter_facts(chapter_id)
        logger.info(f"Deleted {deleted} facts from chapter {chapter_id}")
        return deleted

    async def list(
        self, chapter_id: str, texts: Iterable[str] | None = None
    ) -> list[FactWithEmbedding]:
        """Facts of a chapter with embeddings and context, optionally only these exact texts."""
        return await self.backend.list_facts(chapter_id, texts)

    async def get(self, fact_id: int) -> FactWithEmbedding | None:
        return await self.backend.get_fact(fact_id)

    async def update_page_numbers(
        self, chapter_id: str, page_mapping: dict[str, int | None]
    ) -> int:
        """
        Apply a fact-text to page-number mapping to a chapter's facts.

        Mapping keys are stripped like stored texts. Facts whose text is
        missing from the mapping are left unchanged.

        Returns:
            Number of facts updated
        """
        pages = {text.strip(): page for text, page in page_mapping.items()}
        updated = 0
        for item in await self.backend.list_facts(chapter_id):
            if item.text not in pages:
                logger.warning(f"No page number mapping found for fact: {item.text[:50]!r}")
                continue
            if await self.backend.set_fact_page_number(item.id, pages[item.text]):
                updated += 1

        logger.info(f"Updated page numbers for {updated} facts in chapter {chapter_id}")
        return updated
