"""
Tests for the similarity search engine.

Facts get pinned vectors so every similarity to the query is known.
"""

from unittest.mock import AsyncMock

import pytest

from fact_memory.search import SimilaritySearchEngine

from conftest import QUERY_VECTOR, TEST_DIMENSIONS, unit_at

QUERY = QUERY_VECTOR + [0.0] * (TEST_DIMENSIONS - len(QUERY_VECTOR))


@pytest.fixture
def engine(backend):
    return SimilaritySearchEngine(backend)


@pytest.fixture
async def seeded(memory, provider, chapter, other_chapter):
    """Two chapters with facts at known similarities to QUERY."""
    layout = {
        chapter.id: {"whale": 0.95, "ship": 0.6, "sea": 0.6, "inn": 0.15},
        other_chapter.id: {"harpoon": 0.8, "bed": 0.25},
    }
    for chapter_id, facts in layout.items():
        for text, similarity in facts.items():
            provider.register(text, unit_at(similarity))
        await memory.add_facts(chapter_id, list(facts))
    return layout


class TestSearch:
    """Tests for ranking through the backend."""

    @pytest.mark.asyncio
    async def test_default_threshold_filters(self, engine, seeded):
        page = await engine.search(QUERY)

        assert [f.text for f in page.facts] == ["whale", "harpoon", "sea", "ship", "bed"]
        assert not page.failed
        assert not page.has_more

    @pytest.mark.asyncio
    async def test_tie_prefers_newer_fact(self, engine, seeded):
        """ship and sea tie; sea was inserted later and has the larger id."""
        page = await engine.search(QUERY, min_similarity=0.5)

        ship, sea = (next(f for f in page.facts if f.text == t) for t in ("ship", "sea"))
        assert sea.id > ship.id
        assert page.facts.index(sea) < page.facts.index(ship)

    @pytest.mark.asyncio
    async def test_chapter_scope(self, engine, seeded, other_chapter):
        page = await engine.search(QUERY, min_similarity=0.0, chapter_id=other_chapter.id)

        assert [f.text for f in page.facts] == ["harpoon", "bed"]
        assert all(f.chapter.id == other_chapter.id for f in page.facts)

    @pytest.mark.asyncio
    async def test_book_scope(self, engine, seeded, chapter):
        page = await engine.search(QUERY, min_similarity=0.0, book_id=chapter.book.id)
        assert len(page.facts) == 6

        page = await engine.search(QUERY, min_similarity=0.0, book_id="another-book")
        assert page.facts == []
        assert not page.failed

    @pytest.mark.asyncio
    async def test_paging_through_backend(self, engine, seeded):
        ids = []
        cursor = None
        while True:
            page = await engine.search(QUERY, min_similarity=0.0, limit=2, cursor=cursor)
            ids.extend(f.id for f in page.facts)
            cursor = page.next_cursor
            if cursor is None:
                break

        everything = await engine.search(QUERY, min_similarity=0.0, limit=100)
        assert ids == [f.id for f in everything.facts]

    @pytest.mark.asyncio
    async def test_results_carry_page_numbers(self, engine, seeded, memory, chapter):
        await memory.update_page_numbers(chapter.id, {"whale": 7})

        page = await engine.search(QUERY, min_similarity=0.9)

        assert page.facts[0].page_number == 7


class TestFailures:
    """Tests for soft failure."""

    @pytest.mark.asyncio
    async def test_invalid_limit_raises_before_io(self, engine, backend):
        backend.get_search_candidates = AsyncMock()

        with pytest.raises(ValueError):
            await engine.search(QUERY, limit=0)

        backend.get_search_candidates.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_backend_error_returns_failed_page(self, engine, backend):
        backend.get_search_candidates = AsyncMock(side_effect=RuntimeError("database is locked"))

        page = await engine.search(QUERY)

        assert page.failed
        assert page.error == "database is locked"
        assert page.facts == []
        assert page.next_cursor is None

    @pytest.mark.asyncio
    async def test_dimension_mismatch_returns_failed_page(self, engine, seeded):
        page = await engine.search([1.0, 0.0, 0.0])
        assert page.failed

    @pytest.mark.asyncio
    async def test_empty_store_is_not_a_failure(self, engine):
        page = await engine.search(QUERY)
        assert page.facts == []
        assert not page.failed
