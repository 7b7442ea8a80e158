"""
Tests for SQLite storage backend.

Uses real SQLite (in-memory) for accurate testing.
"""

import asyncio
import sqlite3

import pytest

from fact_memory.backends import FeatureTag, SQLiteBackend, SQLiteConfig
from fact_memory.exceptions import (
    ChapterNotFoundError,
    DuplicateEmbeddingError,
    EmbeddingError,
    StorageIOError,
)

from conftest import TEST_DIMENSIONS


def vec(*head: float) -> list[float]:
    return list(head) + [0.0] * (TEST_DIMENSIONS - len(head))


class TestSQLiteInitialization:
    """Tests for SQLite backend initialization."""

    @pytest.mark.asyncio
    async def test_create_with_defaults(self):
        """Backend creates with default configuration."""
        storage = await SQLiteBackend.create()
        assert storage._initialized is True
        await storage.close()

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, backend):
        """Calling initialize twice keeps the same connection."""
        conn = backend.conn
        await backend.initialize()
        assert backend.conn is conn

    @pytest.mark.asyncio
    async def test_use_after_close_raises(self):
        """Operations on a closed backend raise StorageIOError."""
        storage = await SQLiteBackend.create(SQLiteConfig(vector_dimensions=None))
        await storage.close()

        with pytest.raises(StorageIOError):
            await storage.get_cached_embedding("anything")

    @pytest.mark.asyncio
    async def test_file_database_persists(self, tmp_path):
        """Rows survive closing and reopening a file database."""
        config = SQLiteConfig(db_path=tmp_path / "facts.db", vector_dimensions=2)
        storage = await SQLiteBackend.create(config)
        await storage.insert_cached_embedding("persisted", [1.0, 0.0], [FeatureTag.FACT])
        await storage.close()

        reopened = await SQLiteBackend.create(config)
        try:
            cached = await reopened.get_cached_embedding("persisted")
            assert cached is not None
            assert cached.vector == [1.0, 0.0]
        finally:
            await reopened.close()


class TestConfig:
    """Tests for SQLiteConfig."""

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("FACT_MEMORY_SQLITE_PATH", "/tmp/facts.db")
        monkeypatch.setenv("FACT_MEMORY_VECTOR_DIMENSIONS", "3072")

        config = SQLiteConfig.from_env()

        assert config.db_path == "/tmp/facts.db"
        assert config.vector_dimensions == 3072

    def test_from_env_defaults(self, monkeypatch):
        monkeypatch.delenv("FACT_MEMORY_SQLITE_PATH", raising=False)
        monkeypatch.delenv("FACT_MEMORY_VECTOR_DIMENSIONS", raising=False)

        config = SQLiteConfig.from_env()

        assert config.db_path == ":memory:"
        assert config.vector_dimensions == 1536


class TestBooksAndChapters:
    """Tests for book and chapter upserts."""

    @pytest.mark.asyncio
    async def test_upsert_book_is_idempotent(self, backend):
        first = await backend.upsert_book("Moby-Dick", author="Herman Melville")
        second = await backend.upsert_book("Moby-Dick", author="Herman Melville")
        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_upsert_book_without_author(self, backend):
        first = await backend.upsert_book("Anonymous")
        second = await backend.upsert_book("Anonymous")
        assert first.id == second.id
        assert first.author is None

    @pytest.mark.asyncio
    async def test_upsert_chapter_returns_context(self, backend):
        book = await backend.upsert_book("Moby-Dick", author="Herman Melville")
        chapter = await backend.upsert_chapter(book.id, "Loomings", chapter_number=1)
        again = await backend.upsert_chapter(book.id, "Loomings", chapter_number=1)

        assert chapter.id == again.id
        assert chapter.title == "Loomings"
        assert chapter.chapter_number == 1
        assert chapter.book.title == "Moby-Dick"

    @pytest.mark.asyncio
    async def test_get_missing_chapter(self, backend):
        assert await backend.get_chapter("missing") is None


class TestEmbeddingCacheRows:
    """Tests for the cached_embeddings table."""

    @pytest.mark.asyncio
    async def test_insert_and_lookup(self, backend):
        stored = await backend.insert_cached_embedding(
            "Call me Ishmael.", vec(1.0), [FeatureTag.FACT], model="mock"
        )
        found = await backend.get_cached_embedding("Call me Ishmael.")

        assert found is not None
        assert found.id == stored.id
        assert found.vector == vec(1.0)
        assert found.feature_tags == frozenset({FeatureTag.FACT})
        assert found.model == "mock"

    @pytest.mark.asyncio
    async def test_lookup_is_exact(self, backend):
        """Lookups do not fold case or trim whitespace."""
        await backend.insert_cached_embedding("Foo", vec(1.0), [FeatureTag.FACT])

        assert await backend.get_cached_embedding("foo") is None
        assert await backend.get_cached_embedding("Foo ") is None

    @pytest.mark.asyncio
    async def test_insert_duplicate_raises(self, backend):
        await backend.insert_cached_embedding("dup", vec(1.0), [FeatureTag.FACT])

        with pytest.raises(DuplicateEmbeddingError):
            await backend.insert_cached_embedding("dup", vec(0.0, 1.0), [FeatureTag.FACT])

        assert await backend.count_cached_embeddings() == 1

    @pytest.mark.asyncio
    async def test_insert_wrong_dimensions_raises(self, backend):
        with pytest.raises(EmbeddingError):
            await backend.insert_cached_embedding("short", [1.0, 0.0], [FeatureTag.FACT])

    @pytest.mark.asyncio
    async def test_get_or_create_keeps_first_vector(self, backend):
        first = await backend.get_or_create_cached_embedding("text", vec(1.0), [FeatureTag.FACT])
        second = await backend.get_or_create_cached_embedding(
            "text", vec(0.0, 1.0), [FeatureTag.FACT]
        )

        assert second.id == first.id
        assert second.vector == vec(1.0)

    @pytest.mark.asyncio
    async def test_get_or_create_merges_tags(self, backend):
        await backend.get_or_create_cached_embedding("text", vec(1.0), [FeatureTag.SEARCH_QUERY])
        merged = await backend.get_or_create_cached_embedding("text", vec(1.0), [FeatureTag.FACT])

        assert merged.feature_tags == frozenset({FeatureTag.FACT, FeatureTag.SEARCH_QUERY})
        stored = await backend.get_cached_embedding("text")
        assert stored.feature_tags == merged.feature_tags

    @pytest.mark.asyncio
    async def test_concurrent_get_or_create_stores_one_row(self, backend):
        """Concurrent misses on one text never produce duplicate rows."""
        results = await asyncio.gather(
            *(
                backend.get_or_create_cached_embedding("race", vec(float(i + 1)), [FeatureTag.FACT])
                for i in range(8)
            )
        )

        assert len({row.id for row in results}) == 1
        assert await backend.count_cached_embeddings() == 1

    @pytest.mark.asyncio
    async def test_get_many_returns_found_only(self, backend):
        await backend.insert_cached_embedding("a", vec(1.0), [FeatureTag.FACT])
        await backend.insert_cached_embedding("b", vec(0.0, 1.0), [FeatureTag.FACT])

        found = await backend.get_cached_embeddings(["a", "b", "c", "a"])

        assert sorted(row.text for row in found) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_delete_orphans_keeps_referenced_rows(self, backend, chapter):
        used = await backend.insert_cached_embedding("used", vec(1.0), [FeatureTag.FACT])
        await backend.insert_cached_embedding("orphan", vec(0.0, 1.0), [FeatureTag.FACT])
        await backend.insert_facts(chapter.id, [("used", used.id)])

        deleted = await backend.delete_orphan_embeddings()

        assert deleted == 1
        assert await backend.get_cached_embedding("used") is not None
        assert await backend.get_cached_embedding("orphan") is None


class TestFacts:
    """Tests for fact rows."""

    @pytest.fixture
    async def embedding(self, backend):
        return await backend.insert_cached_embedding("Call me Ishmael.", vec(1.0), [FeatureTag.FACT])

    @pytest.mark.asyncio
    async def test_insert_facts_assigns_increasing_ids(self, backend, chapter, embedding):
        facts = await backend.insert_facts(
            chapter.id, [(embedding.text, embedding.id), (embedding.text, embedding.id)]
        )

        assert len(facts) == 2
        assert facts[0].id < facts[1].id
        assert all(fact.chapter_id == chapter.id for fact in facts)

    @pytest.mark.asyncio
    async def test_insert_facts_unknown_chapter(self, backend, embedding):
        with pytest.raises(ChapterNotFoundError):
            await backend.insert_facts("missing", [(embedding.text, embedding.id)])

    @pytest.mark.asyncio
    async def test_failed_insert_rolls_back(self, backend, chapter, embedding):
        """A bad row in a batch leaves no partial rows behind."""
        with pytest.raises(sqlite3.IntegrityError):
            await backend.insert_facts(
                chapter.id, [(embedding.text, embedding.id), ("bad", "no-such-embedding")]
            )

        assert await backend.list_facts(chapter.id) == []

    @pytest.mark.asyncio
    async def test_update_fact_is_chapter_scoped(self, backend, chapter, other_chapter, embedding):
        [fact] = await backend.insert_facts(chapter.id, [(embedding.text, embedding.id)])

        assert await backend.update_fact(fact.id, other_chapter.id, "x", embedding.id) is None

        updated = await backend.update_fact(fact.id, chapter.id, "Call me Ishmael!", embedding.id)
        assert updated is not None
        assert updated.id == fact.id
        assert updated.text == "Call me Ishmael!"

    @pytest.mark.asyncio
    async def test_delete_fact_is_chapter_scoped(self, backend, chapter, other_chapter, embedding):
        [fact] = await backend.insert_facts(chapter.id, [(embedding.text, embedding.id)])

        assert await backend.delete_fact(fact.id, other_chapter.id) is False
        assert await backend.delete_fact(fact.id, chapter.id) is True
        assert await backend.get_fact(fact.id) is None

    @pytest.mark.asyncio
    async def test_delete_chapter_facts(self, backend, chapter, other_chapter, embedding):
        rows = [(embedding.text, embedding.id)]
        await backend.insert_facts(chapter.id, rows * 3)
        await backend.insert_facts(other_chapter.id, rows)

        assert await backend.delete_chapter_facts(chapter.id) == 3
        assert len(await backend.list_facts(other_chapter.id)) == 1

    @pytest.mark.asyncio
    async def test_list_facts_with_text_filter(self, backend, chapter, embedding):
        other = await backend.insert_cached_embedding("Other", vec(0.0, 1.0), [FeatureTag.FACT])
        await backend.insert_facts(
            chapter.id, [(embedding.text, embedding.id), ("Other", other.id)]
        )

        listed = await backend.list_facts(chapter.id, texts=["Other", "Unknown"])

        assert [item.text for item in listed] == ["Other"]
        assert listed[0].embedding.id == other.id
        assert listed[0].chapter.book.title == "Moby-Dick"

    @pytest.mark.asyncio
    async def test_set_page_number(self, backend, chapter, embedding):
        [fact] = await backend.insert_facts(chapter.id, [(embedding.text, embedding.id)])

        assert await backend.set_fact_page_number(fact.id, 12) is True
        stored = await backend.get_fact(fact.id)
        assert stored.page_number == 12

        assert await backend.set_fact_page_number(999_999, 1) is False

    @pytest.mark.asyncio
    async def test_search_candidates_scoping(self, backend, chapter, embedding):
        other_book = await backend.upsert_book("Walden", author="Henry David Thoreau")
        elsewhere = await backend.upsert_chapter(other_book.id, "Economy", chapter_number=1)
        rows = [(embedding.text, embedding.id)]
        await backend.insert_facts(chapter.id, rows)
        await backend.insert_facts(elsewhere.id, rows)

        assert len(await backend.get_search_candidates()) == 2
        assert len(await backend.get_search_candidates(chapter_id=chapter.id)) == 1

        scoped = await backend.get_search_candidates(book_id=other_book.id)
        assert [c.chapter.id for c in scoped] == [elsewhere.id]
        assert scoped[0].vector == vec(1.0)
