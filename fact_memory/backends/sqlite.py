"""
SQLite storage backend.

Single-file (or in-memory) storage for books, chapters, the embedding cache
and facts. Vectors are stored as JSON text and ranked in Python with numpy
by the search engine; the fact set of a book is small enough that a
brute-force scan is cheaper than maintaining an ANN index.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import uuid
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from ..exceptions import (
    ChapterNotFoundError,
    DuplicateEmbeddingError,
    EmbeddingError,
    StorageConnectionError,
    StorageIOError,
)
from .base import (
    BookRef,
    CachedEmbedding,
    ChapterContext,
    Fact,
    FactStorageBackend,
    FactWithEmbedding,
    FeatureTag,
    SearchCandidate,
)

logger = logging.getLogger(__name__)

# Stay well below SQLITE_MAX_VARIABLE_NUMBER on older builds
_MAX_IN_PARAMS = 500


# =============================================================================
# Column Definitions
# =============================================================================

FACT_COLUMNS = (
    "f.id",
    "f.text",
    "f.chapter_id",
    "f.embedding_id",
    "f.page_number",
    "f.created_at",
    "f.updated_at",
)

EMBEDDING_COLUMNS = (
    "e.id",
    "e.text",
    "e.vector_json",
    "e.feature_tags",
    "e.model",
    "e.created_at",
    "e.updated_at",
)

CHAPTER_COLUMNS = (
    "c.id",
    "c.title",
    "c.chapter_number",
    "b.id",
    "b.title",
    "b.author",
)

_FACT_JOINS = """
    FROM facts f
    JOIN cached_embeddings e ON e.id = f.embedding_id
    JOIN chapters c ON c.id = f.chapter_id
    JOIN books b ON b.id = c.book_id
"""

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS books (
    id TEXT NOT NULL PRIMARY KEY,
    title TEXT NOT NULL,
    author TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chapters (
    id TEXT NOT NULL PRIMARY KEY,
    book_id TEXT NOT NULL REFERENCES books(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    chapter_number INTEGER,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS cached_embeddings (
    id TEXT NOT NULL PRIMARY KEY,
    text TEXT NOT NULL UNIQUE,
    vector_json TEXT NOT NULL,
    feature_tags TEXT NOT NULL DEFAULT '[]',
    model TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS facts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    chapter_id TEXT NOT NULL REFERENCES chapters(id) ON DELETE CASCADE,
    text TEXT NOT NULL,
    embedding_id TEXT NOT NULL REFERENCES cached_embeddings(id),
    page_number INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_chapters_book ON chapters (book_id);
CREATE INDEX IF NOT EXISTS idx_facts_chapter ON facts (chapter_id, text);
CREATE INDEX IF NOT EXISTS idx_facts_embedding ON facts (embedding_id);
"""


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _encode_tags(tags: Iterable[FeatureTag]) -> str:
    return json.dumps(sorted(tag.value for tag in tags))


def _decode_tags(raw: str | None) -> frozenset[FeatureTag]:
    if not raw:
        return frozenset()
    return frozenset(FeatureTag(value) for value in json.loads(raw))


def _chunked(items: list[Any], size: int) -> Iterable[list[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


@dataclass
class SQLiteConfig:
    """Configuration for SQLite storage."""

    db_path: str | Path = ":memory:"
    vector_dimensions: int | None = 1536  # text-embedding-3-small; None disables the check

    @classmethod
    def from_env(cls) -> SQLiteConfig:
        """Create config from environment variables."""
        import os

        db_path = os.environ.get("FACT_MEMORY_SQLITE_PATH", ":memory:")
        dimensions_str = os.environ.get("FACT_MEMORY_VECTOR_DIMENSIONS", "1536")

        return cls(
            db_path=db_path,
            vector_dimensions=int(dimensions_str) if dimensions_str else None,
        )


class SQLiteBackend(FactStorageBackend):
    """
    SQLite fact storage.

    Features:
    - UNIQUE(text) on the embedding cache with atomic insert-if-absent
    - Foreign keys from facts to chapters and cached embeddings
    - AUTOINCREMENT fact ids, so ids only ever grow

    All coroutines share one connection, so writes are serialized through
    ``_write_lock``: a rollback in one operation must never discard rows
    another operation has not committed yet.
    """

    def __init__(self, config: SQLiteConfig):
        self.config = config
        self.conn: aiosqlite.Connection | None = None
        self._initialized = False
        self._write_lock = asyncio.Lock()

    @classmethod
    async def create(cls, config: SQLiteConfig | None = None) -> SQLiteBackend:
        """Create and initialize SQLite backend."""
        if config is None:
            config = SQLiteConfig.from_env()

        backend = cls(config)
        await backend.initialize()
        return backend

    async def initialize(self) -> None:
        """Open the connection and create the schema."""
        if self._initialized:
            return

        try:
            self.conn = await aiosqlite.connect(str(self.config.db_path))
            await self.conn.execute("PRAGMA foreign_keys = ON")
            await self.conn.executescript(_SCHEMA_SQL)
            await self.conn.commit()
            self._initialized = True
            logger.info(f"SQLite backend initialized: {self.config.db_path}")
        except Exception as e:
            raise StorageConnectionError(str(self.config.db_path), e) from e

    async def close(self) -> None:
        if self.conn:
            await self.conn.close()
            self.conn = None
        self._initialized = False

    @property
    def vector_dimensions(self) -> int | None:
        return self.config.vector_dimensions

    def _require_conn(self, operation: str) -> aiosqlite.Connection:
        if self.conn is None:
            raise StorageIOError(operation, cause=RuntimeError("Not initialized"))
        return self.conn

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[aiosqlite.Connection]:
        """Run a write under the write lock; commit on success, roll back on error."""
        conn = self._require_conn(operation)
        async with self._write_lock:
            try:
                yield conn
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise

    def _check_dimensions(self, text: str, vector: list[float]) -> None:
        expected = self.vector_dimensions
        if expected is not None and len(vector) != expected:
            raise EmbeddingError(
                f"Embedding for {text[:50]!r} has {len(vector)} dimensions, expected {expected}"
            )

    # =========================================================================
    # Books and chapters
    # =========================================================================

    async def upsert_book(self, title: str, author: str | None = None) -> BookRef:
        async with self._transaction("upsert_book") as conn:
            async with conn.execute(
                "SELECT id, title, author FROM books WHERE title = ? AND author IS ?",
                (title, author),
            ) as cursor:
                row = await cursor.fetchone()
            if row is not None:
                return BookRef(id=row[0], title=row[1], author=row[2])

            book = BookRef(id=uuid.uuid4().hex, title=title, author=author)
            await conn.execute(
                "INSERT INTO books (id, title, author, created_at) VALUES (?, ?, ?, ?)",
                (book.id, title, author, _now()),
            )
            return book

    async def upsert_chapter(
        self, book_id: str, title: str, chapter_number: int | None = None
    ) -> ChapterContext:
        async with self._transaction("upsert_chapter") as conn:
            async with conn.execute(
                "SELECT id FROM chapters WHERE book_id = ? AND title = ? AND chapter_number IS ?",
                (book_id, title, chapter_number),
            ) as cursor:
                row = await cursor.fetchone()

            if row is None:
                chapter_id = uuid.uuid4().hex
                await conn.execute(
                    """
                    INSERT INTO chapters (id, book_id, title, chapter_number, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (chapter_id, book_id, title, chapter_number, _now()),
                )
            else:
                chapter_id = row[0]

        chapter = await self.get_chapter(chapter_id)
        if chapter is None:
            raise StorageIOError("upsert_chapter", cause=RuntimeError("chapter vanished"))
        return chapter

    async def get_chapter(self, chapter_id: str) -> ChapterContext | None:
        conn = self._require_conn("get_chapter")

        async with conn.execute(
            f"""
            SELECT {", ".join(CHAPTER_COLUMNS)}
            FROM chapters c JOIN books b ON b.id = c.book_id
            WHERE c.id = ?
            """,
            (chapter_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_chapter(row, 0) if row else None

    # =========================================================================
    # Embedding cache
    # =========================================================================

    async def get_cached_embedding(self, text: str) -> CachedEmbedding | None:
        conn = self._require_conn("get_cached_embedding")

        async with conn.execute(
            f"SELECT {', '.join(EMBEDDING_COLUMNS)} FROM cached_embeddings e WHERE e.text = ? LIMIT 1",
            (text,),
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_embedding(row, 0) if row else None

    async def get_cached_embeddings(self, texts: Iterable[str]) -> list[CachedEmbedding]:
        conn = self._require_conn("get_cached_embeddings")

        unique_texts = list(dict.fromkeys(texts))
        found: list[CachedEmbedding] = []
        for chunk in _chunked(unique_texts, _MAX_IN_PARAMS):
            placeholders = ", ".join(["?"] * len(chunk))
            async with conn.execute(
                f"""
                SELECT {", ".join(EMBEDDING_COLUMNS)}
                FROM cached_embeddings e
                WHERE e.text IN ({placeholders})
                """,
                chunk,
            ) as cursor:
                rows = await cursor.fetchall()
            found.extend(self._row_to_embedding(row, 0) for row in rows)
        return found

    async def insert_cached_embedding(
        self,
        text: str,
        vector: list[float],
        feature_tags: Iterable[FeatureTag],
        model: str | None = None,
    ) -> CachedEmbedding:
        self._check_dimensions(text, vector)

        now = _now()
        embedding = CachedEmbedding(
            id=uuid.uuid4().hex,
            text=text,
            vector=list(vector),
            feature_tags=frozenset(feature_tags),
            model=model,
            created_at=now,
            updated_at=now,
        )
        async with self._transaction("insert_cached_embedding") as conn:
            try:
                await conn.execute(
                    """
                    INSERT INTO cached_embeddings (
                        id, text, vector_json, feature_tags, model, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        embedding.id,
                        text,
                        json.dumps(embedding.vector),
                        _encode_tags(embedding.feature_tags),
                        model,
                        now,
                        now,
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateEmbeddingError(text) from e
        return embedding

    async def get_or_create_cached_embedding(
        self,
        text: str,
        vector: list[float],
        feature_tags: Iterable[FeatureTag],
        model: str | None = None,
    ) -> CachedEmbedding:
        self._check_dimensions(text, vector)

        now = _now()
        tags = frozenset(feature_tags)
        async with self._transaction("get_or_create_cached_embedding") as conn:
            await conn.execute(
                """
                INSERT INTO cached_embeddings (
                    id, text, vector_json, feature_tags, model, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (text) DO NOTHING
                """,
                (uuid.uuid4().hex, text, json.dumps(list(vector)), _encode_tags(tags), model, now, now),
            )

            async with conn.execute(
                f"SELECT {', '.join(EMBEDDING_COLUMNS)} FROM cached_embeddings e WHERE e.text = ?",
                (text,),
            ) as cursor:
                row = await cursor.fetchone()
            stored = self._row_to_embedding(row, 0)

            # A text first cached for a search may later back a fact, or vice versa
            if not tags <= stored.feature_tags:
                merged = stored.feature_tags | tags
                await conn.execute(
                    "UPDATE cached_embeddings SET feature_tags = ?, updated_at = ? WHERE id = ?",
                    (_encode_tags(merged), now, stored.id),
                )
                stored.feature_tags = merged
                stored.updated_at = now

        return stored

    async def count_cached_embeddings(self) -> int:
        conn = self._require_conn("count_cached_embeddings")
        async with conn.execute("SELECT COUNT(*) FROM cached_embeddings") as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def delete_orphan_embeddings(self) -> int:
        async with self._transaction("delete_orphan_embeddings") as conn:
            cursor = await conn.execute(
                """
                DELETE FROM cached_embeddings
                WHERE NOT EXISTS (
                    SELECT 1 FROM facts f WHERE f.embedding_id = cached_embeddings.id
                )
                """
            )
            deleted = cursor.rowcount
        return deleted

    # =========================================================================
    # Facts
    # =========================================================================

    async def insert_facts(self, chapter_id: str, rows: list[tuple[str, str]]) -> list[Fact]:
        if not rows:
            return []

        now = _now()
        created: list[Fact] = []
        async with self._transaction("insert_facts") as conn:
            async with conn.execute(
                "SELECT 1 FROM chapters WHERE id = ?", (chapter_id,)
            ) as cursor:
                if await cursor.fetchone() is None:
                    raise ChapterNotFoundError(chapter_id)

            for text, embedding_id in rows:
                cursor = await conn.execute(
                    """
                    INSERT INTO facts (chapter_id, text, embedding_id, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (chapter_id, text, embedding_id, now, now),
                )
                created.append(
                    Fact(
                        id=cursor.lastrowid,
                        text=text,
                        chapter_id=chapter_id,
                        embedding_id=embedding_id,
                        created_at=now,
                        updated_at=now,
                    )
                )
        return created

    async def update_fact(
        self, fact_id: int, chapter_id: str, text: str, embedding_id: str
    ) -> Fact | None:
        async with self._transaction("update_fact") as conn:
            cursor = await conn.execute(
                """
                UPDATE facts SET text = ?, embedding_id = ?, updated_at = ?
                WHERE id = ? AND chapter_id = ?
                RETURNING id, text, chapter_id, embedding_id, page_number, created_at, updated_at
                """,
                (text, embedding_id, _now(), fact_id, chapter_id),
            )
            row = await cursor.fetchone()
            await cursor.close()
        return self._row_to_fact(row, 0) if row else None

    async def delete_fact(self, fact_id: int, chapter_id: str) -> bool:
        async with self._transaction("delete_fact") as conn:
            cursor = await conn.execute(
                "DELETE FROM facts WHERE id = ? AND chapter_id = ?",
                (fact_id, chapter_id),
            )
            deleted = cursor.rowcount > 0
        return deleted

    async def delete_chapter_facts(self, chapter_id: str) -> int:
        async with self._transaction("delete_chapter_facts") as conn:
            cursor = await conn.execute("DELETE FROM facts WHERE chapter_id = ?", (chapter_id,))
            deleted = cursor.rowcount
        return deleted

    async def list_facts(
        self, chapter_id: str, texts: Iterable[str] | None = None
    ) -> list[FactWithEmbedding]:
        conn = self._require_conn("list_facts")

        text_filter = list(dict.fromkeys(texts)) if texts is not None else []
        columns = ", ".join(FACT_COLUMNS + EMBEDDING_COLUMNS + CHAPTER_COLUMNS)

        if not text_filter:
            async with conn.execute(
                f"SELECT {columns} {_FACT_JOINS} WHERE f.chapter_id = ? ORDER BY f.id",
                (chapter_id,),
            ) as cursor:
                rows = await cursor.fetchall()
            return [self._row_to_fact_with_embedding(row) for row in rows]

        results: list[FactWithEmbedding] = []
        for chunk in _chunked(text_filter, _MAX_IN_PARAMS):
            placeholders = ", ".join(["?"] * len(chunk))
            async with conn.execute(
                f"""
                SELECT {columns} {_FACT_JOINS}
                WHERE f.chapter_id = ? AND f.text IN ({placeholders})
                """,
                [chapter_id, *chunk],
            ) as cursor:
                rows = await cursor.fetchall()
            results.extend(self._row_to_fact_with_embedding(row) for row in rows)
        results.sort(key=lambda item: item.id)
        return results

    async def get_fact(self, fact_id: int) -> FactWithEmbedding | None:
        conn = self._require_conn("get_fact")

        columns = ", ".join(FACT_COLUMNS + EMBEDDING_COLUMNS + CHAPTER_COLUMNS)
        async with conn.execute(
            f"SELECT {columns} {_FACT_JOINS} WHERE f.id = ?",
            (fact_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_fact_with_embedding(row) if row else None

    async def set_fact_page_number(self, fact_id: int, page_number: int | None) -> bool:
        async with self._transaction("set_fact_page_number") as conn:
            cursor = await conn.execute(
                "UPDATE facts SET page_number = ?, updated_at = ? WHERE id = ?",
                (page_number, _now(), fact_id),
            )
            updated = cursor.rowcount > 0
        return updated

    async def get_search_candidates(
        self,
        chapter_id: str | None = None,
        book_id: str | None = None,
    ) -> list[SearchCandidate]:
        conn = self._require_conn("get_search_candidates")

        where_parts: list[str] = []
        params: list[Any] = []
        if chapter_id:
            where_parts.append("f.chapter_id = ?")
            params.append(chapter_id)
        if book_id:
            where_parts.append("c.book_id = ?")
            params.append(book_id)
        where_clause = f"WHERE {' AND '.join(where_parts)}" if where_parts else ""

        query = f"""
            SELECT f.id, f.text, f.page_number, e.vector_json, {", ".join(CHAPTER_COLUMNS)}
            {_FACT_JOINS}
            {where_clause}
        """
        async with conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()

        return [
            SearchCandidate(
                fact_id=row[0],
                text=row[1],
                page_number=row[2],
                vector=json.loads(row[3]),
                chapter=self._row_to_chapter(row, 4),
            )
            for row in rows
        ]

    # =========================================================================
    # Row mapping
    # =========================================================================

    @staticmethod
    def _row_to_fact(row: Any, offset: int) -> Fact:
        return Fact(
            id=row[offset],
            text=row[offset + 1],
            chapter_id=row[offset + 2],
            embedding_id=row[offset + 3],
            page_number=row[offset + 4],
            created_at=row[offset + 5],
            updated_at=row[offset + 6],
        )

    @staticmethod
    def _row_to_embedding(row: Any, offset: int) -> CachedEmbedding:
        return CachedEmbedding(
            id=row[offset],
            text=row[offset + 1],
            vector=json.loads(row[offset + 2]),
            feature_tags=_decode_tags(row[offset + 3]),
            model=row[offset + 4],
            created_at=row[offset + 5],
            updated_at=row[offset + 6],
        )

    @staticmethod
    def _row_to_chapter(row: Any, offset: int) -> ChapterContext:
        return ChapterContext(
            id=row[offset],
            title=row[offset + 1],
            chapter_number=row[offset + 2],
            book=BookRef(id=row[offset + 3], title=row[offset + 4], author=row[offset + 5]),
        )

    def _row_to_fact_with_embedding(self, row: Any) -> FactWithEmbedding:
        embedding_offset = len(FACT_COLUMNS)
        chapter_offset = embedding_offset + len(EMBEDDING_COLUMNS)
        return FactWithEmbedding(
            fact=self._row_to_fact(row, 0),
            embedding=self._row_to_embedding(row, embedding_offset),
            chapter=self._row_to_chapter(row, chapter_offset),
        )
