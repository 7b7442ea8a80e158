"""
Record types and the abstract storage backend.

Every backend stores four kinds of rows: books, chapters, cached
embeddings (keyed by exact text) and facts (owned by a chapter and bound
to one cached embedding).
"""

from __future__ import annotations

import base64
import binascii
import json
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum


class FeatureTag(Enum):
    """What a cached vector was computed for."""

    FACT = "fact"
    SEARCH_QUERY = "search_query"


@dataclass
class CachedEmbedding:
    """A previously computed vector, keyed by its exact source text."""

    id: str
    text: str
    vector: list[float]
    feature_tags: frozenset[FeatureTag] = field(default_factory=frozenset)
    model: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class BookRef:
    id: str
    title: str
    author: str | None = None


@dataclass
class ChapterContext:
    """A chapter together with the book it belongs to."""

    id: str
    title: str
    chapter_number: int | None
    book: BookRef


@dataclass
class Fact:
    """An atomic statement extracted from one chapter."""

    id: int
    text: str
    chapter_id: str
    embedding_id: str
    page_number: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class FactWithEmbedding:
    """A fact joined with its cached embedding and chapter/book context."""

    fact: Fact
    embedding: CachedEmbedding
    chapter: ChapterContext

    @property
    def id(self) -> int:
        return self.fact.id

    @property
    def text(self) -> str:
        return self.fact.text

    @property
    def chapter_id(self) -> str:
        return self.fact.chapter_id

    @property
    def page_number(self) -> int | None:
        return self.fact.page_number


@dataclass
class SearchCandidate:
    """Minimal projection of a fact needed to rank it."""

    fact_id: int
    text: str
    vector: list[float]
    chapter: ChapterContext
    page_number: int | None = None


@dataclass
class FactSearchResult:
    """A ranked fact with its similarity to the query."""

    id: int
    text: str
    similarity: float
    chapter: ChapterContext
    page_number: int | None = None


@dataclass(frozen=True)
class SearchCursor:
    """
    Keyset position: the id and similarity of the last fact already returned.

    ``encode()`` turns the cursor into an opaque url-safe token that
    presentation layers can hand back unchanged.
    """

    last_id: int
    last_similarity: float

    def encode(self) -> str:
        payload = json.dumps({"id": self.last_id, "sim": self.last_similarity})
        return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")

    @classmethod
    def decode(cls, token: str) -> SearchCursor:
        """Parse a token produced by ``encode()``. Raises ValueError if malformed."""
        try:
            payload = json.loads(base64.urlsafe_b64decode(token.encode("ascii")))
            return cls(last_id=int(payload["id"]), last_similarity=float(payload["sim"]))
        except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError):
            raise ValueError(f"Malformed search cursor: {token!r}") from None


@dataclass
class SearchResultPage:
    """
    One page of ranked facts.

    ``next_cursor`` is set only when more results exist. ``error`` is set
    when the search itself failed; the page is then empty, which keeps the
    read path soft while letting callers tell a failure from "no matches".
    """

    facts: list[FactSearchResult] = field(default_factory=list)
    next_cursor: SearchCursor | None = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None


class FactStorageBackend(ABC):
    """
    Abstract base for fact storage backends.

    Implementations must:
    - enforce one cached embedding per distinct text
    - resolve a fact's embedding reference before writing the fact
    - scope every fact write to its owning chapter
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the storage backend (connections, schema, indexes)."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close connections and cleanup resources."""
        pass

    @property
    def vector_dimensions(self) -> int | None:
        """Vector width every stored embedding must have, or None if unchecked."""
        return None

    # =========================================================================
    # Books and chapters
    # =========================================================================

    @abstractmethod
    async def upsert_book(self, title: str, author: str | None = None) -> BookRef:
        """Find a book by title and author, creating it if missing."""
        pass

    @abstractmethod
    async def upsert_chapter(
        self, book_id: str, title: str, chapter_number: int | None = None
    ) -> ChapterContext:
        """Find a chapter of a book by title and number, creating it if missing."""
        pass

    @abstractmethod
    async def get_chapter(self, chapter_id: str) -> ChapterContext | None:
        pass

    # =========================================================================
    # Embedding cache
    # =========================================================================

    @abstractmethod
    async def get_cached_embedding(self, text: str) -> CachedEmbedding | None:
        """Exact-text lookup."""
        pass

    @abstractmethod
    async def get_cached_embeddings(self, texts: Iterable[str]) -> list[CachedEmbedding]:
        """Exact-text lookup of many texts. Returns found rows in no particular order."""
        pass

    @abstractmethod
    async def insert_cached_embedding(
        self,
        text: str,
        vector: list[float],
        feature_tags: Iterable[FeatureTag],
        model: str | None = None,
    ) -> CachedEmbedding:
        """
        Insert a new cache row.

        Raises:
            DuplicateEmbeddingError: If the text is already cached
        """
        pass

    @abstractmethod
    async def get_or_create_cached_embedding(
        self,
        text: str,
        vector: list[float],
        feature_tags: Iterable[FeatureTag],
        model: str | None = None,
    ) -> CachedEmbedding:
        """Atomically insert a cache row unless one exists; return the stored row."""
        pass

    @abstractmethod
    async def count_cached_embeddings(self) -> int:
        pass

    @abstractmethod
    async def delete_orphan_embeddings(self) -> int:
        """Delete cache rows no fact references. Returns number deleted."""
        pass

    # =========================================================================
    # Facts
    # =========================================================================

    @abstractmethod
    async def insert_facts(self, chapter_id: str, rows: list[tuple[str, str]]) -> list[Fact]:
        """
        Insert facts for a chapter.

        Args:
            chapter_id: Owning chapter
            rows: (text, embedding_id) pairs, inserted in order

        Raises:
            ChapterNotFoundError: If the chapter does not exist
        """
        pass

    @abstractmethod
    async def update_fact(
        self, fact_id: int, chapter_id: str, text: str, embedding_id: str
    ) -> Fact | None:
        """Replace text and embedding reference. Returns None if no such fact."""
        pass

    @abstractmethod
    async def delete_fact(self, fact_id: int, chapter_id: str) -> bool:
        pass

    @abstractmethod
    async def delete_chapter_facts(self, chapter_id: str) -> int:
        pass

    @abstractmethod
    async def list_facts(
        self, chapter_id: str, texts: Iterable[str] | None = None
    ) -> list[FactWithEmbedding]:
        """Facts of a chapter ordered by id, optionally limited to exact texts."""
        pass

    @abstractmethod
    async def get_fact(self, fact_id: int) -> FactWithEmbedding | None:
        pass

    @abstractmethod
    async def set_fact_page_number(self, fact_id: int, page_number: int | None) -> bool:
        pass

    @abstractmethod
    async def get_search_candidates(
        self,
        chapter_id: str | None = None,
        book_id: str | None = None,
    ) -> list[SearchCandidate]:
        """All facts with vectors and context, optionally scoped to a chapter or book."""
        pass
