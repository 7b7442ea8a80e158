"""
Fact Memory

Semantic memory of atomic facts extracted from book chapters.

Provides:
- Persistent, exact-text embedding cache in front of an embedding service
- Chapter-scoped fact storage (SQLite)
- Cosine similarity search with keyset pagination
- Reconciliation of a chapter's facts against a fresh extraction
- Near-duplicate suppression across all chapters

Usage:

    >>> from fact_memory import ChapterMemory, OpenAIEmbeddings, SQLiteBackend, SQLiteConfig
    >>> backend = SQLiteBackend(SQLiteConfig(db_path="facts.db"))
    >>> async with await ChapterMemory.create(backend, OpenAIEmbeddings.from_env()) as memory:
    ...     book = await backend.upsert_book("Moby-Dick", author="Herman Melville")
    ...     chapter = await backend.upsert_chapter(book.id, "Loomings", chapter_number=1)
    ...     await memory.upsert_facts(chapter.id, ["Ishmael goes to sea."])
    ...
    ...     page = await memory.search_facts("whaling voyage", limit=5)
    ...     while page.has_more:
    ...         page = await memory.search_facts("whaling voyage", limit=5, cursor=page.next_cursor)
"""

# Storage
from .backends import (
    BookRef,
    CachedEmbedding,
    ChapterContext,
    Fact,
    FactSearchResult,
    FactStorageBackend,
    FactWithEmbedding,
    FeatureTag,
    SearchCursor,
    SearchResultPage,
    SQLiteBackend,
    SQLiteConfig,
)
from .config import MemoryConfig

# Embeddings
from .embeddings import EmbeddingCache, EmbeddingProvider, RetryConfig
from .embeddings.openai import OpenAIEmbeddings

# Exceptions
from .exceptions import (
    ChapterNotFoundError,
    DuplicateEmbeddingError,
    EmbeddingError,
    FactExtractionError,
    FactMemoryError,
    FactNotFoundError,
    SearchFailedError,
    StorageConnectionError,
    StorageIOError,
)
from .ingestion import IngestResult, ingest_chapter_facts
from .memory import ChapterMemory
from .protocol import ChapterContentSource, FactExtractor, PageNumberAttributor
from .search import SimilaritySearchEngine
from .store import FactStore

__all__ = [
    # Core
    "ChapterMemory",
    "FactStore",
    "SimilaritySearchEngine",
    "MemoryConfig",
    # Records
    "BookRef",
    "CachedEmbedding",
    "ChapterContext",
    "Fact",
    "FactSearchResult",
    "FactWithEmbedding",
    "FeatureTag",
    "SearchCursor",
    "SearchResultPage",
    # Storage
    "FactStorageBackend",
    "SQLiteBackend",
    "SQLiteConfig",
    # Embeddings
    "EmbeddingCache",
    "EmbeddingProvider",
    "OpenAIEmbeddings",
    "RetryConfig",
    # Pipeline
    "ChapterContentSource",
    "FactExtractor",
    "PageNumberAttributor",
    "IngestResult",
    "ingest_chapter_facts",
    # Exceptions
    "FactMemoryError",
    "FactNotFoundError",
    "ChapterNotFoundError",
    "DuplicateEmbeddingError",
    "StorageIOError",
    "StorageConnectionError",
    "EmbeddingError",
    "SearchFailedError",
    "FactExtractionError",
]

__version__ = "0.1.0"
