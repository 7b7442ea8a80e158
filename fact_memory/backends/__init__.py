"""
Storage backends for the fact memory.

Provides:
- Record types (CachedEmbedding, Fact, SearchCursor, SearchResultPage, ...)
- Abstract FactStorageBackend interface
- SQLite implementation
"""

from .base import (
    BookRef,
    CachedEmbedding,
    ChapterContext,
    Fact,
    FactSearchResult,
    FactStorageBackend,
    FactWithEmbedding,
    FeatureTag,
    SearchCandidate,
    SearchCursor,
    SearchResultPage,
)
from .sqlite import SQLiteBackend, SQLiteConfig

__all__ = [
    "BookRef",
    "CachedEmbedding",
    "ChapterContext",
    "Fact",
    "FactSearchResult",
    "FactStorageBackend",
    "FactWithEmbedding",
    "FeatureTag",
    "SearchCandidate",
    "SearchCursor",
    "SearchResultPage",
    "SQLiteBackend",
    "SQLiteConfig",
]
