"""
Shared test configuration and fixtures.

Provides a deterministic mock embedding provider and in-memory SQLite
backends, so no test needs network access or API keys.

Search-related tests register explicit vectors on the provider so that
similarities are known exactly; any other text gets a stable pseudo-random
vector derived from its SHA-256 digest.
"""

import hashlib
import math

import pytest

from fact_memory.backends import SQLiteBackend, SQLiteConfig
from fact_memory.config import MemoryConfig
from fact_memory.embeddings import EmbeddingProvider, RetryConfig
from fact_memory.memory import ChapterMemory

TEST_DIMENSIONS = 16


class MockEmbeddingProvider(EmbeddingProvider):
    """
    Mock embedding provider for testing without API costs.

    Records every text it was asked to embed so tests can assert on cache
    hits and misses.
    """

    def __init__(self, dimensions: int = TEST_DIMENSIONS, vectors: dict[str, list[float]] | None = None):
        self._dimensions = dimensions
        self._model_name = "mock-embeddings"
        self.vectors: dict[str, list[float]] = {}
        self.embedded: list[str] = []
        self.batch_calls = 0
        self.closed = False
        for text, vector in (vectors or {}).items():
            self.register(text, vector)

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def register(self, text: str, vector: list[float]) -> None:
        """Pin the vector returned for ``text``, zero-padded to full width."""
        self.vectors[text] = list(vector) + [0.0] * (self._dimensions - len(vector))

    def vector_for(self, text: str) -> list[float]:
        if text in self.vectors:
            return list(self.vectors[text])
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [(digest[i] - 127.5) / 127.5 for i in range(self._dimensions)]

    async def embed_text(self, text: str) -> list[float]:
        self.embedded.append(text)
        return self.vector_for(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.batch_calls += 1
        self.embedded.extend(texts)
        return [self.vector_for(text) for text in texts]

    async def close(self) -> None:
        self.closed = True


def unit_at(similarity: float) -> list[float]:
    """A unit vector whose cosine with [1, 0, ...] is exactly ``similarity``."""
    return [similarity, math.sqrt(max(0.0, 1.0 - similarity * similarity))]


QUERY_VECTOR = [1.0, 0.0]


@pytest.fixture
def provider():
    return MockEmbeddingProvider()


@pytest.fixture
async def backend():
    """In-memory SQLite backend sized for the mock provider."""
    storage = await SQLiteBackend.create(
        SQLiteConfig(db_path=":memory:", vector_dimensions=TEST_DIMENSIONS)
    )
    yield storage
    await storage.close()


@pytest.fixture
async def chapter(backend):
    book = await backend.upsert_book("Moby-Dick", author="Herman Melville")
    return await backend.upsert_chapter(book.id, "Loomings", chapter_number=1)


@pytest.fixture
async def other_chapter(backend, chapter):
    return await backend.upsert_chapter(chapter.book.id, "The Carpet-Bag", chapter_number=2)


@pytest.fixture
def fast_retry():
    """Retry policy without sleeping."""
    return RetryConfig(max_retries=2, backoff_base=0.0)


@pytest.fixture
async def memory(backend, provider, fast_retry):
    return ChapterMemory(backend, provider, MemoryConfig(retry=fast_retry))
