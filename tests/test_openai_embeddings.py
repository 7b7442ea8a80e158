"""
Tests for the OpenAI embedding provider.

Uses mocking to avoid actual API calls during tests.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from fact_memory.embeddings.openai import OpenAIEmbeddings
from fact_memory.exceptions import EmbeddingError


class MockEmbeddingResponse:
    """Mock response from the OpenAI embeddings API."""

    def __init__(self, items: list[tuple[int, list[float]]]):
        self.data = [MagicMock(index=index, embedding=embedding) for index, embedding in items]


def mock_client(response: MockEmbeddingResponse) -> MagicMock:
    client = MagicMock()
    client.embeddings.create = AsyncMock(return_value=response)
    client.close = AsyncMock()
    return client


class TestOpenAIEmbeddings:
    """Tests for OpenAI embedding provider."""

    def test_dimension_autodetection(self):
        assert OpenAIEmbeddings(api_key="k").dimensions == 1536
        assert OpenAIEmbeddings(api_key="k", model="text-embedding-3-large").dimensions == 3072
        assert OpenAIEmbeddings(api_key="k", model="custom", dimensions=256).dimensions == 256

    def test_unknown_model_defaults(self):
        assert OpenAIEmbeddings(api_key="k", model="custom").dimensions == 1536

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        monkeypatch.setenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-large")
        monkeypatch.setenv("OPENAI_EMBEDDING_DIMENSIONS", "1024")
        monkeypatch.delenv("OPENAI_BASE_URL", raising=False)

        provider = OpenAIEmbeddings.from_env()

        assert provider.api_key == "sk-test"
        assert provider.model_name == "text-embedding-3-large"
        assert provider.dimensions == 1024

    def test_from_env_requires_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)

        with pytest.raises(ValueError, match="OPENAI_API_KEY"):
            OpenAIEmbeddings.from_env()

    @pytest.mark.asyncio
    async def test_batch_reordered_by_index(self):
        """Out-of-order response items land at their input positions."""
        provider = OpenAIEmbeddings(api_key="k", dimensions=2)
        provider._client = mock_client(
            MockEmbeddingResponse([(1, [0.0, 1.0]), (0, [1.0, 0.0])])
        )

        vectors = await provider.embed_batch(["first", "second"])

        assert vectors == [[1.0, 0.0], [0.0, 1.0]]
        provider._client.embeddings.create.assert_awaited_once_with(
            input=["first", "second"], model="text-embedding-3-small", dimensions=2
        )

    @pytest.mark.asyncio
    async def test_missing_item_raises(self):
        provider = OpenAIEmbeddings(api_key="k", dimensions=2)
        provider._client = mock_client(MockEmbeddingResponse([(0, [1.0, 0.0])]))

        with pytest.raises(EmbeddingError):
            await provider.embed_batch(["first", "second"])

    @pytest.mark.asyncio
    async def test_embed_text(self):
        provider = OpenAIEmbeddings(api_key="k", dimensions=2)
        provider._client = mock_client(MockEmbeddingResponse([(0, [0.6, 0.8])]))

        assert await provider.embed_text("one") == [0.6, 0.8]

    @pytest.mark.asyncio
    async def test_ada_omits_dimensions(self):
        provider = OpenAIEmbeddings(api_key="k", model="text-embedding-ada-002")
        provider._client = mock_client(MockEmbeddingResponse([(0, [1.0])]))

        await provider.embed_batch(["one"])

        kwargs = provider._client.embeddings.create.await_args.kwargs
        assert "dimensions" not in kwargs

    @pytest.mark.asyncio
    async def test_empty_batch_makes_no_call(self):
        provider = OpenAIEmbeddings(api_key="k")
        assert await provider.embed_batch([]) == []
        assert provider._client is None

    @pytest.mark.asyncio
    async def test_close(self):
        provider = OpenAIEmbeddings(api_key="k")
        client = mock_client(MockEmbeddingResponse([]))
        provider._client = client

        async with provider:
            pass

        client.close.assert_awaited_once()
        assert provider._client is None
