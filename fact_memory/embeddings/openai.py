"""
OpenAI embedding provider.

Thin adapter over the official SDK. It keeps no cache of its own: the
persistent ``EmbeddingCache`` sits in front and only forwards misses, and
retries are owned by ``retry_with_backoff`` so the SDK's built-in retries
are switched off.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from openai import AsyncOpenAI

from ..exceptions import EmbeddingError
from .base import EmbeddingProvider

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "text-embedding-3-small"

# Native output width per model; text-embedding-3-* can be shortened on request
KNOWN_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

# Models that accept the ``dimensions`` request parameter
_SHORTENABLE = frozenset({"text-embedding-3-small", "text-embedding-3-large"})


class OpenAIEmbeddings(EmbeddingProvider):
    """Embeddings from the OpenAI API or an OpenAI-compatible endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        dimensions: int | None = None,
        base_url: str | None = None,
    ):
        """
        Args:
            api_key: API key
            model: Embedding model name
            dimensions: Output width; the model's native width when None
            base_url: Alternative endpoint for OpenAI-compatible servers
        """
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self._dimensions = dimensions or self._native_dimensions(model)
        self._client: AsyncOpenAI | None = None

        logger.info(f"OpenAI embeddings configured: model={model}, dimensions={self._dimensions}")

    @staticmethod
    def _native_dimensions(model: str) -> int:
        if model in KNOWN_DIMENSIONS:
            return KNOWN_DIMENSIONS[model]
        fallback = KNOWN_DIMENSIONS[DEFAULT_MODEL]
        logger.warning(
            f"No known width for model {model!r}; assuming {fallback}. "
            f"Pass dimensions explicitly if that is wrong."
        )
        return fallback

    @classmethod
    def from_env(cls) -> OpenAIEmbeddings:
        """
        Build a provider from environment variables.

        Required:
            OPENAI_API_KEY

        Optional:
            OPENAI_EMBEDDING_MODEL (default text-embedding-3-small)
            OPENAI_EMBEDDING_DIMENSIONS (default: the model's native width)
            OPENAI_BASE_URL
        """
        api_key = os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise ValueError("OPENAI_API_KEY environment variable required")

        width = os.environ.get("OPENAI_EMBEDDING_DIMENSIONS")
        return cls(
            api_key=api_key,
            model=os.environ.get("OPENAI_EMBEDDING_MODEL", DEFAULT_MODEL),
            dimensions=int(width) if width else None,
            base_url=os.environ.get("OPENAI_BASE_URL") or None,
        )

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def model_name(self) -> str:
        return self.model

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url, max_retries=0)
        return self._client

    async def embed_text(self, text: str) -> list[float]:
        [vector] = await self.embed_batch([text])
        return vector

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Embed texts in one request.

        Response items carry the index of their input and are placed by
        that index, not by response order.

        Raises:
            EmbeddingError: If the response does not cover every input
        """
        if not texts:
            return []

        request: dict[str, Any] = {"input": texts, "model": self.model}
        if self.model in _SHORTENABLE:
            request["dimensions"] = self._dimensions
        response = await self._get_client().embeddings.create(**request)

        by_index = {item.index: item.embedding for item in response.data}
        missing = [i for i in range(len(texts)) if i not in by_index]
        if missing:
            raise EmbeddingError(
                f"Embedding response covers {len(texts) - len(missing)} of {len(texts)} inputs; "
                f"missing indices {missing[:5]}"
            )

        logger.debug(f"Embedded {len(texts)} texts with {self.model}")
        return [by_index[i] for i in range(len(texts))]

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
