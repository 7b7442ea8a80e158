"""
Embedding provider interface.

The fact memory only needs two things from an embedding service: a vector
for one text and vectors for a batch of texts. Anything that can produce
fixed-dimension float vectors (OpenAI, a local sentence-transformers model,
a deterministic test double) can be plugged in.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

# text-embedding-3-* models accept at most 8192 input tokens
DEFAULT_MAX_INPUT_TOKENS = 8192


class EmbeddingProvider(ABC):
    """A service that turns text into fixed-width float vectors."""

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Width of every vector this provider returns."""
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Model identifier, stored alongside cached vectors."""
        pass

    @property
    def max_input_tokens(self) -> int:
        """Longest input (in tokens) the model accepts."""
        return DEFAULT_MAX_INPUT_TOKENS

    @abstractmethod
    async def embed_text(self, text: str) -> list[float]:
        """
        Embed one text.

        Raises:
            Exception: Service errors, left for the caller to classify
        """
        pass

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for multiple texts.

        Implementations must return one vector per input text, in input
        order. Services that answer out of order have to be re-correlated
        by the implementation before returning.

        Raises:
            Exception: Service errors, left for the caller to classify
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release clients and connections."""
        pass

    async def __aenter__(self) -> EmbeddingProvider:
        return self

    async def __aexit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        await self.close()
