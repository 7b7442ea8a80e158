"""
Embedding provider abstraction, persistent cache and resilience utilities.

Provides:
- Abstract EmbeddingProvider interface
- OpenAI implementation
- EmbeddingCache, the text-keyed persistent vector cache
- Retry with classified failures and exponential backoff
"""

from .base import EmbeddingProvider
from .cache import EmbeddingCache
from .resilience import EMBED_BATCH_SIZE, RetryConfig, is_retryable, retry_with_backoff

__all__ = [
    "EMBED_BATCH_SIZE",
    "EmbeddingCache",
    "EmbeddingProvider",
    "RetryConfig",
    "is_retryable",
    "retry_with_backoff",
]
