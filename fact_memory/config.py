"""
Tunable defaults for the fact memory.

Thresholds are defaults only; every search and dedup operation also takes
them as arguments so different callers can apply different sensitivity.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from .embeddings.resilience import RetryConfig


@dataclass
class MemoryConfig:
    """Search and dedup defaults plus the retry policy for upstream calls."""

    search_similarity: float = 0.2
    search_limit: int = 10
    similar_threshold: float = 0.9  # find_similar_facts / add_fact_if_new
    exists_threshold: float = 0.95  # fact_exists
    similar_limit: int = 5
    retry: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self) -> None:
        if self.search_limit < 1:
            raise ValueError(f"search_limit must be >= 1, got {self.search_limit}")
        if self.similar_limit < 1:
            raise ValueError(f"similar_limit must be >= 1, got {self.similar_limit}")

    @classmethod
    def from_env(cls) -> MemoryConfig:
        """
        Create config from environment variables.

        Optional env vars:
            FACT_MEMORY_SEARCH_SIMILARITY: Default search threshold (0.2)
            FACT_MEMORY_SEARCH_LIMIT: Default page size (10)
            FACT_MEMORY_DEDUP_SIMILARITY: Near-duplicate threshold (0.9)
            FACT_MEMORY_EXISTS_SIMILARITY: Existence threshold (0.95)
            FACT_MEMORY_MAX_RETRIES: Retries for upstream calls (3)
        """
        return cls(
            search_similarity=float(os.environ.get("FACT_MEMORY_SEARCH_SIMILARITY", "0.2")),
            search_limit=int(os.environ.get("FACT_MEMORY_SEARCH_LIMIT", "10")),
            similar_threshold=float(os.environ.get("FACT_MEMORY_DEDUP_SIMILARITY", "0.9")),
            exists_threshold=float(os.environ.get("FACT_MEMORY_EXISTS_SIMILARITY", "0.95")),
            retry=RetryConfig(max_retries=int(os.environ.get("FACT_MEMORY_MAX_RETRIES", "3"))),
        )
