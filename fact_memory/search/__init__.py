"""
Similarity search over stored facts.

Provides:
- Cosine similarity helpers and the keyset ranking function
- SimilaritySearchEngine, the backend-bound search service
"""

from .engine import SimilaritySearchEngine
from .similarity import (
    SIMILARITY_PRECISION,
    cosine_similarities,
    cosine_similarity,
    quantize_similarity,
    rank_candidates,
)

__all__ = [
    "SIMILARITY_PRECISION",
    "SimilaritySearchEngine",
    "cosine_similarities",
    "cosine_similarity",
    "quantize_similarity",
    "rank_candidates",
]
