"""
Token counting for embedding inputs.

Facts are short, but search topics and ad hoc inputs are not bounded, so
inputs are clipped to the model's context window before they are sent.
The clipped string is only what the service sees; cache keys always use
the caller's exact text.
"""

from __future__ import annotations

import logging

import tiktoken

logger = logging.getLogger(__name__)

# text-embedding-3-* and ada-002 all tokenize with cl100k_base
_TIKTOKEN_ENCODING = "cl100k_base"

_encoder: tiktoken.Encoding | None = None


def _get_encoder() -> tiktoken.Encoding:
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding(_TIKTOKEN_ENCODING)
    return _encoder


def count_tokens(text: str) -> int:
    """Count tokens in text using the embedding model's tokenizer."""
    return len(_get_encoder().encode(text))


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """
    Truncate text to fit within a token limit.

    Returns the original string when it already fits.
    """
    encoder = _get_encoder()
    tokens = encoder.encode(text)
    if len(tokens) <= max_tokens:
        return text
    return encoder.decode(tokens[:max_tokens])


def clip_for_embedding(text: str, max_tokens: int) -> str:
    """Return the form of ``text`` to send to the embedding service."""
    # Every token covers at least one UTF-8 byte
    if len(text.encode("utf-8")) <= max_tokens:
        return text
    clipped = truncate_to_tokens(text, max_tokens)
    if clipped is not text:
        logger.warning(
            f"Text exceeds embedding token limit ({max_tokens} tokens), "
            f"truncating for embedding. First 100 chars: {text[:100]!r}"
        )
    return clipped
