"""Retry utilities for calls to the embedding and fact-extraction services.

Failures are classified before retrying: transient ones (network errors,
timeouts, 429 rate limits, 5xx) are retried with exponential backoff,
everything else (auth, validation, malformed responses) is raised on the
first attempt. After the last attempt the original exception propagates
unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

import openai

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Texts per embed_batch request
EMBED_BATCH_SIZE = 64


@dataclass
class RetryConfig:
    """Retry policy for upstream service calls."""

    max_retries: int = 3  # attempts after the first one
    backoff_base: float = 1.0  # seconds before the first retry
    backoff_max: float = 30.0
    backoff_multiplier: float = 2.0
    retryable_status_codes: tuple[int, ...] = (408, 409, 429, 500, 502, 503, 504)
    retryable_exceptions: tuple[type[Exception], ...] = (
        ConnectionError,
        TimeoutError,
        OSError,
        openai.APIConnectionError,
    )

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, attempt: int) -> float:
        """Backoff delay (seconds) after the given 0-based attempt."""
        return min(self.backoff_base * (self.backoff_multiplier**attempt), self.backoff_max)


def _status_of(exc: Exception) -> int | None:
    """HTTP status carried by an SDK error, on the error itself or its response."""
    for source in (exc, getattr(exc, "response", None)):
        if source is None:
            continue
        for attr in ("status_code", "status"):
            value = getattr(source, attr, None)
            if isinstance(value, int):
                return value
    return None


def _retry_after_seconds(exc: Exception) -> float | None:
    """Seconds requested by a Retry-After header, if the error has one."""
    headers = getattr(getattr(exc, "response", None), "headers", None)
    if not isinstance(headers, Mapping):
        return None
    for name in ("Retry-After", "retry-after"):
        raw = headers.get(name)
        if raw is None:
            continue
        try:
            return float(raw)
        except (TypeError, ValueError):
            return None
    return None


def is_retryable(exc: Exception, config: RetryConfig) -> bool:
    """Whether an exception is a transient failure worth retrying."""
    if isinstance(exc, config.retryable_exceptions):
        return True
    return _status_of(exc) in config.retryable_status_codes


async def retry_with_backoff(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    config: RetryConfig | None = None,
    context_msg: str = "",
    **kwargs: Any,
) -> T:
    """Await ``fn(*args, **kwargs)``, retrying transient failures.

    Args:
        fn: Async callable
        *args: Positional arguments for fn
        config: Retry policy; defaults to RetryConfig()
        context_msg: Appended to log lines (chapter id, batch number, ...)
        **kwargs: Keyword arguments for fn

    Raises:
        Exception: The first terminal exception, or the last transient one
            once all attempts are used
    """
    policy = config or RetryConfig()
    suffix = f" [{context_msg}]" if context_msg else ""
    attempt = 0

    while True:
        try:
            result = await fn(*args, **kwargs)
        except Exception as exc:
            status = _status_of(exc)
            transient = is_retryable(exc, policy)
            if not transient or attempt >= policy.max_retries:
                logger.error(
                    f"RETRY_EXHAUSTED: attempt={attempt + 1}/{policy.max_attempts} "
                    f"status={status} retryable={transient}{suffix}: {exc}"
                )
                raise

            requested = _retry_after_seconds(exc)
            delay = policy.delay_for(attempt) if requested is None else min(requested, policy.backoff_max)
            label = "THROTTLED" if status == 429 else "RETRYING"
            logger.warning(
                f"{label}: attempt={attempt + 1}/{policy.max_attempts} status={status} "
                f"delay={delay:.1f}s{suffix}: {exc}"
            )
            await asyncio.sleep(delay)
            attempt += 1
            continue

        if attempt:
            logger.warning(
                f"RETRY_RECOVERED: succeeded on attempt {attempt + 1}/{policy.max_attempts}{suffix}"
            )
        return result
