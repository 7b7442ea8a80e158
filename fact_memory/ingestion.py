"""
Chapter ingestion: extract facts, reconcile them into memory, attach pages.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .embeddings.resilience import RetryConfig, retry_with_backoff
from .memory import ChapterMemory
from .protocol import FactExtractor, PageNumberAttributor

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """Outcome of ingesting one chapter."""

    chapter_id: str
    extracted: int
    stored: int
    pages_attributed: int = 0


async def ingest_chapter_facts(
    memory: ChapterMemory,
    chapter_id: str,
    content: str,
    title: str,
    extractor: FactExtractor,
    attributor: PageNumberAttributor | None = None,
    retry_config: RetryConfig | None = None,
) -> IngestResult:
    """
    Extract a chapter's facts and converge its stored facts to them.

    Extraction is retried on transient failures. Page attribution is
    optional and best-effort: an empty or missing mapping leaves page
    numbers untouched.

    Raises:
        FactExtractionError: If extraction failed terminally
    """
    facts = await retry_with_backoff(
        extractor.extract_facts,
        content,
        title,
        config=retry_config or memory.config.retry,
        context_msg=f"extract chapter={chapter_id}",
    )
    logger.info(f"Extracted {len(facts)} facts from chapter {title!r}")

    stored = await memory.upsert_facts(chapter_id, facts)
    result = IngestResult(chapter_id=chapter_id, extracted=len(facts), stored=len(stored))

    if attributor is None or not facts:
        return result

    page_mapping = await attributor.attribute_pages(facts, content)
    if not page_mapping:
        logger.warning(f"No page numbers could be extracted for chapter {title!r}")
        return result

    result.pages_attributed = await memory.update_page_numbers(chapter_id, page_mapping)
    return result
