"""
Abstract collaborators the fact memory consumes.

These are the seams toward the document pipeline around the memory:
where chapter text comes from, how facts are extracted from it, and how
facts are located on pages. Implementations typically wrap an LLM or a
document parser; none ship with this package.
"""

from abc import ABC, abstractmethod
from typing import Any


class ChapterContentSource(ABC):
    """Supplies the full text of a chapter."""

    @abstractmethod
    async def get_content(self, chapter_ref: Any) -> str:
        """Return the plain-text content of the referenced chapter.

        Args:
            chapter_ref: Implementation-defined chapter reference
                (an href inside a book archive, a path, an id)
        """
        ...


class FactExtractor(ABC):
    """Turns chapter text into a list of atomic fact statements."""

    @abstractmethod
    async def extract_facts(self, chapter_content: str, chapter_title: str) -> list[str]:
        """Extract facts from a chapter.

        Args:
            chapter_content: Chapter plain text
            chapter_title: Chapter title, used as extraction context

        Returns:
            Fact texts in extraction order

        Raises:
            FactExtractionError: If extraction failed; transient service
                errors may propagate as-is so callers can retry them
        """
        ...


class PageNumberAttributor(ABC):
    """Locates each fact on a page of the chapter."""

    @abstractmethod
    async def attribute_pages(
        self, fact_texts: list[str], chapter_content: str
    ) -> dict[str, int | None] | None:
        """Map fact texts to page numbers.

        Returns:
            Fact text to page number (None when the page is unknown),
            or None if attribution was not possible at all
        """
        ...
