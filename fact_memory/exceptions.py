"""
Custom exceptions for the fact memory.

Write paths raise these so callers can decide between retry and abort.
The search path reports failures on the result page instead of raising.
"""


class FactMemoryError(Exception):
    """Base exception for all fact memory errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class FactNotFoundError(FactMemoryError):
    """Raised when a fact does not exist in the given chapter."""

    def __init__(self, fact_id: int, chapter_id: str | None = None):
        details: dict = {"fact_id": fact_id}
        if chapter_id:
            details["chapter_id"] = chapter_id
        message = f"Fact not found: {fact_id}"
        if chapter_id:
            message += f" (chapter {chapter_id})"
        super().__init__(message, details)
        self.fact_id = fact_id
        self.chapter_id = chapter_id


class ChapterNotFoundError(FactMemoryError):
    """Raised when a chapter id does not reference a stored chapter."""

    def __init__(self, chapter_id: str):
        super().__init__(f"Chapter not found: {chapter_id}", {"chapter_id": chapter_id})
        self.chapter_id = chapter_id


class DuplicateEmbeddingError(FactMemoryError):
    """Raised when a plain insert hits an already cached text."""

    def __init__(self, text: str):
        super().__init__(
            f"Embedding already cached for text: {text[:80]!r}",
            {"text": text},
        )
        self.text = text


class StorageIOError(FactMemoryError):
    """Raised when a database operation fails or is attempted before initialize()."""

    def __init__(self, operation: str, cause: Exception | None = None):
        details = {"operation": operation}
        if cause:
            details["cause"] = str(cause)
        reason = f": {cause}" if cause else ""
        super().__init__(f"Database operation '{operation}' failed{reason}", details)
        self.operation = operation
        self.cause = cause


class StorageConnectionError(FactMemoryError):
    """Raised when the database file cannot be opened or its schema created."""

    def __init__(self, database: str, cause: Exception | None = None):
        details = {"database": database}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Could not open database {database}", details)
        self.database = database
        self.cause = cause


class EmbeddingError(FactMemoryError):
    """Raised when the embedding service returns an unusable result."""

    def __init__(self, message: str, cause: Exception | None = None):
        details: dict = {}
        if cause:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.cause = cause


class SearchFailedError(FactMemoryError):
    """Raised when a duplicate check cannot trust an empty search result."""

    def __init__(self, message: str, query: str | None = None):
        details = {"query": query} if query else {}
        super().__init__(message, details)
        self.query = query


class FactExtractionError(FactMemoryError):
    """Raised by fact extractors when a chapter yields no usable facts."""

    def __init__(self, chapter_title: str | None, reason: str):
        details = {"reason": reason}
        if chapter_title:
            details["chapter_title"] = chapter_title
        title = f" '{chapter_title}'" if chapter_title else ""
        super().__init__(f"Fact extraction failed for chapter{title}: {reason}", details)
        self.chapter_title = chapter_title
        self.reason = reason
