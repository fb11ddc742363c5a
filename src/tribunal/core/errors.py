"""Exception types raised across ingestion and search."""


class TribunalError(Exception):
    """Base class for all Tribunal errors."""


class ExtractionError(TribunalError):
    """Text could not be extracted from a document."""


class FileOpenError(ExtractionError):
    """The PDF could not be opened or parsed at all."""


class PageExtractionError(TribunalError):
    """A single page could not be extracted (OCR failure, unreadable image)."""

    def __init__(self, page_number: int, message: str):
        super().__init__(f"Page {page_number}: {message}")
        self.page_number = page_number


class EmbeddingError(TribunalError):
    """An embedding could not be produced."""


class QueryEmbeddingError(EmbeddingError):
    """The search query could not be embedded."""


class NotFoundError(TribunalError, LookupError):
    """Unknown document or job id."""
