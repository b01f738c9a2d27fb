"""Exception types raised by the ingestion pipeline."""

from __future__ import annotations

from typing import Optional


class IngestError(RuntimeError):
    """Base class for ingestion failures."""
    pass


class FetchError(IngestError):
    """Raised when a page cannot be fetched because of a transport failure."""
    pass


class HttpError(FetchError):
    """Raised when the source answers with a non-2xx status."""

    def __init__(self, status_code: int, url: str, message: Optional[str] = None):
        super().__init__(message or f"HTTP {status_code} for {url}")
        self.status_code = status_code
        self.url = url


class ConfigurationError(IngestError):
    """Raised when the catalog is missing state the pipeline requires (e.g. an admin owner)."""
    pass


class RecordValidationError(IngestError):
    """Raised for a single import record that cannot be written."""
    pass
