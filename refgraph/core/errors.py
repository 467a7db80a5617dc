"""Errors raised by the fetch, cache, and ranking layers."""

from __future__ import annotations


class RefGraphError(RuntimeError):
    """Base error for reference-graph failures."""


class NotFoundError(RefGraphError):
    """Raised when the remote record or search returned HTTP 404."""


class AbortedError(RefGraphError):
    """Raised when an operation was cancelled through its token."""


class TransientNetworkError(RefGraphError):
    """Raised for any non-404 fetch failure."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CacheCorruptionError(RefGraphError):
    """Raised internally when a persisted record fails its integrity check."""


class CacheDirectoryError(RefGraphError):
    """Raised when a cache directory cannot be created or written."""


class PartialEnrichmentFailure(RefGraphError):
    """Recorded when one enrichment batch fails; never aborts sibling batches."""
