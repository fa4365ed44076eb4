"""Exception types shared by the archive layer and the pipeline."""

from typing import Any, Optional


class MappingError(Exception):
    """Raised when mapping a document fails."""
    def __init__(self, message: str, metrics: Optional[Any] = None):
        super().__init__(message)
        self.metrics = metrics


class ArchiveError(MappingError):
    """Unreadable archive or missing document part."""


class TemplateError(MappingError):
    """The template holds nothing to transfer."""
