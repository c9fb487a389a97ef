"""Exceptions raised by the rules indexing pipeline and its store."""

from __future__ import annotations


class RulesIndexError(Exception):
    """Base exception for rules index errors."""

    def __init__(self, message: str, original_error: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class SourceNotFoundError(RulesIndexError):
    """Raised when a source id does not exist in the store."""

    def __init__(self, source_id: str):
        super().__init__(f"Source not found: {source_id}")
        self.source_id = source_id


class IndexingInProgressError(RulesIndexError):
    """Raised when a second run tries to take the lease of a source already indexing."""

    def __init__(self, source_id: str):
        super().__init__(f"Source {source_id} is already being indexed")
        self.source_id = source_id


class InvalidTransitionError(RulesIndexError):
    """Raised on an index status change the state machine does not allow."""


class IndexingError(RulesIndexError):
    """A pipeline stage failed. ``stage`` names the stage that raised."""

    def __init__(self, stage: str, message: str, original_error: Exception | None = None):
        super().__init__(message, original_error)
        self.stage = stage


class ContentValidationError(RulesIndexError):
    """Raised when stored content does not match any known content shape."""
