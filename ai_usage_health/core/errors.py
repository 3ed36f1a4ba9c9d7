"""
Error taxonomy for ingestion and scoring.

Every error raised on purpose by this package derives from HealthError so
callers can catch a single type at the boundary.
"""

from typing import Optional


class HealthError(Exception):
    """Base class for all ai_usage_health errors."""


class ValidationError(HealthError, ValueError):
    """Raised when a session report is malformed.

    Always raised before anything is written to storage.
    """
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFoundError(HealthError, LookupError):
    """Raised when a machine or recommendation does not exist."""
    def __init__(self, message: str, entity: str = "machine", key: Optional[str] = None):
        super().__init__(message)
        self.entity = entity
        self.key = key


class StorageError(HealthError):
    """Raised when the persistence layer fails.

    The underlying sqlite3 error is kept as __cause__. No retry is attempted.
    """


class InvalidTransitionError(HealthError, ValueError):
    """Raised when a recommendation leaves a terminal status."""
