from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for typed storage-layer failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""


class UniqueConstraintViolation(ConstraintViolation):
    """A row with the same unique key already exists."""


class ForeignKeyViolation(ConstraintViolation):
    """A referenced row does not exist."""


class DuplicateFingerprint(UniqueConstraintViolation):
    """A refresh token record with this fingerprint is already stored."""


class RecordNotFound(StorageError):
    """No usable refresh token record matched the fingerprint."""


class RecordExpired(StorageError):
    """The matching refresh token record had expired and was removed."""


class StoreUnavailable(StorageError):
    """The backing store could not be reached or timed out."""


__all__ = [
    "StorageError",
    "ConstraintViolation",
    "UniqueConstraintViolation",
    "ForeignKeyViolation",
    "DuplicateFingerprint",
    "RecordNotFound",
    "RecordExpired",
    "StoreUnavailable",
]
