"""
Error taxonomy for the memory service.

Every error carries a machine-readable ``code`` alongside the message so
callers can map failures onto their own transport (HTTP status, CLI exit
code, ...) without string matching.
"""

from typing import Any, Optional


class MemoryServiceError(Exception):
    """Base class for all memory service errors."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return error


class ValidationError(MemoryServiceError):
    """Bad caller input: missing field, conflicting cursors, bad vector size."""

    code = "VALIDATION_ERROR"


class NotFoundError(MemoryServiceError):
    """Referenced memory, cursor or organization does not exist."""

    code = "NOT_FOUND"


class UpstreamError(MemoryServiceError):
    """Embedding or text-generation provider failed or answered off-schema."""

    code = "UPSTREAM_ERROR"


class StorageError(MemoryServiceError):
    """Underlying persistence failure."""

    code = "STORAGE_ERROR"
