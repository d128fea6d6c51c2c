"""Error taxonomy for the chat service.

Every error carries a stable machine-readable ``code`` and the HTTP status
the API layer answers with.
"""

from typing import Any, Optional


class ChatServiceError(Exception):
    """Base exception for the chat service."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationError(ChatServiceError):
    """Bad input."""

    code = "VALIDATION_ERROR"
    status_code = 400


class UnauthorizedError(ChatServiceError):
    """No owner identity on the request."""

    code = "UNAUTHORIZED"
    status_code = 401


class NotFoundError(ChatServiceError):
    """Chat missing or not owned by the caller."""

    code = "NOT_FOUND"
    status_code = 404


class ConflictError(ChatServiceError):
    """A concurrent write won the race for this chat."""

    code = "CONFLICT"
    status_code = 409


class RateLimitedError(ChatServiceError):
    """Generation quota exhausted."""

    code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, message: str, retry_after: int, details: Optional[Any] = None):
        super().__init__(message, details)
        self.retry_after = retry_after


class GenerationError(ChatServiceError):
    """Gateway failure, timeout or empty result."""

    code = "GENERATION_ERROR"
    status_code = 500


class StorageError(ChatServiceError):
    """Persistence failure."""

    code = "STORAGE_ERROR"
    status_code = 500
