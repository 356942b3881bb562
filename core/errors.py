"""
Shared error types for core services.
"""


class ValidationIssue(ValueError):
    def __init__(
        self,
        message: str,
        field: str = "unknown",
        error_type: str = "invalid",
        error_code: str | None = None,
        data: dict | None = None,
    ):
        super().__init__(message)
        self.field = field
        self.error_type = error_type
        self.error_code = error_code
        self.data = data


class NotFoundError(LookupError):
    """Raised when an owner, session, artifact or exercise does not exist."""

    def __init__(self, message: str, resource: str = "unknown", resource_id: str | None = None):
        super().__init__(message)
        self.resource = resource
        self.resource_id = resource_id


class ConflictError(RuntimeError):
    """Raised when a write is rejected because current state moved on.

    The caller must re-fetch and retry with fresh data.
    """

    def __init__(self, message: str, error_code: str = "conflict", data: dict | None = None):
        super().__init__(message)
        self.error_code = error_code
        self.data = data or {}


class StorageError(RuntimeError):
    """Raised when the store keeps failing after bounded retries."""


class ReasoningEngineError(RuntimeError):
    """Raised when the reasoning engine is unavailable."""
