"""Custom exception hierarchy for site vault."""

from typing import Any, Optional


class VaultError(Exception):
    """Base exception for all vault errors."""

    def __init__(
        self,
        message: str,
        *,
        correlation_id: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        """Initialize vault error.

        Args:
            message: Error message
            correlation_id: Optional correlation ID for tracing
            context: Optional context dictionary with additional details
        """
        super().__init__(message)
        self.message = message
        self.correlation_id = correlation_id
        self.context = context or {}

    def __str__(self) -> str:
        """Return formatted error message."""
        parts = [self.message]
        if self.correlation_id:
            parts.append(f"[correlation_id={self.correlation_id}]")
        if self.context:
            parts.append(f"[context={self.context}]")
        return " ".join(parts)


class ConfigurationError(VaultError):
    """Configuration-related errors."""

    pass


class DatabaseError(VaultError):
    """Database-related errors."""

    pass


class TransportError(VaultError):
    """Errors while uploading or downloading archive segments."""

    pass


class SchemaError(VaultError):
    """Malformed table, field, key or index definitions."""

    pass


class ArchiveError(VaultError):
    """Errors reading or writing archive segments."""

    pass


class OperationError(VaultError):
    """Errors in the lifecycle of a backup, restore or check."""

    pass


class OperationConflictError(OperationError):
    """Raised when an operation can not be scheduled because another one is running."""

    pass
