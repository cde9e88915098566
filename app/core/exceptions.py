"""
Base exception classes for application-wide error handling.

This module provides the exception hierarchy every app builds on:
- Machine-readable error codes for client handling
- An HTTP status per error family, used by the API layer
- A human-readable user_message that is safe to show to end users
- Detailed context (details dict) for operators and admins

Exception Hierarchy:
    BaseApplicationError (base)
    ├── ValidationError - Input validation failures (400)
    ├── NotFoundError - Resource not found (404)
    ├── PermissionDeniedError - Authorization failures (403)
    ├── ConflictError - State conflicts, concurrent modifications (409)
    └── ExternalServiceError - Third-party service failures (503)

Usage:
    from core.exceptions import ConflictError

    raise ConflictError(
        "Cannot ship a cancelled transaction",
        error_code="INVALID_TRANSITION",
        details={"status": "cancelled", "event": "ship"},
    )

    # Admin-facing payload (raw taxonomy)
    exc.to_dict()

    # End-user payload (mapped reason string)
    exc.to_public_dict()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


class BaseApplicationError(Exception):
    """
    Base exception for all application-specific errors.

    Attributes:
        message: Operator-facing error description (may contain ids, states)
        error_code: Machine-readable code for client-side handling
        details: Additional error context
        http_status: Status code the API layer responds with
        user_message: Reason string shown to buyers and sellers
    """

    default_error_code: str = "APPLICATION_ERROR"
    http_status: int = 400
    user_message: str = "Something went wrong. Please try again."

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        """
        Initialize the exception.

        Args:
            message: Human-readable error description
            error_code: Machine-readable error code (defaults to class default)
            details: Additional error context
        """
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to the full dictionary shown to admins.

        Example:
            {
                "error": "Transaction 4f0c... is disputed; cannot ship",
                "error_code": "INVALID_TRANSITION",
                "details": {"status": "disputed", "event": "ship"}
            }
        """
        result: dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            result["details"] = self.details
        return result

    def to_public_dict(self) -> dict[str, Any]:
        """Convert exception to the reduced dictionary shown to end users."""
        return {
            "error": self.user_message,
            "error_code": self.error_code,
        }

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


class ValidationError(BaseApplicationError):
    """
    Raised when input validation fails in the service layer.

    Note:
        DRF serializers validate request shape; this covers business
        rules the serializer cannot see (refund bounds, buyer == seller).
    """

    default_error_code: str = "VALIDATION_ERROR"
    http_status: int = 400
    user_message: str = "The request could not be processed. Please check your input."


class NotFoundError(BaseApplicationError):
    """Raised when a requested resource is not found."""

    default_error_code: str = "NOT_FOUND"
    http_status: int = 404
    user_message: str = "We could not find what you were looking for."


class PermissionDeniedError(BaseApplicationError):
    """
    Raised when the acting user may not perform an operation.

    Example:
        if not actor.is_arbiter:
            raise PermissionDeniedError(
                "Only an arbiter can resolve disputes",
                error_code="ARBITER_REQUIRED",
            )
    """

    default_error_code: str = "PERMISSION_DENIED"
    http_status: int = 403
    user_message: str = "You are not allowed to do that."


class ConflictError(BaseApplicationError):
    """
    Raised when an operation conflicts with current resource state.

    Use for:
    - Duplicate entries (unique constraint violations)
    - Concurrent modification conflicts
    - Invalid state transitions
    """

    default_error_code: str = "CONFLICT"
    http_status: int = 409
    user_message: str = "This item changed while you were working on it. Please refresh."


class ExternalServiceError(BaseApplicationError):
    """
    Raised when an external service call fails.

    Note:
        Log the original error for debugging but don't expose
        internal details to clients.
    """

    default_error_code: str = "EXTERNAL_SERVICE_ERROR"
    http_status: int = 503
    user_message: str = "A partner service is unavailable. Please try again shortly."
