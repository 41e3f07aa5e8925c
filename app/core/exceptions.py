"""
Base exception classes for application-wide error handling.

Every failure raised from the service layer derives from BaseApplicationError
so views, Celery tasks and the admin can treat them uniformly: a message for
humans, a machine-readable error_code for clients, and optional details.

Exception Hierarchy:
    BaseApplicationError (base)
    ├── ValidationError - Input or business rule failures
    ├── NotFoundError - Resource not found
    ├── PermissionDeniedError - Authorization failures
    ├── ConflictError - State conflicts (transitions, concurrent writes)
    ├── RateLimitError - Rate limit exceeded
    └── ExternalServiceError - Payment gateway and other third-party failures

Usage:
    from core.exceptions import ConflictError

    raise ConflictError(
        "Cannot release an entry in refunded status",
        error_code="INVALID_TRANSITION",
        details={"current_status": "refunded", "operation": "release"},
    )

    try:
        ...
    except BaseApplicationError as e:
        return Response(e.to_dict(), status=409)

Note:
    DRF still handles API-layer errors (serializer validation, authentication).
    The escrow app subclasses these in escrow.exceptions.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


class BaseApplicationError(Exception):
    """
    Base exception for all application-specific errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable code for client-side handling
        details: Additional error context (ids, statuses, limits)
    """

    default_error_code: str = "APPLICATION_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for API response.

        Example:
            {
                "error": "Escrow entry not found",
                "error_code": "ESCROW_NOT_FOUND",
                "details": {"entry_id": "6f1c..."}
            }
        """
        result: dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            result["details"] = self.details
        return result

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
    Raised when input fails a business rule.

    Example:
        raise ValidationError(
            "Refund and release amounts must add up to the held amount",
            error_code="AMOUNT_MISMATCH",
            details={"refund": 4100, "release": 6000, "amount": 10000},
        )

    Note:
        Shape checks belong in DRF serializers. Use this for rules the
        service layer enforces.
    """

    default_error_code: str = "VALIDATION_ERROR"


class NotFoundError(BaseApplicationError):
    """Raised when a requested record does not exist."""

    default_error_code: str = "NOT_FOUND"


class PermissionDeniedError(BaseApplicationError):
    """
    Raised when the caller may not perform an operation.

    Example:
        raise PermissionDeniedError(
            "Only the renter or owner of this rental can confirm completion",
            error_code="NOT_A_PARTY",
        )

    Note:
        Authentication failures (missing or invalid JWT) stay with DRF.
    """

    default_error_code: str = "PERMISSION_DENIED"


class ConflictError(BaseApplicationError):
    """
    Raised when an operation conflicts with current record state.

    Use for:
    - Invalid state transitions
    - Optimistic locking failures
    - Duplicate records

    Note:
        HTTP 409 Conflict is the matching status.
    """

    default_error_code: str = "CONFLICT"


class RateLimitError(BaseApplicationError):
    """Raised when a caller exceeds an allowed rate. Maps to HTTP 429."""

    default_error_code: str = "RATE_LIMIT_EXCEEDED"


class ExternalServiceError(BaseApplicationError):
    """
    Raised when an external service call fails.

    Example:
        try:
            stripe.Transfer.create(...)
        except stripe.error.APIConnectionError as e:
            raise ExternalServiceError(
                "Payment gateway unavailable",
                error_code="GATEWAY_UNAVAILABLE",
                details={"original_error": str(e)},
            )

    Note:
        Log the original error but do not expose gateway internals to clients.
    """

    default_error_code: str = "EXTERNAL_SERVICE_ERROR"
