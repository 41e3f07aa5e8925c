"""
Escrow-specific exceptions.

Exception Hierarchy:
    EscrowError (base for escrow domain, inherits BaseApplicationError)
    └── SignatureInvalidError - Webhook signature rejected (possible fraud)

    EscrowNotFoundError - No entry for id/rental (inherits NotFoundError)

    InvalidTransitionError - Precondition status mismatch (inherits ConflictError)
    └── AlreadyReleasedError - Release lost to a concurrent release
    DuplicateEntryError - Second capture for the same rental (inherits ConflictError)
    StaleRecordError - Conditional update matched no row (inherits ConflictError)
    LockAcquisitionError - Distributed lock timeout (inherits ConflictError)

    InsufficientDetailError - Note or resolution too short (inherits ValidationError)
    └── InvalidNoteError - Confirmation or release note too short
    AmountMismatchError - Split amounts don't sum to total (inherits ValidationError)

    GatewayError - Payment gateway failure (inherits ExternalServiceError)
    └── GatewayUnavailableError - Transient, retryable with backoff

Usage:
    from escrow.exceptions import AlreadyReleasedError, InvalidTransitionError

    try:
        EscrowLedgerService.release(entry_id, actor=admin, note=note)
    except AlreadyReleasedError:
        # Another caller won the race; nothing left to do
        pass
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Escrow Domain Exceptions
# =============================================================================


class EscrowError(BaseApplicationError):
    """
    Base exception for escrow operations that have no better parent.

    Example:
        try:
            ...
        except EscrowError as e:
            logger.error(f"Escrow operation failed: {e}")
    """

    default_error_code: str = "ESCROW_ERROR"


class EscrowNotFoundError(NotFoundError):
    """
    Raised when no escrow entry exists for an id or rental.

    Example:
        raise EscrowNotFoundError(
            f"No escrow entry for rental {rental_id}",
            details={"rental_id": str(rental_id)},
        )
    """

    default_error_code: str = "ESCROW_NOT_FOUND"


class InvalidTransitionError(ConflictError):
    """
    Raised when the entry's current status does not allow the operation.

    Covers double-release, double dispute opening, resolving a dispute on
    an entry that is not disputed, and any write to a terminal entry.

    Attributes:
        details: Contains current_status and the attempted operation
    """

    default_error_code: str = "INVALID_TRANSITION"


class AlreadyReleasedError(InvalidTransitionError):
    """
    Raised to the losing caller of a concurrent release.

    Callers treat this as "already handled" rather than a failure.
    """

    default_error_code: str = "ALREADY_RELEASED"


class DuplicateEntryError(ConflictError):
    """Raised when a rental already has an escrow entry."""

    default_error_code: str = "DUPLICATE_ENTRY"


class InsufficientDetailError(ValidationError):
    """
    Raised when a free-text justification is shorter than required.

    Example:
        if len(resolution.strip()) < 20:
            raise InsufficientDetailError(
                "Resolution must be at least 20 characters",
                details={"field": "resolution", "min_length": 20},
            )
    """

    default_error_code: str = "INSUFFICIENT_DETAIL"


class InvalidNoteError(InsufficientDetailError):
    """Raised when a confirmation or release note is too short."""

    default_error_code: str = "INVALID_NOTE"


class AmountMismatchError(ValidationError):
    """
    Raised when dispute split amounts don't add up to the entry amount.

    Example:
        raise AmountMismatchError(
            "Refund and release amounts must sum to the escrow amount",
            details={"refund": 4100, "release": 6000, "amount": 10000},
        )
    """

    default_error_code: str = "AMOUNT_MISMATCH"


class SignatureInvalidError(EscrowError):
    """
    Raised when a webhook payload fails signature verification.

    Always fatal for the delivery: the request is rejected with HTTP 400
    and no ledger state is touched.
    """

    default_error_code: str = "SIGNATURE_INVALID"


# =============================================================================
# Gateway Exceptions
# =============================================================================


class GatewayError(ExternalServiceError):
    """
    Base exception for payment gateway failures.

    Use is_retryable to decide retry behavior:
    - True: Transient error, safe to retry with backoff
    - False: Permanent error, mark the settlement leg failed
    """

    default_error_code: str = "GATEWAY_ERROR"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        gateway_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if gateway_code:
            details["gateway_code"] = gateway_code
        super().__init__(message, error_code=error_code, details=details)
        self.gateway_code = gateway_code


class GatewayUnavailableError(GatewayError):
    """
    Raised for transient gateway failures (network, rate limit, 5xx).

    Never surfaced to a party as a final failure on the first attempt;
    the payout executor retries with exponential backoff.
    """

    default_error_code: str = "GATEWAY_UNAVAILABLE"
    is_retryable: bool = True


# =============================================================================
# Concurrency Control Exceptions
# =============================================================================


class StaleRecordError(ConflictError):
    """
    Raised when a conditional update matched no row.

    Another writer changed the record (version or status) between our
    read and our write. Services translate this into the domain error
    that describes what the other writer did.
    """

    default_error_code: str = "STALE_RECORD"


class LockAcquisitionError(ConflictError):
    """
    Raised when a distributed lock cannot be acquired in time.

    Example:
        raise LockAcquisitionError(
            "Could not acquire lock for escrow:release:123 within 10s",
            details={"key": "escrow:release:123", "timeout": 10}
        )
    """

    default_error_code: str = "LOCK_ACQUISITION_FAILED"


__all__ = [
    "EscrowError",
    "EscrowNotFoundError",
    "InvalidTransitionError",
    "AlreadyReleasedError",
    "DuplicateEntryError",
    "InsufficientDetailError",
    "InvalidNoteError",
    "AmountMismatchError",
    "SignatureInvalidError",
    "GatewayError",
    "GatewayUnavailableError",
    "StaleRecordError",
    "LockAcquisitionError",
]
