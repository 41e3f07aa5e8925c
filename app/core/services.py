"""
Base service layer patterns for business logic encapsulation.

This module provides foundational patterns for the service layer:
- ServiceResult: Result wrapper for operations that report expected failures
- BaseService: Base class with logging and transaction helpers

Pattern Comparison:
    - ServiceResult: Used where a caller (usually a Celery task or webhook
      handler) wants to record an outcome rather than unwind, e.g.
      "gateway unavailable, deferred"
    - Exceptions: Used for typed domain failures the caller must handle,
      e.g. InvalidTransitionError, AlreadyReleasedError

Usage:
    from core.services import BaseService, ServiceResult

    class SettlementService(BaseService):
        @classmethod
        def execute_payout(cls, payout_id) -> ServiceResult[Payout]:
            with cls.atomic():
                payout = Payout.objects.select_for_update().get(pk=payout_id)
                ...
            cls.get_logger().info("Payout submitted", extra={"payout_id": str(payout.id)})
            return ServiceResult.success(payout)

    # In a task
    result = SettlementService.execute_payout(payout_id)
    if not result.success:
        return {"status": "failed", "error_code": result.error_code}
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

from django.db import transaction

if TYPE_CHECKING:
    from collections.abc import Generator
    from typing import Any

T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """
    Standard result wrapper for service operations.

    Attributes:
        success: Whether the operation succeeded
        data: Result data if successful (None if failed)
        error: Error message if failed (None if successful)
        error_code: Machine-readable error code for client handling
        errors: Field-level errors for validation failures

    Usage:
        return ServiceResult.success(payout)
        return ServiceResult.failure("Payout not found", "PAYOUT_NOT_FOUND")
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None
    errors: dict[str, list[str]] | None = field(default=None)

    @classmethod
    def success(cls, data: T) -> ServiceResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: str | None = None,
        errors: dict[str, list[str]] | None = None,
    ) -> ServiceResult[T]:
        """
        Create a failed result.

        Args:
            error: Human-readable error message
            error_code: Machine-readable error code for client handling
            errors: Field-level errors (for validation failures)
        """
        return cls(
            success=False,
            error=error,
            error_code=error_code,
            errors=errors,
        )

    @classmethod
    def from_exception(cls, exc: Exception, error_code: str | None = None) -> ServiceResult[T]:
        """
        Create a failed result from an exception.

        Application errors keep their own error_code; anything else falls
        back to the upper-cased class name.

        Example:
            try:
                EscrowLedgerService.create_held(...)
            except DuplicateEntryError as e:
                return ServiceResult.from_exception(e)
        """
        code = error_code or getattr(exc, "error_code", None)
        message = getattr(exc, "message", None) or str(exc)
        return cls(
            success=False,
            error=message,
            error_code=code or exc.__class__.__name__.upper(),
        )

    def to_response(self) -> dict[str, Any]:
        """Convert to a dict suitable for a DRF Response body."""
        if self.success:
            return {"success": True, "data": self.data}

        response: dict[str, Any] = {
            "success": False,
            "error": self.error,
        }
        if self.error_code:
            response["error_code"] = self.error_code
        if self.errors:
            response["errors"] = self.errors
        return response

    def __bool__(self) -> bool:
        return self.success


class BaseService:
    """
    Base class for service layer classes.

    Services are stateless collections of classmethods. Each one owns a
    logger named after its class and opens transactions through atomic().

    Usage:
        class DisputeService(BaseService):
            @classmethod
            def open_dispute(cls, entry_id, opened_by, reason):
                with cls.atomic():
                    entry = EscrowEntry.objects.select_for_update().get(pk=entry_id)
                    ...
                cls.get_logger().info("Dispute opened", extra={...})
    """

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """Logger named after the service class, for filtering in logs."""
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    @contextmanager
    def atomic(cls) -> Generator[None, None, None]:
        """
        Execute operations in a database transaction.

        Thin wrapper around Django's transaction.atomic(). Nested use
        creates a savepoint.
        """
        with transaction.atomic():
            yield

    @classmethod
    def handle_exception(
        cls,
        exc: Exception,
        context: str = "",
        log_level: int = logging.ERROR,
    ) -> ServiceResult:
        """
        Log an exception and convert it to a failed ServiceResult.

        Example:
            try:
                gateway.refund(...)
            except GatewayError as e:
                return cls.handle_exception(e, "refund execution")
        """
        logger = cls.get_logger()
        message = f"{context}: {exc}" if context else str(exc)
        logger.log(log_level, message, exc_info=exc)
        return ServiceResult.from_exception(exc)
