"""
Settlement service: executes and settles Payout and Refund legs.

A leg is created PENDING inside the ledger transaction that released or
resolved the entry. Execution happens later, from a Celery worker, so a
slow or unavailable gateway never blocks or rolls back a ledger write.

Execution uses the same two-phase pattern for both legs:
1. Phase 1: Move the leg PENDING -> PROCESSING under a row lock, commit
2. Phase 2: Call the gateway OUTSIDE any transaction
3. Phase 3: Store the gateway reference
   - Payout: stays PROCESSING until transfer_succeeded arrives by webhook
   - Refund: completes immediately once the gateway accepts it

Transient gateway failures put the leg back to PENDING with an
exponential next_attempt_at. Once ESCROW_PAYOUT_MAX_ATTEMPTS is reached
the leg is marked FAILED and waits for an administrator retry.

Usage:
    from escrow.services import SettlementService

    result = SettlementService.execute_payout(payout_id)
    if not result.success and result.error_code == "GATEWAY_UNAVAILABLE":
        # deferred; the periodic sweep picks it up after next_attempt_at
        ...
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from core.exceptions import NotFoundError
from core.services import BaseService, ServiceResult

from escrow.adapters import IdempotencyKeyGenerator, backoff_delay, get_gateway
from escrow.exceptions import (
    GatewayError,
    GatewayUnavailableError,
    InvalidTransitionError,
    LockAcquisitionError,
)
from escrow.locks import DistributedLock, compare_and_set
from escrow.models import Payout, Refund, SettlementLeg
from escrow.services.entries import record_event
from escrow.state_machines import SettlementStatus, TimelineEventKind

if TYPE_CHECKING:
    from collections.abc import Callable


# Distributed lock TTL for leg execution (seconds)
SETTLEMENT_LOCK_TTL = 120

# Lock acquisition timeout (seconds)
SETTLEMENT_LOCK_TIMEOUT = 10.0

LEG_EVENT_KINDS = {
    Payout: (TimelineEventKind.PAYOUT_COMPLETED, TimelineEventKind.PAYOUT_FAILED),
    Refund: (TimelineEventKind.REFUND_COMPLETED, TimelineEventKind.REFUND_FAILED),
}


@dataclass
class SettlementExecutionResult:
    """
    Result of one execution attempt.

    Attributes:
        leg: The Payout or Refund instance
        transaction_ref: Gateway reference, if one was obtained
    """

    leg: SettlementLeg
    transaction_ref: str | None = None


def queue_settlement(leg: SettlementLeg) -> None:
    """Queue the executor task for a leg once the current transaction commits."""
    from escrow.workers.payout_executor import (
        execute_single_payout,
        execute_single_refund,
    )

    task = execute_single_payout if isinstance(leg, Payout) else execute_single_refund
    leg_id = str(leg.id)
    transaction.on_commit(lambda: task.delay(leg_id))


class SettlementService(BaseService):
    """
    Executes settlement legs against the payment gateway and applies
    their results.

    Safety Guarantees:
        - Distributed lock prevents concurrent execution of the same leg
        - Conditional PENDING -> PROCESSING update claims the leg exactly once
        - The gateway is never called inside a database transaction
        - Idempotency keys are derived from (leg, retry generation, attempt)
    """

    # =========================================================================
    # Execution
    # =========================================================================

    @classmethod
    def execute_payout(cls, payout_id: uuid.UUID | str) -> ServiceResult[SettlementExecutionResult]:
        """
        Submit a pending payout to the gateway as a transfer.

        Raises:
            NotFoundError: No such payout
            LockAcquisitionError: Another worker is executing this payout
        """
        return cls._execute_with_lock(Payout, payout_id, cls._submit_transfer)

    @classmethod
    def execute_refund(cls, refund_id: uuid.UUID | str) -> ServiceResult[SettlementExecutionResult]:
        """
        Submit a pending refund to the gateway.

        Raises:
            NotFoundError: No such refund
            LockAcquisitionError: Another worker is executing this refund
        """
        return cls._execute_with_lock(Refund, refund_id, cls._submit_refund)

    @classmethod
    def _execute_with_lock(
        cls,
        leg_model: type[SettlementLeg],
        leg_id: uuid.UUID | str,
        submit: Callable[[SettlementLeg], tuple[str, bool]],
    ) -> ServiceResult[SettlementExecutionResult]:
        lock_key = f"escrow:{leg_model._meta.model_name}:execute:{leg_id}"
        try:
            with DistributedLock(
                lock_key, ttl=SETTLEMENT_LOCK_TTL, timeout=SETTLEMENT_LOCK_TIMEOUT
            ):
                return cls._execute_leg(leg_model, leg_id, submit)
        except LockAcquisitionError as e:
            cls.get_logger().warning(
                "Failed to acquire lock for settlement execution",
                extra={"leg_id": str(leg_id), "error": str(e)},
            )
            raise

    @classmethod
    def _execute_leg(
        cls,
        leg_model: type[SettlementLeg],
        leg_id: uuid.UUID | str,
        submit: Callable[[SettlementLeg], tuple[str, bool]],
    ) -> ServiceResult[SettlementExecutionResult]:
        logger = cls.get_logger()
        model_name = leg_model.__name__

        # Phase 1: claim the leg
        with transaction.atomic():
            leg = cls._lock_leg(leg_model, leg_id)

            if leg.status != SettlementStatus.PENDING:
                logger.info(
                    f"{model_name} not pending, nothing to execute",
                    extra={"leg_id": str(leg.id), "current_status": leg.status},
                )
                return ServiceResult.success(
                    SettlementExecutionResult(leg=leg, transaction_ref=leg.transaction_ref)
                )

            if leg.next_attempt_at and leg.next_attempt_at > timezone.now():
                return ServiceResult.failure(
                    f"{model_name} is not due until {leg.next_attempt_at.isoformat()}",
                    error_code="NOT_DUE",
                )

            leg.start()
            compare_and_set(
                leg,
                ["status", "attempts", "next_attempt_at"],
                status=SettlementStatus.PENDING,
            )

        logger.info(
            f"Submitting {model_name.lower()} to gateway",
            extra={
                "leg_id": str(leg.id),
                "entry_id": str(leg.entry_id),
                "amount_cents": leg.amount_cents,
                "attempt": leg.attempts,
            },
        )

        # Phase 2: gateway call, outside any transaction
        try:
            transaction_ref, settled = submit(leg)
        except GatewayUnavailableError as e:
            return cls._defer_or_fail(leg_model, leg.id, e)
        except GatewayError as e:
            logger.error(
                f"Permanent gateway error for {model_name.lower()}",
                extra={"leg_id": str(leg.id), "error": e.message, "gateway_code": e.gateway_code},
            )
            cls.apply_result(leg_model, leg.id, success=False, failure_reason=e.message)
            return ServiceResult.failure(e.message, error_code="GATEWAY_ERROR")

        # Phase 3: store the reference
        with transaction.atomic():
            leg = cls._lock_leg(leg_model, leg.id)

            if leg.status != SettlementStatus.PROCESSING:
                logger.info(
                    f"{model_name} advanced before reference was stored",
                    extra={"leg_id": str(leg.id), "current_status": leg.status},
                )
                return ServiceResult.success(
                    SettlementExecutionResult(leg=leg, transaction_ref=transaction_ref)
                )

            if settled:
                cls._settle_locked(leg, success=True, transaction_ref=transaction_ref)
            else:
                leg.transaction_ref = transaction_ref
                compare_and_set(leg, ["transaction_ref"], status=SettlementStatus.PROCESSING)

        logger.info(
            f"{model_name} submitted",
            extra={
                "leg_id": str(leg.id),
                "transaction_ref": transaction_ref,
                "status": leg.status,
            },
        )
        return ServiceResult.success(
            SettlementExecutionResult(leg=leg, transaction_ref=transaction_ref)
        )

    @classmethod
    def _submit_transfer(cls, payout: Payout) -> tuple[str, bool]:
        if not payout.destination_account:
            raise GatewayError(
                "Payee has no gateway account to receive the payout",
                gateway_code="missing_destination",
            )

        result = get_gateway().transfer(
            amount_cents=payout.amount_cents,
            currency=payout.currency,
            destination_account=payout.destination_account,
            idempotency_key=IdempotencyKeyGenerator.generate(
                "transfer", payout.id, payout.attempts, payout.retry_count
            ),
            metadata={
                "payout_id": str(payout.id),
                "entry_id": str(payout.entry_id),
                "rental_id": str(payout.entry.rental_id),
            },
        )
        return result.id, False

    @classmethod
    def _submit_refund(cls, refund: Refund) -> tuple[str, bool]:
        gateway_ref = refund.entry.gateway_ref
        if not gateway_ref:
            raise GatewayError(
                "Escrow entry has no captured payment to refund",
                gateway_code="missing_capture",
            )

        result = get_gateway().refund(
            gateway_ref=gateway_ref,
            amount_cents=refund.amount_cents,
            idempotency_key=IdempotencyKeyGenerator.generate(
                "refund", refund.id, refund.attempts, refund.retry_count
            ),
            metadata={
                "refund_id": str(refund.id),
                "entry_id": str(refund.entry_id),
                "rental_id": str(refund.entry.rental_id),
            },
        )
        if result.status == "failed":
            raise GatewayError(
                f"Refund {result.id} was rejected by the gateway",
                gateway_code="refund_failed",
            )
        return result.id, True

    @classmethod
    def _defer_or_fail(
        cls,
        leg_model: type[SettlementLeg],
        leg_id: uuid.UUID,
        error: GatewayUnavailableError,
    ) -> ServiceResult[SettlementExecutionResult]:
        logger = cls.get_logger()
        max_attempts = settings.ESCROW_PAYOUT_MAX_ATTEMPTS

        with transaction.atomic():
            leg = cls._lock_leg(leg_model, leg_id)
            if leg.status != SettlementStatus.PROCESSING:
                return ServiceResult.failure(
                    f"{leg_model.__name__} changed while the gateway call was in flight",
                    error_code="STATE_CHANGED",
                )

            if leg.attempts >= max_attempts:
                reason = f"Gateway unavailable after {leg.attempts} attempts: {error.message}"
                cls._settle_locked(leg, success=False, failure_reason=reason)
                logger.error(
                    "Settlement attempts exhausted, needs administrator retry",
                    extra={"leg_id": str(leg.id), "attempts": leg.attempts},
                )
                return ServiceResult.failure(reason, error_code="ATTEMPTS_EXHAUSTED")

            delay = backoff_delay(
                leg.attempts - 1,
                base=settings.ESCROW_PAYOUT_BACKOFF_BASE_SECONDS,
                max_delay=settings.ESCROW_PAYOUT_BACKOFF_MAX_SECONDS,
            )
            leg.defer(timezone.now() + timedelta(seconds=delay), error.message)
            compare_and_set(
                leg,
                ["status", "next_attempt_at", "failure_reason"],
                status=SettlementStatus.PROCESSING,
            )

        logger.warning(
            "Gateway unavailable, settlement deferred",
            extra={
                "leg_id": str(leg.id),
                "attempt": leg.attempts,
                "retry_in_seconds": round(delay, 1),
                "gateway_code": error.gateway_code,
            },
        )
        return ServiceResult.failure(error.message, error_code="GATEWAY_UNAVAILABLE")

    # =========================================================================
    # Results
    # =========================================================================

    @classmethod
    def apply_result(
        cls,
        leg_model: type[SettlementLeg],
        leg_id: uuid.UUID | str,
        success: bool,
        transaction_ref: str | None = None,
        failure_reason: str | None = None,
    ) -> SettlementLeg:
        """
        Settle a leg as COMPLETED or FAILED.

        Applying the same result twice is a no-op.

        Raises:
            NotFoundError: No such leg
            InvalidTransitionError: Leg already settled the other way
        """
        with transaction.atomic():
            leg = cls._lock_leg(leg_model, leg_id)
            target = SettlementStatus.COMPLETED if success else SettlementStatus.FAILED

            if leg.status == target:
                cls.get_logger().info(
                    f"{leg_model.__name__} already {target}",
                    extra={"leg_id": str(leg.id)},
                )
                return leg

            if leg.status not in (SettlementStatus.PENDING, SettlementStatus.PROCESSING):
                raise InvalidTransitionError(
                    f"Cannot mark {leg_model.__name__.lower()} {leg.status} as {target}",
                    details={
                        "leg_id": str(leg.id),
                        "current_status": leg.status,
                        "action": f"mark_{target}",
                    },
                )

            cls._settle_locked(
                leg,
                success=success,
                transaction_ref=transaction_ref,
                failure_reason=failure_reason,
            )
        return leg

    @classmethod
    def _settle_locked(
        cls,
        leg: SettlementLeg,
        success: bool,
        transaction_ref: str | None = None,
        failure_reason: str | None = None,
    ) -> None:
        source = leg.status
        completed_kind, failed_kind = LEG_EVENT_KINDS[type(leg)]

        if success:
            leg.complete(transaction_ref)
        else:
            leg.fail(failure_reason or "Settlement failed")

        compare_and_set(
            leg,
            ["status", "transaction_ref", "failure_reason", leg.settled_at_field],
            status=source,
        )

        note = (leg.transaction_ref or "") if success else leg.failure_reason
        record_event(leg.entry, completed_kind if success else failed_kind, note=note)

        log = cls.get_logger().info if success else cls.get_logger().error
        log(
            f"{type(leg).__name__} {leg.status}",
            extra={
                "leg_id": str(leg.id),
                "entry_id": str(leg.entry_id),
                "transaction_ref": leg.transaction_ref,
                "failure_reason": leg.failure_reason,
            },
        )

    # =========================================================================
    # Administration & Recovery
    # =========================================================================

    @classmethod
    def retry_failed(
        cls,
        leg_model: type[SettlementLeg],
        leg_id: uuid.UUID | str,
        admin,
        note: str = "",
    ) -> SettlementLeg:
        """
        Put a FAILED leg back to PENDING and queue it for execution.

        A payout picks up the payee's current gateway account, so fixing
        the account and retrying is enough after a missing-destination
        failure.

        Raises:
            NotFoundError: No such leg
            InvalidTransitionError: Leg is not FAILED
        """
        with transaction.atomic():
            leg = cls._lock_leg(leg_model, leg_id)
            if leg.status != SettlementStatus.FAILED:
                raise InvalidTransitionError(
                    f"Only failed settlements can be retried (current: {leg.status})",
                    details={
                        "leg_id": str(leg.id),
                        "current_status": leg.status,
                        "action": "retry",
                    },
                )

            fields = ["status", "attempts", "next_attempt_at", "retry_count"]
            leg.requeue()
            if isinstance(leg, Payout) and leg.entry.payee_gateway_account:
                leg.destination_account = leg.entry.payee_gateway_account
                fields.append("destination_account")
            compare_and_set(leg, fields, status=SettlementStatus.FAILED)

            record_event(
                leg.entry,
                TimelineEventKind.SETTLEMENT_RETRIED,
                actor=admin,
                note=note or f"{leg_model.__name__} {leg.id} retried",
            )
            queue_settlement(leg)

        cls.get_logger().info(
            "Settlement requeued by administrator",
            extra={"leg_id": str(leg.id), "admin_id": getattr(admin, "pk", None)},
        )
        return leg

    @classmethod
    def due_ids(cls, leg_model: type[SettlementLeg], limit: int = 100) -> list:
        """Ids of PENDING legs whose next attempt time has come."""
        now = timezone.now()
        return list(
            leg_model.objects.filter(status=SettlementStatus.PENDING)
            .filter(Q(next_attempt_at__isnull=True) | Q(next_attempt_at__lte=now))
            .order_by("created_at")
            .values_list("id", flat=True)[:limit]
        )

    @classmethod
    def recover_stuck(cls, leg_model: type[SettlementLeg], limit: int = 100) -> int:
        """
        Return legs stuck in PROCESSING without a gateway reference to PENDING.

        Such a leg means a worker died between claiming it and storing
        the gateway's answer. The attempt counter is rolled back so the
        retry reuses the same idempotency key and the gateway deduplicates
        the call if it did go through.

        Returns:
            Number of legs recovered
        """
        threshold = timezone.now() - timedelta(minutes=settings.ESCROW_PAYOUT_STUCK_MINUTES)
        stuck_ids = list(
            leg_model.objects.filter(
                status=SettlementStatus.PROCESSING,
                transaction_ref__isnull=True,
                updated_at__lt=threshold,
            ).values_list("id", flat=True)[:limit]
        )

        recovered = 0
        for leg_id in stuck_ids:
            with transaction.atomic():
                leg = cls._lock_leg(leg_model, leg_id)
                if leg.status != SettlementStatus.PROCESSING or leg.transaction_ref:
                    continue
                leg.defer(timezone.now(), "Recovered from interrupted execution")
                leg.attempts = max(leg.attempts - 1, 0)
                compare_and_set(
                    leg,
                    ["status", "next_attempt_at", "failure_reason", "attempts"],
                    status=SettlementStatus.PROCESSING,
                )
                recovered += 1

            cls.get_logger().warning(
                "Recovered stuck settlement",
                extra={"leg_id": str(leg_id), "model": leg_model.__name__},
            )
        return recovered

    @classmethod
    def _lock_leg(cls, leg_model: type[SettlementLeg], leg_id) -> SettlementLeg:
        try:
            return (
                leg_model.objects.select_for_update()
                .select_related("entry")
                .get(pk=leg_id)
            )
        except leg_model.DoesNotExist as e:
            raise NotFoundError(
                f"{leg_model.__name__} {leg_id} not found",
                error_code="SETTLEMENT_NOT_FOUND",
                details={"leg_id": str(leg_id)},
            ) from e
