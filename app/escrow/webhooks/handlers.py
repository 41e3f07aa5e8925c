"""
Handlers for normalised gateway webhook events.

Each handler receives a stored GatewayWebhookEvent and returns a
ServiceResult. A failure result marks the event FAILED so that
retry_failed_webhooks re-queues it; expected, permanent conditions
(already captured, capture failure after hold) are logged and reported
as success so they are not retried forever.

Usage:
    from escrow.webhooks.handlers import dispatch_webhook, register_handler

    @register_handler("custom_kind")
    def handle_custom(webhook_event: GatewayWebhookEvent) -> ServiceResult:
        ...

    result = dispatch_webhook(webhook_event)
"""

from __future__ import annotations

import logging
import uuid
from typing import Callable

from django.contrib.auth import get_user_model

from core.exceptions import ValidationError
from core.services import ServiceResult

from escrow.adapters import GatewayEventKind
from escrow.exceptions import (
    DuplicateEntryError,
    EscrowNotFoundError,
    InvalidTransitionError,
)
from escrow.models import EscrowEntry, GatewayWebhookEvent, Payout
from escrow.services import EscrowLedgerService, SettlementService
from escrow.state_machines import EscrowStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Handler Registry
# =============================================================================


WEBHOOK_HANDLERS: dict[str, Callable[[GatewayWebhookEvent], ServiceResult]] = {}


def register_handler(kind: str) -> Callable:
    """Decorator registering a handler for a normalised event kind."""

    def decorator(func: Callable[[GatewayWebhookEvent], ServiceResult]) -> Callable:
        WEBHOOK_HANDLERS[kind] = func
        logger.debug(f"Registered webhook handler for {kind}")
        return func

    return decorator


def dispatch_webhook(webhook_event: GatewayWebhookEvent) -> ServiceResult:
    """
    Route an event to its handler.

    Events with no handler are logged and reported as success.
    """
    handler = WEBHOOK_HANDLERS.get(webhook_event.kind)

    if not handler:
        logger.info(
            f"No handler registered for event kind: {webhook_event.kind}",
            extra={
                "event_id": webhook_event.event_id,
                "gateway_type": webhook_event.gateway_type,
            },
        )
        return ServiceResult.success(None)

    logger.info(
        f"Dispatching {webhook_event.kind} to handler",
        extra={"event_id": webhook_event.event_id},
    )
    return handler(webhook_event)


# =============================================================================
# Capture Handlers
# =============================================================================


@register_handler(GatewayEventKind.CAPTURE_SUCCEEDED)
def handle_capture_succeeded(webhook_event: GatewayWebhookEvent) -> ServiceResult:
    """
    Funds captured: create or promote the rental's entry to HELD.

    A repeat of a capture the ledger already recorded (same gateway
    reference) is a no-op.
    """
    data = webhook_event.payload
    rental_id = data.get("rental_id")
    gateway_ref = data.get("gateway_ref")

    if not rental_id:
        logger.error(
            "capture_succeeded: missing rental_id metadata",
            extra={"event_id": webhook_event.event_id, "gateway_ref": gateway_ref},
        )
        return ServiceResult.failure(
            "Capture event has no rental_id metadata",
            error_code="MISSING_METADATA",
        )

    if _parse_uuid(rental_id) is None:
        return _invalid_metadata(webhook_event, "rental_id", rental_id)

    existing = EscrowEntry.objects.filter(rental_id=rental_id).first()
    if existing is not None and existing.status != EscrowStatus.PENDING:
        if existing.gateway_ref == gateway_ref:
            logger.info(
                "capture_succeeded: capture already recorded",
                extra={"entry_id": str(existing.id), "status": existing.status},
            )
            return ServiceResult.success(existing)

    if existing is not None:
        payer, payee = existing.payer, existing.payee
    else:
        payer = _find_user(data.get("payer_id"))
        payee = _find_user(data.get("payee_id"))
        if payer is None or payee is None:
            logger.error(
                "capture_succeeded: unknown payer or payee",
                extra={
                    "event_id": webhook_event.event_id,
                    "payer_id": data.get("payer_id"),
                    "payee_id": data.get("payee_id"),
                },
            )
            return ServiceResult.failure(
                "Capture event references an unknown payer or payee",
                error_code="UNKNOWN_PARTY",
            )

    try:
        entry = EscrowLedgerService.create_held(
            rental_id=rental_id,
            payer=payer,
            payee=payee,
            amount_cents=int(data.get("amount_cents") or 0),
            currency=data.get("currency") or "usd",
            fee_percentage=data.get("fee_percentage"),
            gateway_ref=gateway_ref,
            payee_gateway_account=data.get("payee_account") or "",
        )
    except DuplicateEntryError as e:
        logger.error(
            "capture_succeeded: rental already has a different escrow entry",
            extra={"rental_id": rental_id, "gateway_ref": gateway_ref},
        )
        return ServiceResult.from_exception(e)
    except ValidationError as e:
        logger.error(
            "capture_succeeded: invalid capture data",
            extra={"rental_id": rental_id, "error": e.message},
        )
        return ServiceResult.from_exception(e)

    return ServiceResult.success(entry)


@register_handler(GatewayEventKind.CAPTURE_FAILED)
def handle_capture_failed(webhook_event: GatewayWebhookEvent) -> ServiceResult:
    """Capture failed: cancel the rental's PENDING entry, if there is one."""
    data = webhook_event.payload
    rental_id = data.get("rental_id")
    reason = data.get("reason") or "Payment failed"

    if not rental_id:
        logger.warning(
            "capture_failed: missing rental_id metadata, nothing to cancel",
            extra={"event_id": webhook_event.event_id},
        )
        return ServiceResult.success(None)

    if _parse_uuid(rental_id) is None:
        return _invalid_metadata(webhook_event, "rental_id", rental_id)

    try:
        entry = EscrowLedgerService.mark_capture_failed(rental_id, reason=reason)
    except EscrowNotFoundError:
        logger.info(
            "capture_failed: no escrow entry for rental",
            extra={"rental_id": rental_id},
        )
        return ServiceResult.success(None)
    except InvalidTransitionError as e:
        # A later successful capture already moved the entry on
        logger.warning(
            "capture_failed: entry is past pending, ignoring",
            extra={"rental_id": rental_id, "details": e.details},
        )
        return ServiceResult.success(None)

    return ServiceResult.success(entry)


def _parse_uuid(value) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _invalid_metadata(webhook_event: GatewayWebhookEvent, field: str, value) -> ServiceResult:
    logger.error(
        f"{webhook_event.kind}: {field} is not a valid id",
        extra={"event_id": webhook_event.event_id, field: str(value)},
    )
    return ServiceResult.failure(
        f"Event metadata {field} is not a valid id: {value}",
        error_code="INVALID_METADATA",
    )


def _find_user(user_id):
    if not user_id:
        return None
    try:
        return get_user_model().objects.filter(pk=user_id).first()
    except (TypeError, ValueError):
        return None


# =============================================================================
# Transfer Handlers
# =============================================================================


@register_handler(GatewayEventKind.TRANSFER_SUCCEEDED)
def handle_transfer_succeeded(webhook_event: GatewayWebhookEvent) -> ServiceResult:
    """
    Transfer confirmed: mark the payout COMPLETED.

    The payout is found by payout_id metadata, falling back to the
    transfer reference stored by the executor. If neither matches yet the
    event fails and is retried, which covers a webhook that overtakes the
    executor's reference write.
    """
    data = webhook_event.payload
    transfer_ref = data.get("transfer_ref")
    payout_id = data.get("payout_id")

    payout = None
    if payout_id:
        if _parse_uuid(payout_id) is None:
            return _invalid_metadata(webhook_event, "payout_id", payout_id)
        payout = Payout.objects.filter(pk=payout_id).first()
    if payout is None and transfer_ref:
        payout = Payout.objects.filter(transaction_ref=transfer_ref).first()

    if payout is None:
        logger.warning(
            "transfer_succeeded: no payout matches transfer",
            extra={"transfer_ref": transfer_ref, "payout_id": payout_id},
        )
        return ServiceResult.failure(
            f"No payout for transfer {transfer_ref}",
            error_code="PAYOUT_NOT_FOUND",
        )

    try:
        payout = SettlementService.apply_result(
            Payout,
            payout.id,
            success=True,
            transaction_ref=transfer_ref,
        )
    except InvalidTransitionError as e:
        logger.error(
            "transfer_succeeded: payout already settled as failed",
            extra={"payout_id": str(payout.id), "transfer_ref": transfer_ref},
        )
        return ServiceResult.from_exception(e)

    return ServiceResult.success(payout)
