"""
Stripe implementation of the escrow PaymentGateway.

All Stripe calls made by the escrow app go through StripeGateway so that
error translation, idempotency and logging are uniform.

Configuration (via settings):
- STRIPE_SECRET_KEY: Stripe API secret key
- STRIPE_WEBHOOK_SECRET: Webhook signing secret
- STRIPE_MAX_RETRIES: Network retries performed by the Stripe client

Event mapping:
    payment_intent.succeeded      -> capture_succeeded
    payment_intent.payment_failed -> capture_failed
    transfer.created              -> transfer_succeeded

PaymentIntents carry the rental in their metadata:
    rental_id, payer_id, payee_id, payee_account (and optional fee_percentage)
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING

import stripe
from django.conf import settings

from escrow.adapters.base import (
    CaptureResult,
    GatewayEvent,
    GatewayEventKind,
    RefundResult,
    TransferResult,
)
from escrow.exceptions import (
    GatewayError,
    GatewayUnavailableError,
    SignatureInvalidError,
)

if TYPE_CHECKING:
    from typing import Any


STRIPE_EVENT_KINDS = {
    "payment_intent.succeeded": GatewayEventKind.CAPTURE_SUCCEEDED,
    "payment_intent.payment_failed": GatewayEventKind.CAPTURE_FAILED,
    "transfer.created": GatewayEventKind.TRANSFER_SUCCEEDED,
}


class StripeGateway:
    """
    PaymentGateway backed by the Stripe API.

    Stateless; safe to instantiate per call from Celery workers.

    Usage:
        gateway = StripeGateway()
        result = gateway.capture("pi_123", idempotency_key="capture:...:1:abcd")
    """

    def __init__(self) -> None:
        stripe.api_key = settings.STRIPE_SECRET_KEY
        stripe.max_network_retries = getattr(settings, "STRIPE_MAX_RETRIES", 2)

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    # =========================================================================
    # Money Movement
    # =========================================================================

    def capture(
        self,
        gateway_ref: str,
        idempotency_key: str,
        amount_cents: int | None = None,
    ) -> CaptureResult:
        """
        Capture a manually-captured PaymentIntent.

        Raises:
            GatewayError: PaymentIntent not capturable (permanent)
            GatewayUnavailableError: Stripe unreachable (transient)
        """
        log_context = {
            "operation": "capture",
            "gateway_ref": gateway_ref,
            "idempotency_key": idempotency_key,
            "amount_cents": amount_cents,
        }
        start_time = time.time()
        self.get_logger().info("Starting Stripe operation", extra=log_context)

        params: dict[str, Any] = {}
        if amount_cents is not None:
            params["amount_to_capture"] = amount_cents

        try:
            intent = stripe.PaymentIntent.capture(
                gateway_ref,
                idempotency_key=idempotency_key,
                **params,
            )
        except stripe.StripeError as e:
            self._handle_stripe_error(e, log_context, start_time)
            raise

        self._log_completed(log_context, start_time, status=intent.status)
        return CaptureResult(
            id=intent.id,
            amount_cents=intent.amount_received or intent.amount,
            currency=intent.currency,
            status=intent.status,
        )

    def transfer(
        self,
        *,
        amount_cents: int,
        currency: str,
        destination_account: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> TransferResult:
        """
        Transfer funds to a connected account.

        Raises:
            GatewayError: Invalid destination or insufficient balance
            GatewayUnavailableError: Stripe unreachable (transient)
        """
        log_context = {
            "operation": "transfer",
            "amount_cents": amount_cents,
            "destination_account": destination_account,
            "idempotency_key": idempotency_key,
        }
        start_time = time.time()
        self.get_logger().info("Starting Stripe operation", extra=log_context)

        try:
            transfer = stripe.Transfer.create(
                amount=amount_cents,
                currency=currency,
                destination=destination_account,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            self._handle_stripe_error(e, log_context, start_time)
            raise

        self._log_completed(log_context, start_time, transfer_id=transfer.id)
        return TransferResult(
            id=transfer.id,
            amount_cents=transfer.amount,
            currency=transfer.currency,
            destination_account=transfer.destination,
            metadata=dict(transfer.metadata or {}),
        )

    def refund(
        self,
        *,
        gateway_ref: str,
        amount_cents: int,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> RefundResult:
        """Refund part or all of a captured PaymentIntent."""
        log_context = {
            "operation": "refund",
            "gateway_ref": gateway_ref,
            "amount_cents": amount_cents,
            "idempotency_key": idempotency_key,
        }
        start_time = time.time()
        self.get_logger().info("Starting Stripe operation", extra=log_context)

        try:
            refund = stripe.Refund.create(
                payment_intent=gateway_ref,
                amount=amount_cents,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            self._handle_stripe_error(e, log_context, start_time)
            raise

        self._log_completed(log_context, start_time, refund_id=refund.id, status=refund.status)
        return RefundResult(
            id=refund.id,
            amount_cents=refund.amount,
            currency=refund.currency,
            status=refund.status,
            metadata=dict(refund.metadata or {}),
        )

    # =========================================================================
    # Webhooks
    # =========================================================================

    def verify_webhook(self, payload: bytes, signature: str) -> GatewayEvent:
        """
        Verify a webhook delivery and normalise it.

        Raises:
            SignatureInvalidError: Bad signature or unparseable payload
        """
        try:
            stripe.Webhook.construct_event(
                payload,
                signature,
                settings.STRIPE_WEBHOOK_SECRET,
            )
        except stripe.SignatureVerificationError as e:
            raise SignatureInvalidError(
                "Invalid webhook signature",
                details={"error": str(e)},
            ) from e
        except ValueError as e:
            raise SignatureInvalidError(
                "Invalid webhook payload",
                details={"error": str(e)},
            ) from e

        return self.parse_event(json.loads(payload))

    @staticmethod
    def parse_event(event: dict[str, Any]) -> GatewayEvent:
        """Map a raw Stripe event dict onto a GatewayEvent."""
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}
        kind = STRIPE_EVENT_KINDS.get(event_type, GatewayEventKind.UNSUPPORTED)

        if kind == GatewayEventKind.CAPTURE_SUCCEEDED:
            data = {
                "gateway_ref": obj.get("id"),
                "amount_cents": obj.get("amount_received") or obj.get("amount"),
                "currency": obj.get("currency", "usd"),
                "rental_id": metadata.get("rental_id"),
                "payer_id": metadata.get("payer_id"),
                "payee_id": metadata.get("payee_id"),
                "payee_account": metadata.get("payee_account", ""),
                "fee_percentage": metadata.get("fee_percentage"),
            }
        elif kind == GatewayEventKind.CAPTURE_FAILED:
            last_error = obj.get("last_payment_error") or {}
            data = {
                "gateway_ref": obj.get("id"),
                "rental_id": metadata.get("rental_id"),
                "reason": last_error.get("message") or "Payment failed",
            }
        elif kind == GatewayEventKind.TRANSFER_SUCCEEDED:
            data = {
                "transfer_ref": obj.get("id"),
                "payout_id": metadata.get("payout_id"),
                "amount_cents": obj.get("amount"),
            }
        else:
            data = {"object_id": obj.get("id")}

        return GatewayEvent(
            event_id=event.get("id", ""),
            kind=kind,
            gateway_type=event_type,
            data=data,
        )

    # =========================================================================
    # Error Handling
    # =========================================================================

    def _log_completed(self, log_context: dict[str, Any], start_time: float, **extra) -> None:
        duration_ms = (time.time() - start_time) * 1000
        self.get_logger().info(
            "Stripe operation completed",
            extra={**log_context, **extra, "duration_ms": duration_ms},
        )

    def _handle_stripe_error(
        self,
        error: stripe.StripeError,
        log_context: dict[str, Any],
        start_time: float,
    ) -> None:
        """
        Translate Stripe exceptions to gateway exceptions.

        Rate limits, connection errors and 5xx responses become
        GatewayUnavailableError; everything else is a permanent GatewayError.
        """
        logger = self.get_logger()
        log_context = {**log_context, "duration_ms": (time.time() - start_time) * 1000}

        if isinstance(error, stripe.CardError):
            logger.warning(
                "Card error from Stripe",
                extra={**log_context, "decline_code": getattr(error, "decline_code", None)},
            )
            raise GatewayError(
                str(error.user_message or error),
                gateway_code=error.code,
            ) from error

        if isinstance(error, stripe.InvalidRequestError):
            logger.error(
                "Invalid request to Stripe",
                extra={**log_context, "stripe_code": error.code},
            )
            raise GatewayError(str(error), gateway_code=error.code) from error

        if isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            raise GatewayUnavailableError(
                "Stripe rate limit exceeded. Please retry.",
                gateway_code="rate_limit",
            ) from error

        if isinstance(error, stripe.APIConnectionError):
            logger.error("Connection error to Stripe", extra=log_context, exc_info=True)
            raise GatewayUnavailableError(
                "Could not connect to Stripe. Please retry.",
                gateway_code="api_connection_error",
            ) from error

        if isinstance(error, stripe.APIError):
            logger.error("Stripe API error", extra=log_context, exc_info=True)
            raise GatewayUnavailableError(
                "Stripe service error. Please retry.",
                gateway_code="api_error",
            ) from error

        if isinstance(error, stripe.AuthenticationError):
            logger.critical("Stripe authentication failed - check API key", extra=log_context)
            raise GatewayError(
                "Stripe authentication failed",
                gateway_code="authentication_error",
            ) from error

        logger.error(
            f"Unexpected error from Stripe: {type(error).__name__}",
            extra=log_context,
            exc_info=True,
        )
        raise GatewayError(
            f"Unexpected Stripe error: {error}",
            gateway_code="unknown_error",
        ) from error
