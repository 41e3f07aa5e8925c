"""
Gateway-agnostic types for the escrow payment gateway.

The ledger never talks to a payment provider directly. It calls an object
satisfying PaymentGateway, chosen by settings.ESCROW_GATEWAY_CLASS, and
receives provider events already normalised into GatewayEvent.

Usage:
    from escrow.adapters import get_gateway, IdempotencyKeyGenerator

    gateway = get_gateway()
    result = gateway.transfer(
        amount_cents=9000,
        currency="usd",
        destination_account="acct_123",
        idempotency_key=IdempotencyKeyGenerator.generate("transfer", payout.id),
        metadata={"payout_id": str(payout.id)},
    )
"""

from __future__ import annotations

import hashlib
import random
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from django.conf import settings
from django.utils.module_loading import import_string

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Event Kinds
# =============================================================================


class GatewayEventKind:
    """Normalised kinds of gateway events the escrow app reacts to."""

    CAPTURE_SUCCEEDED = "capture_succeeded"
    CAPTURE_FAILED = "capture_failed"
    TRANSFER_SUCCEEDED = "transfer_succeeded"
    UNSUPPORTED = "unsupported"


# =============================================================================
# Data Types
# =============================================================================


@dataclass
class GatewayEvent:
    """
    A verified, normalised gateway event.

    Attributes:
        event_id: Provider event id (deduplication key)
        kind: One of GatewayEventKind
        gateway_type: Raw provider event type
        data: Normalised fields for the handler (rental_id, gateway_ref, ...)
    """

    event_id: str
    kind: str
    gateway_type: str = ""
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class CaptureResult:
    """Result of capturing an authorised payment."""

    id: str
    amount_cents: int
    currency: str
    status: str


@dataclass
class TransferResult:
    """
    Result of a transfer to a payee account.

    Attributes:
        id: Provider transfer id (e.g., tr_xxx)
        amount_cents: Amount transferred
        currency: Currency code
        destination_account: Payee account id
    """

    id: str
    amount_cents: int
    currency: str
    destination_account: str
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class RefundResult:
    """Result of a refund against a captured payment."""

    id: str
    amount_cents: int
    currency: str
    status: str
    metadata: dict[str, str] = field(default_factory=dict)


# =============================================================================
# Gateway Protocol
# =============================================================================


@runtime_checkable
class PaymentGateway(Protocol):
    """
    Capabilities the escrow app needs from a payment provider.

    Implementations raise GatewayUnavailableError for transient failures
    and GatewayError for permanent ones, and SignatureInvalidError when a
    webhook payload does not verify.
    """

    def capture(
        self,
        gateway_ref: str,
        idempotency_key: str,
        amount_cents: int | None = None,
    ) -> CaptureResult: ...

    def transfer(
        self,
        *,
        amount_cents: int,
        currency: str,
        destination_account: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> TransferResult: ...

    def refund(
        self,
        *,
        gateway_ref: str,
        amount_cents: int,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> RefundResult: ...

    def verify_webhook(self, payload: bytes, signature: str) -> GatewayEvent: ...


def get_gateway() -> PaymentGateway:
    """Instantiate the gateway configured in settings.ESCROW_GATEWAY_CLASS."""
    gateway_class = import_string(settings.ESCROW_GATEWAY_CLASS)
    return gateway_class()


# =============================================================================
# Idempotency & Retry Helpers
# =============================================================================


class IdempotencyKeyGenerator:
    """
    Generate idempotency keys for gateway calls.

    Format: "{operation}:{entity_id}:{generation}.{attempt}:{hash}"

    The same (operation, entity, generation, attempt) always yields the same
    key, so a repeated call after a lost response is deduplicated by the
    provider. The generation changes when an administrator retries a failed
    leg, so the retry is never answered with the cached failure.

    Example:
        key = IdempotencyKeyGenerator.generate("transfer", payout.id, payout.attempts)
        # "transfer:550e8400-e29b-41d4-a716-446655440000:0.1:a1b2c3d4"
    """

    @staticmethod
    def generate(
        operation: str,
        entity_id: uuid.UUID | str,
        attempt: int = 1,
        generation: int = 0,
    ) -> str:
        entity_str = str(entity_id)
        counter = f"{generation}.{attempt}"
        hash_input = f"{operation}:{entity_str}:{counter}:{settings.SECRET_KEY}"
        short_hash = hashlib.sha256(hash_input.encode()).hexdigest()[:8]

        return f"{operation}:{entity_str}:{counter}:{short_hash}"


def backoff_delay(attempt: int, base: float = 1.0, max_delay: float = 60.0) -> float:
    """
    Calculate exponential backoff delay with jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        base: Base delay in seconds
        max_delay: Maximum delay in seconds

    Returns:
        Delay in seconds plus 0-25% jitter

    Example:
        # Attempt 0: 1.0 - 1.25 seconds
        # Attempt 2: 4.0 - 5.0 seconds
        delay = backoff_delay(attempt=2)
    """
    delay = min(base * (2**attempt), max_delay)
    jitter = delay * random.uniform(0, 0.25)
    return delay + jitter
