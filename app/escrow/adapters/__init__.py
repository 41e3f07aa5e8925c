"""
Payment gateway adapters for the escrow app.

Usage:
    from escrow.adapters import get_gateway

    gateway = get_gateway()  # settings.ESCROW_GATEWAY_CLASS
    event = gateway.verify_webhook(request.body, signature)
"""

from escrow.adapters.base import (
    CaptureResult,
    GatewayEvent,
    GatewayEventKind,
    IdempotencyKeyGenerator,
    PaymentGateway,
    RefundResult,
    TransferResult,
    backoff_delay,
    get_gateway,
)

__all__ = [
    "CaptureResult",
    "GatewayEvent",
    "GatewayEventKind",
    "IdempotencyKeyGenerator",
    "PaymentGateway",
    "RefundResult",
    "TransferResult",
    "backoff_delay",
    "get_gateway",
]
