"""
Inbound endpoint for payment gateway events.

The request path only authenticates and records: the signature is checked
by the configured gateway adapter, the event is stored once per event_id,
and process_webhook_event applies it to the ledger out of band.
"""

from __future__ import annotations

import logging

from django.http import HttpRequest, HttpResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from escrow.adapters import get_gateway
from escrow.exceptions import SignatureInvalidError
from escrow.models import GatewayWebhookEvent
from escrow.state_machines import WebhookEventStatus

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Stripe-Signature"


def _queue_event(webhook_event: GatewayWebhookEvent) -> None:
    from escrow.tasks import process_webhook_event

    try:
        process_webhook_event.delay(str(webhook_event.id))
    except Exception:
        # Left PENDING; cleanup_stuck_webhooks hands it to the retry sweep
        logger.exception(
            "Could not queue gateway event",
            extra={"event_id": webhook_event.event_id},
        )


@csrf_exempt
@require_POST
def gateway_webhook(request: HttpRequest) -> HttpResponse:
    """
    Accept a signed gateway event.

    Replies 200 for new and duplicate deliveries alike, and 400 when the
    signature is absent or bad or the event lacks an id or kind.
    """
    signature = request.headers.get(SIGNATURE_HEADER, "")
    if not signature:
        logger.warning("Gateway event without signature header")
        return HttpResponse("Missing signature", status=400)

    try:
        event = get_gateway().verify_webhook(request.body, signature)
    except SignatureInvalidError as e:
        logger.warning("Gateway event signature rejected", extra={"error": str(e)})
        return HttpResponse("Invalid signature", status=400)

    if not event.event_id or not event.kind:
        logger.warning("Gateway event lacks id or kind")
        return HttpResponse("Invalid event", status=400)

    webhook_event, created = GatewayWebhookEvent.objects.get_or_create(
        event_id=event.event_id,
        defaults={
            "kind": event.kind,
            "gateway_type": event.gateway_type,
            "payload": event.data,
            "status": WebhookEventStatus.PENDING,
        },
    )
    logger.info(
        f"Gateway event {event.kind} received",
        extra={"event_id": event.event_id, "duplicate": not created},
    )

    if not created and webhook_event.is_processed:
        return HttpResponse("Already processed", status=200)

    _queue_event(webhook_event)
    return HttpResponse("Accepted", status=200)
