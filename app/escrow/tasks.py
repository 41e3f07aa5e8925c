"""
Celery tasks that drain the gateway webhook inbox.

A verified webhook is stored as a GatewayWebhookEvent by the endpoint and
handed to process_webhook_event. The two beat tasks keep the inbox moving:
retry_failed_webhooks re-queues FAILED rows and cleanup_stuck_webhooks
fails rows that never left PENDING or PROCESSING.

Auto-release and settlement tasks live in escrow.workers and are imported
at the bottom so Celery autodiscover registers them.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from uuid import UUID

from celery import shared_task
from django.db import transaction
from django.utils import timezone

from escrow.models import GatewayWebhookEvent
from escrow.state_machines import WebhookEventStatus

logger = logging.getLogger(__name__)


MAX_WEBHOOK_RETRIES = 5
STUCK_PROCESSING_THRESHOLD_MINUTES = 30
RETRY_BATCH_SIZE = 100


def _fail_event(webhook_event: GatewayWebhookEvent, error_message: str) -> None:
    webhook_event.mark_failed(error_message)
    webhook_event.save()


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": MAX_WEBHOOK_RETRIES},
    acks_late=True,
)
def process_webhook_event(self, webhook_event_id: str) -> dict:
    """
    Apply one stored gateway event to the ledger.

    A handler failure leaves the event FAILED for retry_failed_webhooks to
    pick up. A raised exception also fails the event and is re-raised so
    Celery backs off and runs the task again.
    """
    from escrow.webhooks.handlers import dispatch_webhook

    webhook_event_id = str(webhook_event_id)
    try:
        webhook_event = GatewayWebhookEvent.objects.get(id=UUID(webhook_event_id))
    except (GatewayWebhookEvent.DoesNotExist, ValueError):
        logger.error("Unknown gateway event id", extra={"webhook_event_id": webhook_event_id})
        return {"status": "not_found", "webhook_event_id": webhook_event_id}

    log_extra = {"webhook_event_id": webhook_event_id, "event_id": webhook_event.event_id}

    if webhook_event.is_processed:
        logger.info("Gateway event already applied", extra=log_extra)
        return {"status": "already_processed", "webhook_event_id": webhook_event_id}

    webhook_event.mark_processing()
    webhook_event.save()
    logger.info(
        f"Applying gateway event {webhook_event.kind}",
        extra={**log_extra, "attempt": webhook_event.retry_count},
    )

    try:
        with transaction.atomic():
            result = dispatch_webhook(webhook_event)
    except Exception as e:
        error_message = f"{type(e).__name__}: {e}"
        _fail_event(webhook_event, error_message)
        logger.exception("Gateway event handler raised", extra=log_extra)
        raise

    if not result.success:
        error_message = result.error or "Handler returned failure"
        _fail_event(webhook_event, error_message)
        logger.warning(
            f"Gateway event rejected: {error_message}",
            extra={**log_extra, "error_code": result.error_code},
        )
        return {
            "status": "handler_failed",
            "webhook_event_id": webhook_event_id,
            "error": error_message,
        }

    webhook_event.mark_processed()
    webhook_event.save()
    logger.info("Gateway event applied", extra=log_extra)
    return {
        "status": "processed",
        "webhook_event_id": webhook_event_id,
        "event_id": webhook_event.event_id,
    }


@shared_task
def retry_failed_webhooks() -> dict:
    """Queue the oldest FAILED events that still have attempts left."""
    candidates = GatewayWebhookEvent.objects.filter(
        status=WebhookEventStatus.FAILED,
        retry_count__lt=MAX_WEBHOOK_RETRIES,
    ).order_by("created_at")[:RETRY_BATCH_SIZE]

    queued_count = 0
    for webhook_event in candidates:
        try:
            process_webhook_event.delay(str(webhook_event.id))
        except Exception:
            logger.exception(
                "Could not re-queue gateway event",
                extra={"webhook_event_id": str(webhook_event.id)},
            )
            continue
        queued_count += 1

    logger.info("Re-queued failed gateway events", extra={"queued_count": queued_count})
    return {"queued_count": queued_count}


@shared_task
def cleanup_stuck_webhooks() -> dict:
    """
    Fail events idle in PENDING or PROCESSING past the threshold.

    PENDING means the endpoint stored the event but never queued it;
    PROCESSING means the worker died mid-handler. Either way the row becomes
    eligible for retry_failed_webhooks.
    """
    threshold = timezone.now() - timedelta(minutes=STUCK_PROCESSING_THRESHOLD_MINUTES)
    stuck = GatewayWebhookEvent.objects.filter(
        status__in=[WebhookEventStatus.PENDING, WebhookEventStatus.PROCESSING],
        updated_at__lt=threshold,
    )

    reset_count = 0
    for webhook_event in stuck:
        _fail_event(webhook_event, f"Idle in {webhook_event.status} past threshold")
        reset_count += 1
        logger.warning(
            "Failed idle gateway event",
            extra={"webhook_event_id": str(webhook_event.id), "event_id": webhook_event.event_id},
        )

    return {"reset_count": reset_count}


from escrow.workers import (  # noqa: E402, F401
    auto_release_entry,
    execute_single_payout,
    execute_single_refund,
    process_pending_payouts,
    recover_stuck_payouts,
    sweep_auto_releases,
)
