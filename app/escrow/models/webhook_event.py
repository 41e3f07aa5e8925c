"""
GatewayWebhookEvent model for gateway webhook deduplication.

Every verified webhook delivery is stored here before any ledger call.
The unique ``event_id`` constraint turns at-least-once delivery into
exactly-once processing.

Usage:
    event, created = GatewayWebhookEvent.objects.get_or_create(
        event_id=gateway_event.event_id,
        defaults={"kind": gateway_event.kind, "payload": gateway_event.data},
    )
    if not created and event.is_processed:
        return HttpResponse("Already processed", status=200)
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from escrow.state_machines import WebhookEventStatus


class GatewayWebhookEvent(UUIDPrimaryKeyMixin, BaseModel):
    """
    A verified gateway event and its processing status.

    Processing Flow:
        1. Webhook arrives, signature verified
        2. get_or_create by event_id
        3. Already PROCESSED -> 200, nothing else happens
        4. Otherwise queue process_webhook_event
        5. Task marks PROCESSING, dispatches by kind, marks PROCESSED/FAILED
        6. FAILED events are re-queued by retry_failed_webhooks

    Fields:
        event_id: Gateway event id, unique (deduplication key)
        kind: Normalised kind (capture_succeeded, transfer_succeeded, ...)
        gateway_type: Raw event type from the gateway
        payload: Normalised event data
    """

    event_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Gateway event id - unique constraint for idempotency",
    )

    kind = models.CharField(
        max_length=50,
        db_index=True,
        help_text="Normalised event kind (e.g., 'capture_succeeded')",
    )

    gateway_type = models.CharField(
        max_length=100,
        blank=True,
        default="",
        help_text="Raw gateway event type (e.g., 'payment_intent.succeeded')",
    )

    payload = models.JSONField(default=dict)

    status = models.CharField(
        max_length=20,
        choices=WebhookEventStatus.choices,
        default=WebhookEventStatus.PENDING,
        db_index=True,
    )

    processed_at = models.DateTimeField(null=True, blank=True)
    error_message = models.TextField(null=True, blank=True)
    retry_count = models.PositiveSmallIntegerField(default=0)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Gateway Webhook Event"
        verbose_name_plural = "Gateway Webhook Events"
        indexes = [
            models.Index(
                fields=["status", "retry_count"],
                name="escrow_webhook_status_idx",
            ),
        ]

    def __str__(self) -> str:
        return f"GatewayWebhookEvent({self.event_id}, {self.kind})"

    @property
    def is_processed(self) -> bool:
        return self.status == WebhookEventStatus.PROCESSED

    def mark_processing(self) -> None:
        """Does not save - caller must save after calling."""
        self.status = WebhookEventStatus.PROCESSING
        self.retry_count += 1

    def mark_processed(self) -> None:
        """Does not save - caller must save after calling."""
        self.status = WebhookEventStatus.PROCESSED
        self.processed_at = timezone.now()
        self.error_message = None

    def mark_failed(self, error_message: str) -> None:
        """Does not save - caller must save after calling."""
        self.status = WebhookEventStatus.FAILED
        self.error_message = error_message
