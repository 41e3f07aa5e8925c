"""
Tests for escrow webhook Celery tasks.
"""

from datetime import timedelta
from unittest.mock import patch
from uuid import uuid4

import pytest
from django.utils import timezone
from freezegun import freeze_time

from escrow.models import EscrowEntry, GatewayWebhookEvent
from escrow.state_machines import EscrowStatus, WebhookEventStatus
from escrow.tasks import (
    MAX_WEBHOOK_RETRIES,
    cleanup_stuck_webhooks,
    process_webhook_event,
    retry_failed_webhooks,
)
from escrow.tests.factories import GatewayWebhookEventFactory


@pytest.mark.django_db
class TestProcessWebhookEvent:
    def test_processes_capture(self, pending_entry):
        event = GatewayWebhookEventFactory(
            payload={
                "rental_id": str(pending_entry.rental_id),
                "gateway_ref": pending_entry.gateway_ref,
                "amount_cents": 10000,
            }
        )

        result = process_webhook_event(str(event.id))

        assert result["status"] == "processed"
        event.refresh_from_db()
        assert event.status == WebhookEventStatus.PROCESSED
        assert event.processed_at is not None
        assert event.retry_count == 1
        assert EscrowEntry.objects.get(pk=pending_entry.pk).status == EscrowStatus.HELD

    def test_already_processed_skipped(self):
        event = GatewayWebhookEventFactory(status=WebhookEventStatus.PROCESSED)

        with patch("escrow.webhooks.handlers.dispatch_webhook") as mock_dispatch:
            result = process_webhook_event(str(event.id))

        assert result["status"] == "already_processed"
        mock_dispatch.assert_not_called()

    def test_handler_failure_marks_failed(self):
        event = GatewayWebhookEventFactory(kind="transfer_succeeded", payload={"transfer_ref": "tr_x"})

        result = process_webhook_event(str(event.id))

        assert result["status"] == "handler_failed"
        event.refresh_from_db()
        assert event.status == WebhookEventStatus.FAILED
        assert "tr_x" in event.error_message

    def test_malformed_metadata_fails_without_raising(self):
        event = GatewayWebhookEventFactory(payload={"rental_id": "rental-42", "amount_cents": 100})

        result = process_webhook_event(str(event.id))

        assert result["status"] == "handler_failed"
        event.refresh_from_db()
        assert event.status == WebhookEventStatus.FAILED

    def test_exception_marks_failed_and_reraises(self):
        event = GatewayWebhookEventFactory()

        with patch(
            "escrow.webhooks.handlers.dispatch_webhook",
            side_effect=RuntimeError("database hiccup"),
        ):
            with pytest.raises(RuntimeError):
                process_webhook_event(str(event.id))

        event.refresh_from_db()
        assert event.status == WebhookEventStatus.FAILED
        assert event.error_message == "RuntimeError: database hiccup"

    def test_not_found(self, db):
        assert process_webhook_event(str(uuid4()))["status"] == "not_found"


@pytest.mark.django_db
class TestRetryFailedWebhooks:
    def test_requeues_failed_with_retries_left(self):
        retryable = GatewayWebhookEventFactory(status=WebhookEventStatus.FAILED, retry_count=1)
        GatewayWebhookEventFactory(
            status=WebhookEventStatus.FAILED, retry_count=MAX_WEBHOOK_RETRIES
        )
        GatewayWebhookEventFactory(status=WebhookEventStatus.PROCESSED)

        with patch("escrow.tasks.process_webhook_event") as mock_task:
            result = retry_failed_webhooks()

        assert result == {"queued_count": 1}
        mock_task.delay.assert_called_once_with(str(retryable.id))


@pytest.mark.django_db
class TestCleanupStuckWebhooks:
    def test_resets_old_pending_and_processing(self):
        pending = GatewayWebhookEventFactory(status=WebhookEventStatus.PENDING)
        processing = GatewayWebhookEventFactory(status=WebhookEventStatus.PROCESSING)
        processed = GatewayWebhookEventFactory(status=WebhookEventStatus.PROCESSED)

        with freeze_time(timezone.now() + timedelta(minutes=31)):
            result = cleanup_stuck_webhooks()

        assert result == {"reset_count": 2}
        for event in (pending, processing):
            event.refresh_from_db()
            assert event.status == WebhookEventStatus.FAILED
        processed.refresh_from_db()
        assert processed.status == WebhookEventStatus.PROCESSED

    def test_recent_events_untouched(self):
        GatewayWebhookEventFactory(status=WebhookEventStatus.PROCESSING)

        assert cleanup_stuck_webhooks() == {"reset_count": 0}
        assert GatewayWebhookEvent.objects.get().status == WebhookEventStatus.PROCESSING
