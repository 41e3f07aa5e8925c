"""
Tests for gateway webhook handlers.
"""

import uuid

import pytest

from escrow.models import EscrowEntry, Payout
from escrow.services import SettlementService
from escrow.state_machines import EscrowStatus, SettlementStatus
from escrow.tests.factories import (
    EscrowEntryFactory,
    GatewayWebhookEventFactory,
)
from escrow.webhooks.handlers import (
    WEBHOOK_HANDLERS,
    dispatch_webhook,
    register_handler,
)


def capture_event(**payload):
    return GatewayWebhookEventFactory(kind="capture_succeeded", payload=payload)


# =============================================================================
# Dispatch
# =============================================================================


@pytest.mark.django_db
class TestDispatchWebhook:
    def test_unknown_kind_is_success(self):
        event = GatewayWebhookEventFactory(kind="unsupported", gateway_type="charge.refunded")

        result = dispatch_webhook(event)

        assert result.success is True
        assert result.data is None

    def test_registered_handler_receives_event(self, mocker):
        handler = mocker.Mock(return_value="handled")
        mocker.patch.dict(WEBHOOK_HANDLERS, {})
        register_handler("custom_kind")(handler)
        event = GatewayWebhookEventFactory(kind="custom_kind")

        assert dispatch_webhook(event) == "handled"
        handler.assert_called_once_with(event)


# =============================================================================
# capture_succeeded
# =============================================================================


@pytest.mark.django_db
class TestHandleCaptureSucceeded:
    def test_creates_held_entry(self, renter, owner):
        rental_id = str(uuid.uuid4())
        event = capture_event(
            rental_id=rental_id,
            gateway_ref="pi_new_1",
            amount_cents=25000,
            currency="usd",
            payer_id=renter.pk,
            payee_id=owner.pk,
            payee_account="acct_owner_42",
        )

        result = dispatch_webhook(event)

        assert result.success is True
        entry = EscrowEntry.objects.get(rental_id=rental_id)
        assert entry.status == EscrowStatus.HELD
        assert entry.amount_cents == 25000
        assert entry.fee_cents == 2500
        assert entry.payer == renter
        assert entry.payee == owner
        assert entry.payee_gateway_account == "acct_owner_42"

    def test_promotes_pending_entry(self, pending_entry):
        event = capture_event(
            rental_id=str(pending_entry.rental_id),
            gateway_ref=pending_entry.gateway_ref,
            amount_cents=12000,
        )

        result = dispatch_webhook(event)

        assert result.success is True
        entry = EscrowEntry.objects.get(pk=pending_entry.pk)
        assert entry.status == EscrowStatus.HELD
        assert entry.amount_cents == 12000

    def test_repeat_capture_is_noop(self, held_entry):
        event = capture_event(
            rental_id=str(held_entry.rental_id),
            gateway_ref=held_entry.gateway_ref,
            amount_cents=99999,
        )

        result = dispatch_webhook(event)

        assert result.success is True
        assert EscrowEntry.objects.get(pk=held_entry.pk).amount_cents == 10000

    def test_different_capture_for_held_rental_fails(self, held_entry):
        event = capture_event(
            rental_id=str(held_entry.rental_id),
            gateway_ref="pi_someone_else",
            amount_cents=10000,
        )

        result = dispatch_webhook(event)

        assert result.success is False
        assert result.error_code == "DUPLICATE_ENTRY"

    def test_missing_rental_id(self):
        result = dispatch_webhook(capture_event(gateway_ref="pi_1", amount_cents=100))

        assert result.error_code == "MISSING_METADATA"

    def test_unknown_party(self, renter):
        event = capture_event(
            rental_id=str(uuid.uuid4()),
            gateway_ref="pi_1",
            amount_cents=100,
            payer_id=renter.pk,
            payee_id=987654,
        )

        assert dispatch_webhook(event).error_code == "UNKNOWN_PARTY"

    def test_malformed_rental_id(self, renter, owner):
        event = capture_event(
            rental_id="rental-42",
            gateway_ref="pi_1",
            amount_cents=100,
            payer_id=renter.pk,
            payee_id=owner.pk,
        )

        result = dispatch_webhook(event)

        assert result.success is False
        assert result.error_code == "INVALID_METADATA"
        assert not EscrowEntry.objects.exists()

    def test_invalid_amount(self, renter, owner):
        event = capture_event(
            rental_id=str(uuid.uuid4()),
            gateway_ref="pi_1",
            amount_cents=0,
            payer_id=renter.pk,
            payee_id=owner.pk,
        )

        result = dispatch_webhook(event)

        assert result.error_code == "INVALID_AMOUNT"
        assert not EscrowEntry.objects.exists()


# =============================================================================
# capture_failed
# =============================================================================


@pytest.mark.django_db
class TestHandleCaptureFailed:
    def test_cancels_pending_entry(self, pending_entry):
        event = GatewayWebhookEventFactory(
            kind="capture_failed",
            payload={"rental_id": str(pending_entry.rental_id), "reason": "card_declined"},
        )

        result = dispatch_webhook(event)

        assert result.success is True
        assert EscrowEntry.objects.get(pk=pending_entry.pk).status == EscrowStatus.CANCELLED

    def test_held_entry_left_alone(self, held_entry):
        event = GatewayWebhookEventFactory(
            kind="capture_failed",
            payload={"rental_id": str(held_entry.rental_id)},
        )

        assert dispatch_webhook(event).success is True
        assert EscrowEntry.objects.get(pk=held_entry.pk).status == EscrowStatus.HELD

    def test_unknown_rental(self, db):
        event = GatewayWebhookEventFactory(
            kind="capture_failed",
            payload={"rental_id": str(uuid.uuid4())},
        )

        assert dispatch_webhook(event).success is True

    def test_missing_rental_id(self, db):
        event = GatewayWebhookEventFactory(kind="capture_failed", payload={})

        assert dispatch_webhook(event).success is True

    def test_malformed_rental_id(self, db):
        event = GatewayWebhookEventFactory(
            kind="capture_failed",
            payload={"rental_id": "not-a-uuid"},
        )

        assert dispatch_webhook(event).error_code == "INVALID_METADATA"


# =============================================================================
# transfer_succeeded
# =============================================================================


@pytest.mark.django_db
class TestHandleTransferSucceeded:
    def test_completes_payout_by_id(self, pending_payout):
        SettlementService.execute_payout(pending_payout.id)
        event = GatewayWebhookEventFactory(
            kind="transfer_succeeded",
            payload={"payout_id": str(pending_payout.id), "transfer_ref": "tr_fake_1"},
        )

        result = dispatch_webhook(event)

        assert result.success is True
        payout = Payout.objects.get(pk=pending_payout.pk)
        assert payout.status == SettlementStatus.COMPLETED
        assert payout.paid_at is not None

    def test_falls_back_to_transfer_ref(self, pending_payout):
        SettlementService.execute_payout(pending_payout.id)
        event = GatewayWebhookEventFactory(
            kind="transfer_succeeded",
            payload={"transfer_ref": "tr_fake_1"},
        )

        assert dispatch_webhook(event).success is True
        assert Payout.objects.get(pk=pending_payout.pk).status == SettlementStatus.COMPLETED

    def test_unknown_transfer_fails_for_retry(self, db):
        event = GatewayWebhookEventFactory(
            kind="transfer_succeeded",
            payload={"transfer_ref": "tr_unknown"},
        )

        result = dispatch_webhook(event)

        assert result.success is False
        assert result.error_code == "PAYOUT_NOT_FOUND"

    def test_malformed_payout_id(self, db):
        event = GatewayWebhookEventFactory(
            kind="transfer_succeeded",
            payload={"payout_id": "12345", "transfer_ref": "tr_x"},
        )

        result = dispatch_webhook(event)

        assert result.success is False
        assert result.error_code == "INVALID_METADATA"

    def test_failed_payout_not_completed(self, pending_payout):
        SettlementService.apply_result(Payout, pending_payout.id, success=False)
        event = GatewayWebhookEventFactory(
            kind="transfer_succeeded",
            payload={"payout_id": str(pending_payout.id), "transfer_ref": "tr_late"},
        )

        result = dispatch_webhook(event)

        assert result.success is False
        assert Payout.objects.get(pk=pending_payout.pk).status == SettlementStatus.FAILED


@pytest.mark.django_db
def test_cancelled_entry_capture_is_duplicate():
    entry = EscrowEntryFactory()
    entry.cancel()
    entry.save()

    result = dispatch_webhook(
        capture_event(rental_id=str(entry.rental_id), gateway_ref="pi_retry", amount_cents=10000)
    )

    assert result.success is False

