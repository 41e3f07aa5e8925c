"""
End-to-end escrow journeys.

Each test drives a rental from the gateway's capture webhook to a
settled payout or refund, calling the Celery tasks directly in place of
a worker. The FakeGateway stands in for Stripe.
"""

import json
import uuid
from datetime import timedelta

import pytest
from django.urls import reverse
from django.utils import timezone
from freezegun import freeze_time
from rest_framework import status

from escrow.models import EscrowEntry, GatewayWebhookEvent, Payout, Refund
from escrow.services import EscrowReportingService
from escrow.state_machines import EscrowStatus, SettlementStatus, TimelineEventKind
from escrow.tasks import process_webhook_event
from escrow.tests.fakes import VALID_SIGNATURE
from escrow.workers import (
    auto_release_entry,
    execute_single_payout,
    execute_single_refund,
    sweep_auto_releases,
)

WEBHOOK_URL = "/api/v1/escrow/webhooks/gateway/"


@pytest.fixture
def deliver(client, mocker):
    """POST a signed gateway event and run the processing task inline."""
    mock_delay = mocker.patch("escrow.tasks.process_webhook_event.delay")

    def _deliver(event_id, kind, data):
        body = {"id": event_id, "kind": kind, "type": kind, "data": data}
        response = client.post(
            WEBHOOK_URL,
            data=json.dumps(body),
            content_type="application/json",
            HTTP_STRIPE_SIGNATURE=VALID_SIGNATURE,
        )
        assert response.status_code == 200
        webhook_event = GatewayWebhookEvent.objects.get(event_id=event_id)
        mock_delay.assert_called_with(str(webhook_event.id))
        return process_webhook_event(str(webhook_event.id))

    return _deliver


def capture(deliver, renter, owner, rental_id, amount_cents=20000):
    result = deliver(
        f"evt_capture_{rental_id}",
        "capture_succeeded",
        {
            "rental_id": str(rental_id),
            "gateway_ref": f"pi_{rental_id.hex[:12]}",
            "amount_cents": amount_cents,
            "currency": "usd",
            "payer_id": renter.pk,
            "payee_id": owner.pk,
            "payee_account": "acct_owner_e2e",
        },
    )
    assert result["status"] == "processed"
    return EscrowEntry.objects.get(rental_id=rental_id)


def entry_url(name, entry):
    return reverse(f"escrow:{name}", kwargs={"entry_id": entry.id})


@pytest.mark.django_db
class TestReleaseJourney:
    def test_capture_confirm_release_and_pay_out(
        self,
        deliver,
        renter,
        owner,
        renter_client,
        owner_client,
        admin_client,
        mock_payout_delay,
        django_capture_on_commit_callbacks,
        fake_gateway,
    ):
        rental_id = uuid.uuid4()
        entry = capture(deliver, renter, owner, rental_id)

        assert entry.status == EscrowStatus.HELD
        assert entry.fee_cents == 2000
        assert EscrowReportingService.total_held("usd") == 20000

        response = renter_client.post(
            entry_url("entry-confirm", entry),
            {"note": "Returned the tent on Sunday"},
            format="json",
        )
        assert response.status_code == status.HTTP_200_OK
        response = owner_client.post(
            entry_url("entry-confirm", entry),
            {"note": "Tent back, poles all there"},
            format="json",
        )
        assert response.data["renter_confirmed"] is True
        assert response.data["owner_confirmed"] is True

        with django_capture_on_commit_callbacks(execute=True):
            response = admin_client.post(
                entry_url("admin-release", entry),
                {"note": "Both sides confirmed the return"},
                format="json",
            )

        assert response.status_code == status.HTTP_200_OK
        assert response.data["status"] == EscrowStatus.RELEASED
        payout = Payout.objects.get(entry=entry)
        assert payout.amount_cents == 18000
        mock_payout_delay.assert_called_once_with(str(payout.id))

        result = execute_single_payout(str(payout.id))

        assert result["status"] == "executed"
        assert result["leg_status"] == SettlementStatus.PROCESSING
        transfer = fake_gateway.calls_for("transfer")[0]
        assert transfer["destination_account"] == "acct_owner_e2e"
        assert transfer["amount_cents"] == 18000

        result = deliver(
            "evt_transfer_1",
            "transfer_succeeded",
            {"payout_id": str(payout.id), "transfer_ref": result["transaction_ref"]},
        )

        assert result["status"] == "processed"
        payout.refresh_from_db()
        assert payout.status == SettlementStatus.COMPLETED
        assert EscrowReportingService.total_held("usd") == 0
        assert EscrowReportingService.owner_lifetime_earnings(owner) == 18000

        kinds = set(entry.timeline.values_list("kind", flat=True))
        assert {
            TimelineEventKind.HELD,
            TimelineEventKind.RENTER_CONFIRMED,
            TimelineEventKind.OWNER_CONFIRMED,
            TimelineEventKind.ADMIN_VERIFIED,
            TimelineEventKind.RELEASED,
            TimelineEventKind.PAYOUT_COMPLETED,
        } <= kinds

    def test_transient_outage_then_success(
        self, deliver, renter, owner, admin_client, fake_gateway
    ):
        from escrow.exceptions import GatewayUnavailableError

        entry = capture(deliver, renter, owner, uuid.uuid4())
        admin_client.post(
            entry_url("admin-release", entry),
            {"note": "Override after phone call", "override_confirmation_gate": True},
            format="json",
        )
        payout = Payout.objects.get(entry=entry)
        fake_gateway.fail_with("transfer", GatewayUnavailableError("Stripe is down"))

        assert execute_single_payout(str(payout.id))["status"] == "deferred"

        with freeze_time(timezone.now() + timedelta(hours=2)):
            result = execute_single_payout(str(payout.id))

        assert result["status"] == "executed"
        keys = [c["idempotency_key"] for c in fake_gateway.calls_for("transfer")]
        assert keys[0].split(":")[2] == "0.1"
        assert keys[1].split(":")[2] == "0.2"


@pytest.mark.django_db
class TestDisputeJourney:
    def test_split_settles_both_legs(
        self,
        deliver,
        renter,
        owner,
        renter_client,
        admin_client,
        mock_payout_delay,
        mock_refund_delay,
        django_capture_on_commit_callbacks,
        fake_gateway,
    ):
        entry = capture(deliver, renter, owner, uuid.uuid4(), amount_cents=10000)

        response = renter_client.post(
            entry_url("entry-dispute", entry),
            {"reason": "The drone arrived with a cracked propeller"},
            format="json",
        )
        assert response.status_code == status.HTTP_201_CREATED

        admin_client.post(entry_url("admin-dispute-review", entry))
        with django_capture_on_commit_callbacks(execute=True):
            response = admin_client.post(
                entry_url("admin-dispute-resolve", entry),
                {
                    "outcome": "split",
                    "resolution": "Propeller damage agreed, renter refunded a share",
                    "refund_amount_cents": 4000,
                    "release_amount_cents": 6000,
                },
                format="json",
            )

        assert response.status_code == status.HTTP_200_OK
        assert response.data["status"] == EscrowStatus.REFUNDED
        payout = Payout.objects.get(entry=entry)
        refund = Refund.objects.get(entry=entry)
        assert payout.amount_cents == 5400
        assert refund.amount_cents == 4000
        mock_payout_delay.assert_called_once_with(str(payout.id))
        mock_refund_delay.assert_called_once_with(str(refund.id))

        assert execute_single_refund(str(refund.id))["status"] == "executed"
        assert execute_single_payout(str(payout.id))["status"] == "executed"

        refund.refresh_from_db()
        assert refund.status == SettlementStatus.COMPLETED
        assert fake_gateway.calls_for("refund")[0]["gateway_ref"] == entry.gateway_ref
        assert Payout.objects.get(pk=payout.pk).status == SettlementStatus.PROCESSING


@pytest.mark.django_db
class TestAutoReleaseJourney:
    def test_window_expiry_releases_and_pays_out(
        self,
        deliver,
        renter,
        owner,
        mocker,
        mock_payout_delay,
        django_capture_on_commit_callbacks,
    ):
        entry = capture(deliver, renter, owner, uuid.uuid4())
        mock_release_delay = mocker.patch("escrow.workers.auto_release.auto_release_entry.delay")

        assert sweep_auto_releases()["queued_count"] == 0

        with freeze_time(timezone.now() + timedelta(days=3, minutes=1)):
            assert sweep_auto_releases()["queued_count"] == 1
            mock_release_delay.assert_called_once_with(str(entry.id))

            with django_capture_on_commit_callbacks(execute=True):
                result = auto_release_entry(str(entry.id))

        assert result["status"] == "released"
        entry.refresh_from_db()
        assert entry.status == EscrowStatus.RELEASED
        assert entry.admin_verified is False
        payout = Payout.objects.get(entry=entry)
        mock_payout_delay.assert_called_once_with(str(payout.id))
        assert execute_single_payout(str(payout.id))["status"] == "executed"
