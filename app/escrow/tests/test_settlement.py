"""
Tests for SettlementService: executing payouts and refunds against the
gateway, applying results, administrator retries and stuck recovery.
"""

import uuid
from datetime import timedelta

import pytest
from django.utils import timezone
from freezegun import freeze_time

from core.exceptions import NotFoundError
from escrow.exceptions import (
    GatewayError,
    GatewayUnavailableError,
    InvalidTransitionError,
    LockAcquisitionError,
)
from escrow.locks import compare_and_set
from escrow.models import Payout, Refund
from escrow.services import SettlementService
from escrow.state_machines import SettlementStatus, TimelineEventKind
from escrow.tests.factories import PayoutFactory, RefundFactory


def fresh(leg):
    return type(leg).objects.get(pk=leg.pk)


@pytest.fixture
def failed_payout(pending_payout, fake_gateway):
    fake_gateway.fail_with("transfer", GatewayError("Account closed"))
    SettlementService.execute_payout(pending_payout.id)
    return fresh(pending_payout)


# =============================================================================
# Payout Execution
# =============================================================================


@pytest.mark.django_db
class TestExecutePayout:
    def test_submits_transfer_and_waits_for_confirmation(self, pending_payout, fake_gateway):
        result = SettlementService.execute_payout(pending_payout.id)

        assert result.success is True
        assert result.data.transaction_ref == "tr_fake_1"
        payout = fresh(pending_payout)
        assert payout.status == SettlementStatus.PROCESSING
        assert payout.transaction_ref == "tr_fake_1"
        assert payout.attempts == 1

        call = fake_gateway.calls_for("transfer")[0]
        assert call["amount_cents"] == 9000
        assert call["destination_account"] == "acct_owner_test"
        assert call["idempotency_key"].startswith(f"transfer:{payout.id}:0.1:")
        assert call["metadata"]["payout_id"] == str(payout.id)

    def test_transient_failure_defers_with_backoff(self, pending_payout, fake_gateway):
        fake_gateway.fail_with("transfer", GatewayUnavailableError("Stripe timeout"))

        result = SettlementService.execute_payout(pending_payout.id)

        assert result.success is False
        assert result.error_code == "GATEWAY_UNAVAILABLE"
        payout = fresh(pending_payout)
        assert payout.status == SettlementStatus.PENDING
        assert payout.attempts == 1
        assert payout.failure_reason == "Stripe timeout"
        # base 60s, up to 25% jitter
        delay = (payout.next_attempt_at - timezone.now()).total_seconds()
        assert 55 <= delay <= 76

    def test_deferred_payout_not_executed_before_due(self, pending_payout, fake_gateway):
        fake_gateway.fail_with("transfer", GatewayUnavailableError("Stripe timeout"))
        SettlementService.execute_payout(pending_payout.id)

        result = SettlementService.execute_payout(pending_payout.id)

        assert result.error_code == "NOT_DUE"
        assert len(fake_gateway.calls_for("transfer")) == 1

    def test_attempts_exhausted_marks_failed(self, settings, pending_payout, fake_gateway):
        settings.ESCROW_PAYOUT_MAX_ATTEMPTS = 2
        fake_gateway.fail_with(
            "transfer",
            GatewayUnavailableError("down"),
            GatewayUnavailableError("still down"),
        )

        SettlementService.execute_payout(pending_payout.id)
        with freeze_time(timezone.now() + timedelta(hours=2)):
            result = SettlementService.execute_payout(pending_payout.id)

        assert result.error_code == "ATTEMPTS_EXHAUSTED"
        payout = fresh(pending_payout)
        assert payout.status == SettlementStatus.FAILED
        assert payout.attempts == 2
        assert "still down" in payout.failure_reason

    def test_permanent_error_marks_failed(self, failed_payout):
        assert failed_payout.status == SettlementStatus.FAILED
        assert failed_payout.failure_reason == "Account closed"
        assert failed_payout.entry.timeline.filter(kind=TimelineEventKind.PAYOUT_FAILED).exists()

    def test_missing_destination_fails_without_gateway_call(self, fake_gateway):
        payout = PayoutFactory(destination_account="")

        result = SettlementService.execute_payout(payout.id)

        assert result.error_code == "GATEWAY_ERROR"
        assert fresh(payout).status == SettlementStatus.FAILED
        assert fake_gateway.calls_for("transfer") == []

    def test_non_pending_payout_is_left_alone(self, pending_payout, fake_gateway):
        SettlementService.execute_payout(pending_payout.id)

        result = SettlementService.execute_payout(pending_payout.id)

        assert result.success is True
        assert len(fake_gateway.calls_for("transfer")) == 1

    def test_lock_held_elsewhere(self, pending_payout, mock_redis, mocker, fake_gateway):
        mocker.patch("escrow.services.payouts.SETTLEMENT_LOCK_TIMEOUT", 0.1)
        mock_redis.set.return_value = False

        with pytest.raises(LockAcquisitionError):
            SettlementService.execute_payout(pending_payout.id)

        assert fake_gateway.calls == []
        assert fresh(pending_payout).status == SettlementStatus.PENDING

    def test_unknown_payout(self):
        with pytest.raises(NotFoundError):
            SettlementService.execute_payout(uuid.uuid4())


# =============================================================================
# Refund Execution
# =============================================================================


@pytest.mark.django_db
class TestExecuteRefund:
    def test_refund_completes_immediately(self, fake_gateway):
        refund = RefundFactory(amount_cents=4000)

        result = SettlementService.execute_refund(refund.id)

        assert result.success is True
        refund = fresh(refund)
        assert refund.status == SettlementStatus.COMPLETED
        assert refund.transaction_ref == "re_fake_1"
        assert refund.refunded_at is not None
        call = fake_gateway.calls_for("refund")[0]
        assert call["gateway_ref"] == refund.entry.gateway_ref
        assert call["amount_cents"] == 4000
        assert refund.entry.timeline.filter(kind=TimelineEventKind.REFUND_COMPLETED).exists()

    def test_rejected_refund_marks_failed(self, fake_gateway):
        fake_gateway.refund_status = "failed"
        refund = RefundFactory()

        result = SettlementService.execute_refund(refund.id)

        assert result.error_code == "GATEWAY_ERROR"
        assert fresh(refund).status == SettlementStatus.FAILED

    def test_entry_without_capture_fails(self, fake_gateway):
        refund = RefundFactory(entry__gateway_ref=None)

        SettlementService.execute_refund(refund.id)

        assert fresh(refund).status == SettlementStatus.FAILED
        assert fake_gateway.calls_for("refund") == []


# =============================================================================
# Results
# =============================================================================


@pytest.mark.django_db
class TestApplyResult:
    def test_completing_twice_is_noop(self, pending_payout):
        SettlementService.apply_result(Payout, pending_payout.id, success=True, transaction_ref="tr_1")
        payout = SettlementService.apply_result(
            Payout, pending_payout.id, success=True, transaction_ref="tr_1"
        )

        assert payout.status == SettlementStatus.COMPLETED
        assert payout.entry.timeline.filter(kind=TimelineEventKind.PAYOUT_COMPLETED).count() == 1

    def test_completed_leg_cannot_fail(self, pending_payout):
        SettlementService.apply_result(Payout, pending_payout.id, success=True)

        with pytest.raises(InvalidTransitionError):
            SettlementService.apply_result(Payout, pending_payout.id, success=False)

    def test_failure_reason_recorded(self):
        refund = RefundFactory()

        leg = SettlementService.apply_result(Refund, refund.id, success=False, failure_reason="Charge disputed")

        assert leg.status == SettlementStatus.FAILED
        assert leg.failure_reason == "Charge disputed"


# =============================================================================
# Administration & Recovery
# =============================================================================


@pytest.mark.django_db
class TestRetryFailed:
    def test_requeues_with_new_idempotency_generation(
        self, failed_payout, admin_user, fake_gateway, mock_payout_delay, django_capture_on_commit_callbacks
    ):
        with django_capture_on_commit_callbacks(execute=True):
            leg = SettlementService.retry_failed(Payout, failed_payout.id, admin_user, note="Owner fixed account")

        assert leg.status == SettlementStatus.PENDING
        assert leg.attempts == 0
        assert leg.retry_count == 1
        mock_payout_delay.assert_called_once_with(str(leg.id))
        event = leg.entry.timeline.get(kind=TimelineEventKind.SETTLEMENT_RETRIED)
        assert event.actor == admin_user

        SettlementService.execute_payout(leg.id)

        first_key, second_key = [c["idempotency_key"] for c in fake_gateway.calls_for("transfer")]
        assert ":0.1:" in first_key
        assert ":1.1:" in second_key
        assert fresh(leg).status == SettlementStatus.PROCESSING

    def test_picks_up_current_payee_account(self, admin_user):
        payout = PayoutFactory(destination_account="")
        SettlementService.execute_payout(payout.id)
        entry = payout.entry
        entry.payee_gateway_account = "acct_fixed"
        entry.save()

        leg = SettlementService.retry_failed(Payout, payout.id, admin_user)

        assert fresh(leg).destination_account == "acct_fixed"

    def test_only_failed_legs_retried(self, pending_payout, admin_user):
        with pytest.raises(InvalidTransitionError):
            SettlementService.retry_failed(Payout, pending_payout.id, admin_user)


@pytest.mark.django_db
class TestDueAndStuck:
    def test_due_ids(self):
        now = timezone.now()
        due_now = PayoutFactory()
        due_past = PayoutFactory(next_attempt_at=now - timedelta(minutes=1))
        PayoutFactory(next_attempt_at=now + timedelta(minutes=5))
        done = PayoutFactory()
        SettlementService.apply_result(Payout, done.id, success=True)

        assert set(SettlementService.due_ids(Payout)) == {due_now.id, due_past.id}

    def test_recover_stuck_reuses_idempotency_key(self, pending_payout, fake_gateway):
        payout = fresh(pending_payout)
        payout.start()
        compare_and_set(payout, ["status", "attempts", "next_attempt_at"], status=SettlementStatus.PENDING)

        with freeze_time(timezone.now() + timedelta(minutes=31)):
            recovered = SettlementService.recover_stuck(Payout)
            SettlementService.execute_payout(payout.id)

        assert recovered == 1
        payout = fresh(payout)
        assert payout.status == SettlementStatus.PROCESSING
        assert payout.attempts == 1
        assert ":0.1:" in fake_gateway.calls_for("transfer")[0]["idempotency_key"]

    def test_recent_processing_leg_not_recovered(self, pending_payout):
        SettlementService.execute_payout(pending_payout.id)
        payout = fresh(pending_payout)
        payout.transaction_ref = None
        compare_and_set(payout, ["transaction_ref"])

        assert SettlementService.recover_stuck(Payout) == 0

    def test_leg_with_reference_not_recovered(self, pending_payout):
        SettlementService.execute_payout(pending_payout.id)

        with freeze_time(timezone.now() + timedelta(hours=1)):
            assert SettlementService.recover_stuck(Payout) == 0
