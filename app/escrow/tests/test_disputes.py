"""
Tests for DisputeService and the outcome split rules.

The platform fee is charged only on the portion released to the owner.
"""

from datetime import timedelta

import pytest
from django.utils import timezone
from freezegun import freeze_time

from core.exceptions import ValidationError
from escrow.exceptions import (
    AmountMismatchError,
    InsufficientDetailError,
    InvalidTransitionError,
)
from escrow.models import Dispute, EscrowEntry, Payout, Refund
from escrow.services import DisputeService, EscrowLedgerService, split_for_outcome
from escrow.services.fees import calculate_fee
from escrow.state_machines import (
    DisputeOutcome,
    DisputeStatus,
    EscrowStatus,
    SettlementStatus,
    TimelineEventKind,
)

DISPUTE_REASON = "The tent poles were bent when I unpacked"
RESOLUTION = "Reviewed photos from both parties and the listing"


@pytest.fixture
def disputed_entry(held_entry, renter):
    return DisputeService.open_dispute(held_entry.id, opened_by=renter, reason=DISPUTE_REASON)


# =============================================================================
# Outcome Split
# =============================================================================


class TestSplitForOutcome:
    def test_whole_amount_outcomes_ignore_amounts(self):
        assert split_for_outcome(10000, DisputeOutcome.RELEASE_TO_OWNER, 1, 2) == (0, 10000)
        assert split_for_outcome(10000, DisputeOutcome.REFUND_TO_RENTER) == (10000, 0)

    def test_split_amounts_must_sum_to_total(self):
        assert split_for_outcome(10000, DisputeOutcome.SPLIT, 4000, 6000) == (4000, 6000)

        with pytest.raises(AmountMismatchError) as exc_info:
            split_for_outcome(10000, DisputeOutcome.SPLIT, 4100, 6000)

        assert exc_info.value.details["amount_cents"] == 10000

    def test_partial_refund_requires_amounts(self):
        with pytest.raises(AmountMismatchError):
            split_for_outcome(10000, DisputeOutcome.PARTIAL_REFUND, 2500, None)

    def test_negative_amounts_rejected(self):
        with pytest.raises(ValidationError):
            split_for_outcome(10000, DisputeOutcome.SPLIT, -1, 10001)


# =============================================================================
# Opening & Review
# =============================================================================


@pytest.mark.django_db
class TestOpenDispute:
    def test_freezes_entry(self, disputed_entry, renter):
        fresh = EscrowEntry.objects.get(pk=disputed_entry.pk)

        assert fresh.status == EscrowStatus.DISPUTED
        assert fresh.disputed_at is not None
        dispute = fresh.active_dispute
        assert dispute.status == DisputeStatus.OPEN
        assert dispute.opened_by == renter
        assert dispute.reason == DISPUTE_REASON
        assert fresh.timeline.filter(kind=TimelineEventKind.DISPUTED).exists()

    def test_short_reason_rejected(self, held_entry, renter):
        with pytest.raises(InsufficientDetailError):
            DisputeService.open_dispute(held_entry.id, opened_by=renter, reason="Broken")

        assert not Dispute.objects.exists()

    def test_second_dispute_rejected(self, disputed_entry, owner):
        with pytest.raises(InvalidTransitionError):
            DisputeService.open_dispute(disputed_entry.id, opened_by=owner, reason=DISPUTE_REASON)

        assert Dispute.objects.filter(entry=disputed_entry).count() == 1

    def test_released_entry_cannot_be_disputed(self, due_entry, renter):
        EscrowLedgerService.release(due_entry.id, actor=None)

        with pytest.raises(InvalidTransitionError):
            DisputeService.open_dispute(due_entry.id, opened_by=renter, reason=DISPUTE_REASON)

    def test_blocks_release(self, disputed_entry, admin_user):
        with pytest.raises(InvalidTransitionError):
            EscrowLedgerService.release(
                disputed_entry.id,
                actor=admin_user,
                note="Releasing regardless",
                override_confirmation_gate=True,
            )


@pytest.mark.django_db
class TestMarkUnderReview:
    def test_moves_open_dispute_to_review(self, disputed_entry, admin_user):
        dispute = DisputeService.mark_under_review(disputed_entry.id, admin_user)

        assert dispute.status == DisputeStatus.UNDER_REVIEW
        assert EscrowEntry.objects.get(pk=disputed_entry.pk).status == EscrowStatus.DISPUTED

    def test_review_twice_rejected(self, disputed_entry, admin_user):
        DisputeService.mark_under_review(disputed_entry.id, admin_user)

        with pytest.raises(InvalidTransitionError):
            DisputeService.mark_under_review(disputed_entry.id, admin_user)

    def test_no_dispute(self, held_entry, admin_user):
        with pytest.raises(InvalidTransitionError):
            DisputeService.mark_under_review(held_entry.id, admin_user)


# =============================================================================
# Resolution
# =============================================================================


@pytest.mark.django_db
class TestResolve:
    def test_release_to_owner(self, disputed_entry, admin_user):
        entry = DisputeService.resolve(
            disputed_entry.id, admin_user, DisputeOutcome.RELEASE_TO_OWNER, RESOLUTION
        )

        fresh = EscrowEntry.objects.get(pk=entry.pk)
        assert fresh.status == EscrowStatus.RELEASED
        assert fresh.fee_cents == 1000
        payout = Payout.objects.get(entry=fresh)
        assert payout.amount_cents == 9000
        assert not Refund.objects.filter(entry=fresh).exists()

    def test_refund_to_renter(self, disputed_entry, admin_user):
        entry = DisputeService.resolve(
            disputed_entry.id, admin_user, DisputeOutcome.REFUND_TO_RENTER, RESOLUTION
        )

        fresh = EscrowEntry.objects.get(pk=entry.pk)
        assert fresh.status == EscrowStatus.REFUNDED
        assert fresh.fee_cents == 1000
        assert Refund.objects.get(entry=fresh).amount_cents == 10000
        assert not Payout.objects.filter(entry=fresh).exists()

    def test_split_charges_fee_on_released_portion(self, disputed_entry, admin_user):
        entry = DisputeService.resolve(
            disputed_entry.id,
            admin_user,
            DisputeOutcome.SPLIT,
            RESOLUTION,
            refund_amount_cents=4000,
            release_amount_cents=6000,
        )

        fresh = EscrowEntry.objects.get(pk=entry.pk)
        assert fresh.status == EscrowStatus.REFUNDED
        assert fresh.fee_cents == 1000
        payout = Payout.objects.get(entry=fresh)
        assert payout.amount_cents == 5400
        assert payout.fee_cents == 600
        assert Refund.objects.get(entry=fresh).amount_cents == 4000

        dispute = Dispute.objects.get(entry=fresh)
        assert dispute.status == DisputeStatus.RESOLVED
        assert dispute.outcome == DisputeOutcome.SPLIT
        assert dispute.refund_amount_cents + dispute.release_amount_cents == fresh.amount_cents

    @pytest.mark.parametrize(
        "outcome, refund, release",
        [
            (DisputeOutcome.RELEASE_TO_OWNER, None, None),
            (DisputeOutcome.REFUND_TO_RENTER, None, None),
            (DisputeOutcome.PARTIAL_REFUND, 2500, 7500),
            (DisputeOutcome.SPLIT, 5000, 5000),
        ],
    )
    def test_entry_fee_unchanged_by_outcome(
        self, disputed_entry, admin_user, outcome, refund, release
    ):
        DisputeService.resolve(
            disputed_entry.id,
            admin_user,
            outcome,
            RESOLUTION,
            refund_amount_cents=refund,
            release_amount_cents=release,
        )

        fresh = EscrowEntry.objects.get(pk=disputed_entry.pk)
        assert fresh.fee_cents == calculate_fee(fresh.amount_cents, fresh.fee_percentage)
        payout = Payout.objects.filter(entry=fresh).first()
        if payout is not None:
            released = Dispute.objects.get(entry=fresh).release_amount_cents
            assert payout.fee_cents == calculate_fee(released, fresh.fee_percentage)
            assert payout.amount_cents + payout.fee_cents == released

    def test_mismatched_split_rejected(self, disputed_entry, admin_user):
        with pytest.raises(AmountMismatchError):
            DisputeService.resolve(
                disputed_entry.id,
                admin_user,
                DisputeOutcome.SPLIT,
                RESOLUTION,
                refund_amount_cents=4100,
                release_amount_cents=6000,
            )

        fresh = EscrowEntry.objects.get(pk=disputed_entry.pk)
        assert fresh.status == EscrowStatus.DISPUTED
        assert not Payout.objects.filter(entry=fresh).exists()
        assert not Refund.objects.filter(entry=fresh).exists()

    def test_short_resolution_rejected(self, disputed_entry, admin_user):
        with pytest.raises(InsufficientDetailError):
            DisputeService.resolve(
                disputed_entry.id, admin_user, DisputeOutcome.REFUND_TO_RENTER, "Refund it"
            )

    def test_unknown_outcome_rejected(self, disputed_entry, admin_user):
        with pytest.raises(ValidationError) as exc_info:
            DisputeService.resolve(disputed_entry.id, admin_user, "coin_flip", RESOLUTION)

        assert exc_info.value.error_code == "INVALID_OUTCOME"

    def test_held_entry_cannot_be_resolved(self, held_entry, admin_user):
        with pytest.raises(InvalidTransitionError):
            DisputeService.resolve(
                held_entry.id, admin_user, DisputeOutcome.RELEASE_TO_OWNER, RESOLUTION
            )

    def test_settlement_legs_queued(
        self,
        disputed_entry,
        admin_user,
        mock_payout_delay,
        mock_refund_delay,
        django_capture_on_commit_callbacks,
    ):
        with django_capture_on_commit_callbacks(execute=True):
            DisputeService.resolve(
                disputed_entry.id,
                admin_user,
                DisputeOutcome.PARTIAL_REFUND,
                RESOLUTION,
                refund_amount_cents=2500,
                release_amount_cents=7500,
            )

        payout = Payout.objects.get(entry_id=disputed_entry.id)
        refund = Refund.objects.get(entry_id=disputed_entry.id)
        assert payout.status == refund.status == SettlementStatus.PENDING
        mock_payout_delay.assert_called_once_with(str(payout.id))
        mock_refund_delay.assert_called_once_with(str(refund.id))


# =============================================================================
# Cancellation
# =============================================================================


@pytest.mark.django_db
class TestCancelDispute:
    def test_returns_entry_to_custody(self, confirmed_entry, renter, admin_user):
        DisputeService.open_dispute(confirmed_entry.id, opened_by=renter, reason=DISPUTE_REASON)

        entry = DisputeService.cancel_dispute(confirmed_entry.id, admin_user, "Resolved between parties")

        fresh = EscrowEntry.objects.get(pk=entry.pk)
        assert fresh.status == EscrowStatus.HELD
        assert fresh.renter_confirmed is False
        assert fresh.owner_confirmed is False
        assert fresh.has_open_dispute is False
        dispute = Dispute.objects.get(entry=fresh)
        assert dispute.status == DisputeStatus.CANCELLED
        assert dispute.resolution_note == "Resolved between parties"

    def test_restarts_auto_release_window(self, held_entry, renter, admin_user):
        DisputeService.open_dispute(held_entry.id, opened_by=renter, reason=DISPUTE_REASON)
        later = timezone.now() + timedelta(days=2)

        with freeze_time(later):
            entry = DisputeService.cancel_dispute(held_entry.id, admin_user)

        assert entry.auto_release_scheduled_at == later + timedelta(days=3)

    def test_entry_can_be_disputed_again(self, held_entry, renter, owner, admin_user):
        DisputeService.open_dispute(held_entry.id, opened_by=renter, reason=DISPUTE_REASON)
        DisputeService.cancel_dispute(held_entry.id, admin_user)

        entry = DisputeService.open_dispute(held_entry.id, opened_by=owner, reason=DISPUTE_REASON)

        assert entry.status == EscrowStatus.DISPUTED
        assert Dispute.objects.filter(entry=entry).count() == 2

    def test_held_entry_without_dispute(self, held_entry, admin_user):
        with pytest.raises(InvalidTransitionError):
            DisputeService.cancel_dispute(held_entry.id, admin_user)
