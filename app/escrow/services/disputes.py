"""
Dispute lifecycle: opening, review, resolution and cancellation.

Opening a dispute freezes the entry (HELD -> DISPUTED): neither an
administrator nor the auto-release scheduler can release it until an
administrator resolves or cancels the dispute.

Resolution outcomes:
    release_to_owner  - whole amount to the owner         -> RELEASED
    refund_to_renter  - whole amount back to the renter   -> REFUNDED
    partial_refund    - explicit refund + release amounts -> REFUNDED
    split             - explicit refund + release amounts -> REFUNDED

The platform fee applies only to the portion released to the owner and is
recorded on the payout leg; the entry keeps its capture-time fee.

Usage:
    from escrow.services import DisputeService

    DisputeService.open_dispute(entry.id, opened_by=renter, reason="Camera lens arrived cracked on pickup")
    DisputeService.resolve(
        entry.id,
        admin=admin,
        outcome=DisputeOutcome.SPLIT,
        resolution="Damage confirmed by photos; splitting repair cost evenly",
        refund_amount_cents=4000,
        release_amount_cents=6000,
    )
"""

from __future__ import annotations

import uuid
from datetime import timedelta

from django.conf import settings
from django.utils import timezone

from core.exceptions import ValidationError
from core.services import BaseService

from escrow.exceptions import (
    AmountMismatchError,
    InsufficientDetailError,
    InvalidTransitionError,
)
from escrow.models import Dispute, EscrowEntry, Payout, Refund
from escrow.services.entries import (
    lock_entry,
    persist_transition,
    record_event,
    require_status,
)
from escrow.services.fees import calculate_fee
from escrow.services.payouts import queue_settlement
from escrow.signals import send_status_changed
from escrow.state_machines import (
    DisputeOutcome,
    DisputeStatus,
    EscrowStatus,
    TimelineEventKind,
)

MIN_DISPUTE_REASON_LENGTH = 20
MIN_RESOLUTION_LENGTH = 20


def split_for_outcome(
    amount_cents: int,
    outcome: str,
    refund_amount_cents: int | None = None,
    release_amount_cents: int | None = None,
) -> tuple[int, int]:
    """
    Work out (refund, release) for a dispute outcome.

    Whole-amount outcomes ignore the supplied amounts. Partial refunds and
    splits require both amounts, non-negative and summing to the total.

    Raises:
        AmountMismatchError: Amounts missing or not summing to amount_cents
        ValidationError: Negative amount
    """
    if outcome == DisputeOutcome.RELEASE_TO_OWNER:
        return 0, amount_cents
    if outcome == DisputeOutcome.REFUND_TO_RENTER:
        return amount_cents, 0

    if refund_amount_cents is None or release_amount_cents is None:
        raise AmountMismatchError(
            f"Outcome {outcome} requires both refund and release amounts",
            details={
                "outcome": str(outcome),
                "refund_amount_cents": refund_amount_cents,
                "release_amount_cents": release_amount_cents,
            },
        )
    if refund_amount_cents < 0 or release_amount_cents < 0:
        raise ValidationError(
            "Refund and release amounts must not be negative",
            error_code="INVALID_AMOUNT",
            details={
                "refund_amount_cents": refund_amount_cents,
                "release_amount_cents": release_amount_cents,
            },
        )
    if refund_amount_cents + release_amount_cents != amount_cents:
        raise AmountMismatchError(
            "Refund and release amounts must sum to the escrow amount",
            details={
                "refund_amount_cents": refund_amount_cents,
                "release_amount_cents": release_amount_cents,
                "amount_cents": amount_cents,
            },
        )
    return refund_amount_cents, release_amount_cents


class DisputeService(BaseService):
    """Opens, reviews, resolves and cancels disputes on escrow entries."""

    @classmethod
    def open_dispute(cls, entry_id: uuid.UUID, opened_by, reason: str) -> EscrowEntry:
        """
        Freeze a HELD entry pending administrator adjudication.

        Raises:
            InsufficientDetailError: Reason shorter than 20 characters
            EscrowNotFoundError: No such entry
            InvalidTransitionError: Entry not HELD (including already disputed)
        """
        reason = (reason or "").strip()
        if len(reason) < MIN_DISPUTE_REASON_LENGTH:
            raise InsufficientDetailError(
                f"Dispute reason must be at least {MIN_DISPUTE_REASON_LENGTH} characters",
                details={"field": "reason", "min_length": MIN_DISPUTE_REASON_LENGTH},
            )

        with cls.atomic():
            entry = lock_entry(entry_id)
            require_status(entry, [EscrowStatus.HELD], "open dispute on")

            entry.open_dispute()
            persist_transition(
                entry, ["disputed_at"], source=EscrowStatus.HELD, action="open_dispute"
            )
            dispute = Dispute.objects.create(
                entry=entry,
                opened_by=opened_by,
                reason=reason,
            )
            record_event(entry, TimelineEventKind.DISPUTED, actor=opened_by, note=reason)
            send_status_changed(entry, EscrowStatus.HELD, opened_by)

        cls.get_logger().info(
            "Dispute opened",
            extra={
                "entry_id": str(entry.id),
                "dispute_id": str(dispute.id),
                "opened_by": getattr(opened_by, "pk", None),
            },
        )
        return entry

    @classmethod
    def mark_under_review(cls, entry_id: uuid.UUID, admin) -> Dispute:
        """
        Mark the entry's open dispute as under review.

        Raises:
            EscrowNotFoundError: No such entry
            InvalidTransitionError: No OPEN dispute on the entry
        """
        with cls.atomic():
            entry = lock_entry(entry_id)
            dispute = cls._active_dispute(entry, "review")
            if dispute.status != DisputeStatus.OPEN:
                raise InvalidTransitionError(
                    f"Dispute is already {dispute.status}",
                    details={"dispute_id": str(dispute.id), "current_status": dispute.status},
                )

            dispute.start_review()
            dispute.save()
            record_event(entry, TimelineEventKind.DISPUTE_UNDER_REVIEW, actor=admin)

        cls.get_logger().info(
            "Dispute under review",
            extra={"entry_id": str(entry.id), "dispute_id": str(dispute.id)},
        )
        return dispute

    @classmethod
    def resolve(
        cls,
        entry_id: uuid.UUID,
        admin,
        outcome: str,
        resolution: str,
        refund_amount_cents: int | None = None,
        release_amount_cents: int | None = None,
    ) -> EscrowEntry:
        """
        Resolve the entry's dispute and create the settlement legs.

        The entry ends RELEASED when nothing is refunded and REFUNDED
        otherwise. A Payout of release - fee(release) is created when
        release > 0; a Refund of the refund amount when refund > 0.

        Raises:
            InsufficientDetailError: Resolution shorter than 20 characters
            ValidationError: Unknown outcome or negative amount
            AmountMismatchError: Amounts missing or not summing to the total
            EscrowNotFoundError: No such entry
            InvalidTransitionError: Entry not DISPUTED
        """
        resolution = (resolution or "").strip()
        if len(resolution) < MIN_RESOLUTION_LENGTH:
            raise InsufficientDetailError(
                f"Resolution must be at least {MIN_RESOLUTION_LENGTH} characters",
                details={"field": "resolution", "min_length": MIN_RESOLUTION_LENGTH},
            )
        try:
            outcome = DisputeOutcome(outcome)
        except ValueError as e:
            raise ValidationError(
                f"Unknown dispute outcome: {outcome}",
                error_code="INVALID_OUTCOME",
                details={"outcome": str(outcome)},
            ) from e

        with cls.atomic():
            entry = lock_entry(entry_id)
            require_status(entry, [EscrowStatus.DISPUTED], "resolve dispute on")
            dispute = cls._active_dispute(entry, "resolve")

            refund_cents, release_cents = split_for_outcome(
                entry.amount_cents, outcome, refund_amount_cents, release_amount_cents
            )

            now = timezone.now()
            if refund_cents == 0:
                entry.resolve_release()
                fields = ["released_at"]
                final_kind = TimelineEventKind.RELEASED
            else:
                entry.resolve_refund()
                fields = ["refunded_at"]
                final_kind = TimelineEventKind.REFUNDED

            # The entry keeps its capture-time fee; the payout leg records what is withheld
            release_fee = 0
            if release_cents > 0:
                release_fee = calculate_fee(release_cents, entry.fee_percentage)
                entry.fee_deducted_at = now
                fields.append("fee_deducted_at")

            persist_transition(entry, fields, source=EscrowStatus.DISPUTED, action="resolve")

            dispute.resolve(admin, outcome, refund_cents, release_cents, resolution)
            dispute.save()

            legs = []
            if release_cents > 0:
                legs.append(
                    Payout.objects.create(
                        entry=entry,
                        amount_cents=release_cents - release_fee,
                        fee_cents=release_fee,
                        currency=entry.currency,
                        destination_account=entry.payee_gateway_account,
                    )
                )
            if refund_cents > 0:
                legs.append(
                    Refund.objects.create(
                        entry=entry,
                        amount_cents=refund_cents,
                        currency=entry.currency,
                    )
                )

            record_event(entry, TimelineEventKind.RESOLVED, actor=admin, note=resolution)
            record_event(entry, final_kind, actor=admin, note=outcome.label)
            send_status_changed(entry, EscrowStatus.DISPUTED, admin)
            for leg in legs:
                queue_settlement(leg)

        cls.get_logger().info(
            "Dispute resolved",
            extra={
                "entry_id": str(entry.id),
                "dispute_id": str(dispute.id),
                "outcome": outcome.value,
                "refund_cents": refund_cents,
                "release_cents": release_cents,
                "fee_cents": release_fee,
                "status": entry.status,
            },
        )
        return entry

    @classmethod
    def cancel_dispute(cls, entry_id: uuid.UUID, admin, note: str = "") -> EscrowEntry:
        """
        Withdraw the entry's dispute and return it to custody.

        Confirmations are cleared and the auto-release window restarts
        from now, so release needs fresh acknowledgements or a full window.

        Raises:
            EscrowNotFoundError: No such entry
            InvalidTransitionError: Entry not DISPUTED
        """
        note = (note or "").strip()

        with cls.atomic():
            entry = lock_entry(entry_id)
            require_status(entry, [EscrowStatus.DISPUTED], "cancel dispute on")
            dispute = cls._active_dispute(entry, "cancel")

            entry.reinstate()
            if entry.auto_release_scheduled_at is not None:
                entry.auto_release_scheduled_at = timezone.now() + timedelta(
                    days=entry.auto_release_window_days
                )
            persist_transition(
                entry,
                [
                    "renter_confirmed",
                    "renter_confirmed_at",
                    "renter_note",
                    "owner_confirmed",
                    "owner_confirmed_at",
                    "owner_note",
                    "auto_release_scheduled_at",
                ],
                source=EscrowStatus.DISPUTED,
                action="cancel_dispute",
            )

            dispute.cancel(admin, note)
            dispute.save()
            record_event(entry, TimelineEventKind.DISPUTE_CANCELLED, actor=admin, note=note)
            send_status_changed(entry, EscrowStatus.DISPUTED, admin)

        cls.get_logger().info(
            "Dispute cancelled",
            extra={
                "entry_id": str(entry.id),
                "dispute_id": str(dispute.id),
                "auto_release_enabled": settings.ESCROW_AUTO_RELEASE_ENABLED,
            },
        )
        return entry

    @staticmethod
    def _active_dispute(entry: EscrowEntry, action: str) -> Dispute:
        dispute = (
            Dispute.objects.select_for_update()
            .filter(entry=entry, status__in=DisputeStatus.active())
            .first()
        )
        if dispute is None:
            raise InvalidTransitionError(
                f"Escrow entry {entry.id} has no active dispute to {action}",
                details={"entry_id": str(entry.id), "action": action},
            )
        return dispute
