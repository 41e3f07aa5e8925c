"""
Escrow ledger: the write path for an entry's custody lifecycle.

EscrowLedgerService owns creation, capture, release and cancellation of
escrow entries. Every method that changes status does so inside one
transaction:

    1. SELECT ... FOR UPDATE the entry
    2. Check the precondition (raise InvalidTransitionError otherwise)
    3. Apply the django-fsm transition in memory
    4. UPDATE ... WHERE version = ? AND status = <source>
    5. Append a timeline row
    6. Schedule the status notification for after commit

Step 4 is what guarantees a single release even when an administrator and
the auto-release scheduler race: exactly one conditional update matches,
the loser gets AlreadyReleasedError.

Usage:
    from escrow.services import EscrowLedgerService

    entry = EscrowLedgerService.create_held(
        rental_id=rental.id,
        payer=renter,
        payee=owner,
        amount_cents=10000,
        currency="usd",
    )

    try:
        EscrowLedgerService.release(entry.id, actor=admin, note="Verified return photos")
    except AlreadyReleasedError:
        pass  # the scheduler got there first
"""

from __future__ import annotations

import uuid
from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from core.exceptions import ValidationError
from core.services import BaseService

from escrow.adapters import IdempotencyKeyGenerator, get_gateway
from escrow.exceptions import (
    AlreadyReleasedError,
    DuplicateEntryError,
    EscrowNotFoundError,
    GatewayUnavailableError,
    GatewayError,
    InsufficientDetailError,
    InvalidNoteError,
    InvalidTransitionError,
)
from escrow.models import EscrowEntry, Payout
from escrow.services.confirmations import both_confirmed
from escrow.services.entries import (
    lock_entry,
    lock_entry_for_rental,
    persist_transition,
    record_event,
    require_status,
)
from escrow.services.fees import calculate_payout, split_amount
from escrow.services.payouts import SettlementService, queue_settlement
from escrow.signals import send_status_changed
from escrow.state_machines import EscrowStatus, TimelineEventKind

MIN_RELEASE_NOTE_LENGTH = 10
MIN_REJECTION_REASON_LENGTH = 20
AUTO_RELEASE_NOTE = "auto-released after window"


class EscrowLedgerService(BaseService):
    """
    Creates, captures, releases and cancels escrow entries.

    Actor convention:
        actor=None means the system (auto-release scheduler, webhooks).
        Any other actor is an administrator and is recorded as verifier.
    """

    # =========================================================================
    # Creation & Capture
    # =========================================================================

    @classmethod
    def open_pending(
        cls,
        rental_id: uuid.UUID,
        payer,
        payee,
        amount_cents: int,
        currency: str = "usd",
        gateway_ref: str | None = None,
        payee_gateway_account: str = "",
    ) -> EscrowEntry:
        """
        Register a checkout whose capture has not completed yet.

        Raises:
            ValidationError: Non-positive amount
            DuplicateEntryError: The rental already has an entry
        """
        cls._validate_amount(amount_cents)

        with cls.atomic():
            if EscrowEntry.objects.filter(rental_id=rental_id).exists():
                raise cls._duplicate(rental_id)

            entry = EscrowEntry(
                rental_id=rental_id,
                payer=payer,
                payee=payee,
                amount_cents=amount_cents,
                currency=currency.lower(),
                gateway_ref=gateway_ref,
                payee_gateway_account=payee_gateway_account or "",
                auto_release_window_days=settings.ESCROW_AUTO_RELEASE_WINDOW_DAYS,
            )
            cls._apply_fee(entry, None)
            try:
                with transaction.atomic():
                    entry.save()
            except IntegrityError as e:
                raise cls._duplicate(rental_id) from e

        cls.get_logger().info(
            "Escrow entry opened",
            extra={
                "entry_id": str(entry.id),
                "rental_id": str(rental_id),
                "amount_cents": amount_cents,
            },
        )
        return entry

    @classmethod
    def create_held(
        cls,
        rental_id: uuid.UUID,
        payer,
        payee,
        amount_cents: int,
        currency: str = "usd",
        fee_percentage: Decimal | str | int | None = None,
        gateway_ref: str | None = None,
        payee_gateway_account: str = "",
    ) -> EscrowEntry:
        """
        Record a completed capture: the funds are now in custody.

        A PENDING entry for the rental is promoted to HELD, taking the
        captured amount as authoritative. Without one, a new entry is
        created directly in HELD. The platform fee is fixed here.

        Raises:
            ValidationError: Non-positive amount or invalid fee percentage
            DuplicateEntryError: The rental already has a non-pending entry
        """
        cls._validate_amount(amount_cents)

        with cls.atomic():
            existing = (
                EscrowEntry.objects.select_for_update()
                .filter(rental_id=rental_id)
                .first()
            )

            if existing is None:
                entry = EscrowEntry(
                    rental_id=rental_id,
                    payer=payer,
                    payee=payee,
                    amount_cents=amount_cents,
                    currency=currency.lower(),
                    gateway_ref=gateway_ref,
                    payee_gateway_account=payee_gateway_account or "",
                    auto_release_window_days=settings.ESCROW_AUTO_RELEASE_WINDOW_DAYS,
                )
                cls._apply_fee(entry, fee_percentage)
                entry.hold()
                cls._schedule_auto_release(entry)
                try:
                    with transaction.atomic():
                        entry.save()
                except IntegrityError as e:
                    raise cls._duplicate(rental_id) from e

            elif existing.status == EscrowStatus.PENDING:
                entry = existing
                entry.amount_cents = amount_cents
                entry.currency = currency.lower()
                if gateway_ref:
                    entry.gateway_ref = gateway_ref
                if payee_gateway_account:
                    entry.payee_gateway_account = payee_gateway_account
                cls._apply_fee(entry, fee_percentage)
                entry.hold()
                cls._schedule_auto_release(entry)
                persist_transition(
                    entry,
                    [
                        "amount_cents",
                        "currency",
                        "gateway_ref",
                        "payee_gateway_account",
                        "fee_percentage",
                        "fee_cents",
                        "held_at",
                        "auto_release_scheduled_at",
                    ],
                    source=EscrowStatus.PENDING,
                    action="hold",
                )

            else:
                raise cls._duplicate(rental_id)

            record_event(entry, TimelineEventKind.CAPTURED, note=gateway_ref or "")
            record_event(entry, TimelineEventKind.HELD)
            send_status_changed(entry, EscrowStatus.PENDING)

        cls.get_logger().info(
            "Escrow entry held",
            extra={
                "entry_id": str(entry.id),
                "rental_id": str(rental_id),
                "amount_cents": entry.amount_cents,
                "fee_cents": entry.fee_cents,
                "auto_release_scheduled_at": (
                    entry.auto_release_scheduled_at.isoformat()
                    if entry.auto_release_scheduled_at
                    else None
                ),
            },
        )
        return entry

    @classmethod
    def capture_pending(cls, rental_id: uuid.UUID) -> EscrowEntry:
        """
        Capture the authorised payment of a PENDING entry and hold it.

        A permanent gateway refusal cancels the entry. A transient one
        leaves it PENDING and re-raises so the caller can retry.

        Raises:
            EscrowNotFoundError: No entry for the rental
            InvalidTransitionError: Entry is not PENDING or has no gateway_ref
            GatewayUnavailableError: Gateway unreachable (entry unchanged)
            GatewayError: Capture refused (entry cancelled)
        """
        entry = cls.get_by_rental(rental_id)
        require_status(entry, [EscrowStatus.PENDING], "capture")
        if not entry.gateway_ref:
            raise InvalidTransitionError(
                "Escrow entry has no gateway reference to capture",
                details={"entry_id": str(entry.id), "action": "capture"},
            )

        try:
            result = get_gateway().capture(
                entry.gateway_ref,
                idempotency_key=IdempotencyKeyGenerator.generate("capture", entry.id),
            )
        except GatewayUnavailableError:
            cls.get_logger().warning(
                "Capture deferred, gateway unavailable",
                extra={"entry_id": str(entry.id), "rental_id": str(rental_id)},
            )
            raise
        except GatewayError as e:
            cls.mark_capture_failed(rental_id, reason=e.message)
            raise

        return cls.create_held(
            rental_id=rental_id,
            payer=entry.payer,
            payee=entry.payee,
            amount_cents=result.amount_cents,
            currency=result.currency or entry.currency,
            fee_percentage=entry.fee_percentage,
            gateway_ref=result.id,
        )

    @classmethod
    def mark_capture_failed(cls, rental_id: uuid.UUID, reason: str = "") -> EscrowEntry:
        """
        Cancel a PENDING entry whose capture failed.

        Already-cancelled entries are returned unchanged.

        Raises:
            EscrowNotFoundError: No entry for the rental
            InvalidTransitionError: Entry is past PENDING
        """
        with cls.atomic():
            entry = lock_entry_for_rental(rental_id)
            if entry.status == EscrowStatus.CANCELLED:
                return entry
            require_status(entry, [EscrowStatus.PENDING], "cancel")

            entry.cancel()
            persist_transition(entry, ["cancelled_at"], source=EscrowStatus.PENDING, action="cancel")
            record_event(entry, TimelineEventKind.CANCELLED, note=reason)
            send_status_changed(entry, EscrowStatus.PENDING)

        cls.get_logger().info(
            "Escrow entry cancelled after capture failure",
            extra={"entry_id": str(entry.id), "rental_id": str(rental_id), "reason": reason},
        )
        return entry

    # =========================================================================
    # Release
    # =========================================================================

    @classmethod
    def release(
        cls,
        entry_id: uuid.UUID,
        actor,
        note: str = "",
        *,
        override_confirmation_gate: bool = False,
    ) -> EscrowEntry:
        """
        Release held funds to the owner and create the payout leg.

        An administrator (actor is a user) must supply a note of at least
        10 characters and, unless override_confirmation_gate is set, both
        parties must have confirmed. The system actor (None) is the
        auto-release scheduler: it skips the confirmation gate but only
        once the entry's auto-release window has elapsed.

        Raises:
            InvalidNoteError: Administrator note too short
            EscrowNotFoundError: No such entry
            AlreadyReleasedError: Entry already released (lost race)
            InvalidTransitionError: Entry not HELD, open dispute,
                confirmations missing, or (system actor) auto-release
                disabled or not yet due
        """
        is_system = actor is None
        note = (note or "").strip()
        if is_system:
            note = note or AUTO_RELEASE_NOTE
        elif len(note) < MIN_RELEASE_NOTE_LENGTH:
            raise InvalidNoteError(
                f"Release note must be at least {MIN_RELEASE_NOTE_LENGTH} characters",
                details={"field": "note", "min_length": MIN_RELEASE_NOTE_LENGTH},
            )

        with cls.atomic():
            entry = lock_entry(entry_id)

            if entry.status == EscrowStatus.RELEASED:
                raise AlreadyReleasedError(
                    f"Escrow entry {entry.id} was already released",
                    details={"entry_id": str(entry.id), "current_status": entry.status},
                )
            require_status(entry, [EscrowStatus.HELD], "release")

            if entry.has_open_dispute:
                raise InvalidTransitionError(
                    "Escrow entry has an open dispute",
                    details={"entry_id": str(entry.id), "action": "release"},
                )

            if is_system:
                cls._require_auto_release_due(entry)

            if not is_system and not override_confirmation_gate and not both_confirmed(entry):
                raise InvalidTransitionError(
                    "Both parties must confirm completion before release",
                    details={
                        "entry_id": str(entry.id),
                        "renter_confirmed": entry.renter_confirmed,
                        "owner_confirmed": entry.owner_confirmed,
                        "action": "release",
                    },
                )

            now = timezone.now()
            entry.release()
            entry.fee_deducted_at = now
            fields = ["released_at", "fee_deducted_at"]
            if not is_system:
                entry.admin_verified = True
                entry.admin_verified_at = now
                entry.admin_verified_by = actor
                entry.admin_note = note
                fields += ["admin_verified", "admin_verified_at", "admin_verified_by", "admin_note"]

            persist_transition(entry, fields, source=EscrowStatus.HELD, action="release")

            payout = Payout.objects.create(
                entry=entry,
                amount_cents=calculate_payout(entry.amount_cents, entry.fee_cents),
                fee_cents=entry.fee_cents,
                currency=entry.currency,
                destination_account=entry.payee_gateway_account,
            )

            if not is_system:
                record_event(entry, TimelineEventKind.ADMIN_VERIFIED, actor=actor, note=note)
            record_event(entry, TimelineEventKind.RELEASED, actor=actor, note=note)
            send_status_changed(entry, EscrowStatus.HELD, actor)
            queue_settlement(payout)

        cls.get_logger().info(
            "Escrow released",
            extra={
                "entry_id": str(entry.id),
                "actor_id": getattr(actor, "pk", None),
                "payout_id": str(payout.id),
                "payout_cents": payout.amount_cents,
                "fee_cents": entry.fee_cents,
                "override_confirmation_gate": override_confirmation_gate,
            },
        )
        return entry

    @classmethod
    def reject_release(cls, entry_id: uuid.UUID, admin, reason: str) -> EscrowEntry:
        """
        Record an administrator's refusal to release. Status is unchanged.

        Raises:
            InsufficientDetailError: Reason shorter than 20 characters
            EscrowNotFoundError: No such entry
            InvalidTransitionError: Entry not HELD
        """
        reason = (reason or "").strip()
        if len(reason) < MIN_REJECTION_REASON_LENGTH:
            raise InsufficientDetailError(
                f"Rejection reason must be at least {MIN_REJECTION_REASON_LENGTH} characters",
                details={"field": "reason", "min_length": MIN_REJECTION_REASON_LENGTH},
            )

        with cls.atomic():
            entry = lock_entry(entry_id)
            require_status(entry, [EscrowStatus.HELD], "reject release")
            record_event(entry, TimelineEventKind.RELEASE_REJECTED, actor=admin, note=reason)

        cls.get_logger().info(
            "Release rejected",
            extra={"entry_id": str(entry.id), "admin_id": getattr(admin, "pk", None)},
        )
        return entry

    # =========================================================================
    # Settlement Results
    # =========================================================================

    @classmethod
    def apply_payout_result(
        cls,
        entry_id: uuid.UUID,
        success: bool,
        transaction_ref: str | None = None,
        failure_reason: str | None = None,
    ) -> Payout:
        """
        Settle the entry's payout leg as COMPLETED or FAILED.

        Raises:
            EscrowNotFoundError: Entry has no payout
            InvalidTransitionError: Payout already settled the other way
        """
        payout_id = (
            Payout.objects.filter(entry_id=entry_id).values_list("id", flat=True).first()
        )
        if payout_id is None:
            raise EscrowNotFoundError(
                f"Escrow entry {entry_id} has no payout",
                details={"entry_id": str(entry_id)},
            )
        return SettlementService.apply_result(
            Payout,
            payout_id,
            success=success,
            transaction_ref=transaction_ref,
            failure_reason=failure_reason,
        )

    # =========================================================================
    # Queries
    # =========================================================================

    @classmethod
    def get_entry(cls, entry_id: uuid.UUID) -> EscrowEntry:
        """Raises EscrowNotFoundError if absent."""
        try:
            return EscrowEntry.objects.select_related("payer", "payee").get(pk=entry_id)
        except EscrowEntry.DoesNotExist as e:
            raise EscrowNotFoundError(
                f"Escrow entry {entry_id} not found",
                details={"entry_id": str(entry_id)},
            ) from e

    @classmethod
    def get_by_rental(cls, rental_id: uuid.UUID) -> EscrowEntry:
        """Raises EscrowNotFoundError if absent."""
        try:
            return EscrowEntry.objects.select_related("payer", "payee").get(rental_id=rental_id)
        except EscrowEntry.DoesNotExist as e:
            raise EscrowNotFoundError(
                f"No escrow entry for rental {rental_id}",
                details={"rental_id": str(rental_id)},
            ) from e

    @classmethod
    def status_for_rental(cls, rental_id: uuid.UUID) -> str | None:
        """Current escrow status for a rental, or None if it has no entry."""
        return (
            EscrowEntry.objects.filter(rental_id=rental_id)
            .values_list("status", flat=True)
            .first()
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _validate_amount(amount_cents: int) -> None:
        if not isinstance(amount_cents, int) or isinstance(amount_cents, bool) or amount_cents <= 0:
            raise ValidationError(
                "Amount must be a positive integer in minor units",
                error_code="INVALID_AMOUNT",
                details={"amount_cents": amount_cents},
            )

    @staticmethod
    def _apply_fee(entry: EscrowEntry, fee_percentage) -> None:
        if fee_percentage is None:
            fee_percentage = settings.ESCROW_PLATFORM_FEE_PERCENT
        breakdown = split_amount(entry.amount_cents, fee_percentage)
        entry.fee_percentage = breakdown.percentage
        entry.fee_cents = breakdown.fee_cents

    @staticmethod
    def _require_auto_release_due(entry: EscrowEntry) -> None:
        enabled = settings.ESCROW_AUTO_RELEASE_ENABLED and entry.auto_release_enabled
        scheduled_at = entry.auto_release_scheduled_at
        if not enabled or scheduled_at is None or scheduled_at > timezone.now():
            raise InvalidTransitionError(
                "Auto-release window has not elapsed",
                details={
                    "entry_id": str(entry.id),
                    "auto_release_enabled": enabled,
                    "auto_release_scheduled_at": (
                        scheduled_at.isoformat() if scheduled_at else None
                    ),
                    "action": "release",
                },
            )

    @staticmethod
    def _schedule_auto_release(entry: EscrowEntry) -> None:
        if settings.ESCROW_AUTO_RELEASE_ENABLED and entry.auto_release_enabled:
            window = timedelta(days=entry.auto_release_window_days)
            entry.auto_release_scheduled_at = (entry.held_at or timezone.now()) + window
        else:
            entry.auto_release_scheduled_at = None

    @staticmethod
    def _duplicate(rental_id) -> DuplicateEntryError:
        return DuplicateEntryError(
            f"Rental {rental_id} already has an escrow entry",
            details={"rental_id": str(rental_id)},
        )
