"""
Completion confirmations from the renter and the owner.

A confirmation is a one-way flag: once set it stays set (only a dispute
cancellation clears it). Confirmations never move funds; they only open
the gate for an administrator's manual release.

Usage:
    from escrow.services import ConfirmationService, both_confirmed

    entry = ConfirmationService.confirm_by_party(
        entry.id,
        party=ConfirmingParty.RENTER,
        note="Equipment returned in good condition",
        actor=request.user,
    )
    if both_confirmed(entry):
        ...
"""

from __future__ import annotations

import uuid

from django.db.models import F
from django.utils import timezone

from core.exceptions import ValidationError
from core.services import BaseService

from escrow.exceptions import EscrowNotFoundError, InvalidNoteError, InvalidTransitionError
from escrow.models import EscrowEntry
from escrow.services.entries import record_event
from escrow.state_machines import ConfirmingParty, EscrowStatus, TimelineEventKind

MIN_CONFIRMATION_NOTE_LENGTH = 10


def both_confirmed(entry: EscrowEntry) -> bool:
    """True once both the renter and the owner have confirmed completion."""
    return bool(entry.renter_confirmed and entry.owner_confirmed)


class ConfirmationService(BaseService):
    """
    Records renter and owner completion confirmations.

    Confirmations are accepted while the entry is HELD, and while it is
    DISPUTED for audit purposes only. Any other status is rejected.
    """

    CONFIRMABLE_STATUSES = [EscrowStatus.HELD, EscrowStatus.DISPUTED]

    @classmethod
    def confirm_by_party(
        cls,
        entry_id: uuid.UUID | str,
        party: str,
        note: str,
        actor=None,
    ) -> EscrowEntry:
        """
        Set the confirming party's flag, timestamp and note.

        Idempotent: confirming twice leaves the first confirmation intact
        and returns the entry unchanged.

        Raises:
            InvalidNoteError: Note shorter than 10 characters
            EscrowNotFoundError: No such entry
            InvalidTransitionError: Entry not HELD or DISPUTED
        """
        try:
            party = ConfirmingParty(party)
        except ValueError as e:
            raise ValidationError(
                f"Unknown confirming party: {party}",
                error_code="INVALID_PARTY",
                details={"party": str(party)},
            ) from e

        note = (note or "").strip()
        if len(note) < MIN_CONFIRMATION_NOTE_LENGTH:
            raise InvalidNoteError(
                f"Confirmation note must be at least {MIN_CONFIRMATION_NOTE_LENGTH} characters",
                details={"field": "note", "min_length": MIN_CONFIRMATION_NOTE_LENGTH},
            )

        flag = f"{party.value}_confirmed"
        now = timezone.now()

        with cls.atomic():
            rows = EscrowEntry.objects.filter(
                pk=entry_id,
                status__in=cls.CONFIRMABLE_STATUSES,
                **{flag: False},
            ).update(
                **{
                    flag: True,
                    f"{flag}_at": now,
                    f"{party.value}_note": note,
                    "version": F("version") + 1,
                    "updated_at": now,
                }
            )

            entry = EscrowEntry.objects.filter(pk=entry_id).first()
            if entry is None:
                raise EscrowNotFoundError(
                    f"Escrow entry {entry_id} not found",
                    details={"entry_id": str(entry_id)},
                )

            if rows == 0:
                if getattr(entry, flag):
                    cls.get_logger().info(
                        "Confirmation already recorded",
                        extra={"entry_id": str(entry.id), "party": party.value},
                    )
                    return entry
                raise InvalidTransitionError(
                    f"Cannot confirm escrow entry in {entry.status} status",
                    details={
                        "entry_id": str(entry.id),
                        "current_status": entry.status,
                        "action": "confirm",
                    },
                )

            kind = (
                TimelineEventKind.RENTER_CONFIRMED
                if party == ConfirmingParty.RENTER
                else TimelineEventKind.OWNER_CONFIRMED
            )
            record_event(entry, kind, actor=actor, note=note)

        cls.get_logger().info(
            "Completion confirmed",
            extra={
                "entry_id": str(entry.id),
                "party": party.value,
                "status": entry.status,
                "both_confirmed": both_confirmed(entry),
            },
        )
        return entry
