"""
Tests for ConfirmationService.
"""

import uuid

import pytest

from core.exceptions import ValidationError
from escrow.exceptions import EscrowNotFoundError, InvalidNoteError, InvalidTransitionError
from escrow.models import EscrowEntry
from escrow.services import ConfirmationService, both_confirmed
from escrow.state_machines import ConfirmingParty, EscrowStatus, TimelineEventKind
from escrow.tests.factories import HeldEscrowEntryFactory


@pytest.mark.django_db
class TestConfirmByParty:
    def test_renter_confirmation(self, held_entry, renter):
        entry = ConfirmationService.confirm_by_party(
            held_entry.id, ConfirmingParty.RENTER, "  Returned with all parts  ", actor=renter
        )

        assert entry.renter_confirmed is True
        assert entry.renter_confirmed_at is not None
        assert entry.renter_note == "Returned with all parts"
        assert entry.owner_confirmed is False
        assert entry.version == held_entry.version + 1
        event = entry.timeline.get()
        assert event.kind == TimelineEventKind.RENTER_CONFIRMED
        assert event.actor == renter

    def test_both_confirmations_open_the_gate(self, confirmed_entry):
        assert both_confirmed(confirmed_entry) is True
        assert confirmed_entry.status == EscrowStatus.HELD

    def test_confirmation_is_idempotent(self, held_entry, owner):
        first = ConfirmationService.confirm_by_party(
            held_entry.id, "owner", "Got it back in one piece", actor=owner
        )
        second = ConfirmationService.confirm_by_party(
            held_entry.id, "owner", "Saying it again later", actor=owner
        )

        assert second.owner_confirmed_at == first.owner_confirmed_at
        assert second.owner_note == "Got it back in one piece"
        assert second.version == first.version
        assert second.timeline.count() == 1

    def test_short_note_rejected(self, held_entry):
        with pytest.raises(InvalidNoteError) as exc_info:
            ConfirmationService.confirm_by_party(held_entry.id, "renter", "fine")

        assert exc_info.value.details["min_length"] == 10
        assert EscrowEntry.objects.get(pk=held_entry.pk).renter_confirmed is False

    def test_unknown_party_rejected(self, held_entry):
        with pytest.raises(ValidationError) as exc_info:
            ConfirmationService.confirm_by_party(held_entry.id, "admin", "Looks good to me")

        assert exc_info.value.error_code == "INVALID_PARTY"

    def test_allowed_while_disputed(self, renter, owner):
        entry = HeldEscrowEntryFactory(payer=renter, payee=owner)
        entry.open_dispute()
        entry.save()

        confirmed = ConfirmationService.confirm_by_party(
            entry.id, "renter", "For the record, it was returned", actor=renter
        )

        assert confirmed.renter_confirmed is True
        assert confirmed.status == EscrowStatus.DISPUTED

    @pytest.mark.parametrize("status", [EscrowStatus.PENDING, EscrowStatus.RELEASED])
    def test_rejected_outside_held_or_disputed(self, renter, owner, status):
        entry = HeldEscrowEntryFactory(payer=renter, payee=owner, status=status)

        with pytest.raises(InvalidTransitionError) as exc_info:
            ConfirmationService.confirm_by_party(entry.id, "renter", "Returned on time")

        assert exc_info.value.details["current_status"] == status

    def test_unknown_entry(self):
        with pytest.raises(EscrowNotFoundError):
            ConfirmationService.confirm_by_party(uuid.uuid4(), "renter", "Returned on time")
