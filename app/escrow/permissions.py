"""
Permission classes for the escrow API.

- IsEntryParty: User is the entry's renter (payer) or owner (payee)
- IsEntryPartyOrAdmin: Party access, plus staff for read-only views

Administrator endpoints use DRF's IsAdminUser directly.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rest_framework import permissions

from escrow.models import EscrowEntry
from escrow.state_machines import ConfirmingParty

if TYPE_CHECKING:
    from rest_framework.request import Request
    from rest_framework.views import APIView


def party_for(entry: EscrowEntry, user) -> str | None:
    """Which side of the rental the user is on, or None."""
    if not user or not user.is_authenticated:
        return None
    if entry.payer_id == user.pk:
        return ConfirmingParty.RENTER
    if entry.payee_id == user.pk:
        return ConfirmingParty.OWNER
    return None


class IsEntryParty(permissions.BasePermission):
    """Allows access only to the renter or owner of the entry."""

    message = "You are not a party to this escrow entry."

    def has_object_permission(
        self, request: Request, view: APIView, obj: EscrowEntry
    ) -> bool:
        return party_for(obj, request.user) is not None


class IsEntryPartyOrAdmin(IsEntryParty):
    """Parties, or staff users."""

    def has_object_permission(
        self, request: Request, view: APIView, obj: EscrowEntry
    ) -> bool:
        if request.user.is_authenticated and request.user.is_staff:
            return True
        return super().has_object_permission(request, view, obj)
