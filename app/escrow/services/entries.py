"""
Shared helpers for services that write to an EscrowEntry.

Every writer follows the same shape:

    with transaction.atomic():
        entry = lock_entry(entry_id)            # SELECT ... FOR UPDATE
        if entry.status != EscrowStatus.HELD:   # precondition
            raise InvalidTransitionError(...)
        entry.release()                         # FSM transition in memory
        persist_transition(entry, [...], source=EscrowStatus.HELD)
        record_event(entry, TimelineEventKind.RELEASED, actor, note)
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from django.core.exceptions import ValidationError as DjangoValidationError

from escrow.exceptions import (
    AlreadyReleasedError,
    EscrowNotFoundError,
    InvalidTransitionError,
    StaleRecordError,
)
from escrow.locks import compare_and_set
from escrow.models import EscrowEntry, EscrowTimelineEvent
from escrow.state_machines import EscrowStatus

if TYPE_CHECKING:
    from collections.abc import Iterable


def lock_entry(entry_id: uuid.UUID | str) -> EscrowEntry:
    """Load an entry with a row lock. Must be called inside a transaction."""
    try:
        return EscrowEntry.objects.select_for_update().get(pk=entry_id)
    except (EscrowEntry.DoesNotExist, DjangoValidationError, ValueError) as e:
        raise EscrowNotFoundError(
            f"Escrow entry {entry_id} not found",
            details={"entry_id": str(entry_id)},
        ) from e


def lock_entry_for_rental(rental_id: uuid.UUID | str) -> EscrowEntry:
    """Load a rental's entry with a row lock. Must be called inside a transaction."""
    try:
        return EscrowEntry.objects.select_for_update().get(rental_id=rental_id)
    except (EscrowEntry.DoesNotExist, DjangoValidationError, ValueError) as e:
        raise EscrowNotFoundError(
            f"No escrow entry for rental {rental_id}",
            details={"rental_id": str(rental_id)},
        ) from e


def require_status(entry: EscrowEntry, allowed: Iterable[str], action: str) -> None:
    allowed = list(allowed)
    if entry.status not in allowed:
        raise InvalidTransitionError(
            f"Cannot {action} escrow entry in {entry.status} status",
            details={
                "entry_id": str(entry.id),
                "current_status": entry.status,
                "allowed": [str(s) for s in allowed],
                "action": action,
            },
        )


def persist_transition(
    entry: EscrowEntry,
    fields: Iterable[str],
    source: str,
    action: str,
) -> EscrowEntry:
    """
    Write a transition with a status-and-version guard.

    A lost race is reported with the domain error describing what the
    winning writer did: AlreadyReleasedError if the row is now released,
    InvalidTransitionError otherwise.
    """
    try:
        return compare_and_set(entry, ["status", *fields], status=source)
    except StaleRecordError as e:
        current = (
            EscrowEntry.objects.filter(pk=entry.pk)
            .values_list("status", flat=True)
            .first()
        )
        details = {
            "entry_id": str(entry.pk),
            "current_status": current,
            "action": action,
        }
        if current == EscrowStatus.RELEASED:
            raise AlreadyReleasedError(
                f"Escrow entry {entry.pk} was already released",
                details=details,
            ) from e
        raise InvalidTransitionError(
            f"Escrow entry {entry.pk} changed concurrently (now {current})",
            details=details,
        ) from e


def record_event(entry: EscrowEntry, kind: str, actor=None, note: str = "") -> EscrowTimelineEvent:
    """Append one row to the entry's timeline."""
    return EscrowTimelineEvent.objects.create(
        entry=entry,
        kind=kind,
        actor=actor,
        note=note or "",
    )
