"""
Django signals for the escrow app.

``escrow_status_changed`` is the notification hook: every committed
status transition of an EscrowEntry fires it exactly once, after the
transaction commits. Receivers (email, push, analytics) live in other
apps and connect to it; a failing receiver is logged and never affects
the ledger.

Signal arguments:
    sender: EscrowEntry
    entry_id: UUID of the entry
    rental_id: UUID of the rental
    previous_status: Status before the transition
    status: Status after the transition
    actor_id: User id that caused it, or None for the system

Usage:
    from django.dispatch import receiver
    from escrow.signals import escrow_status_changed

    @receiver(escrow_status_changed)
    def notify_parties(sender, entry_id, status, **kwargs):
        ...
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.db import transaction
from django.dispatch import Signal

if TYPE_CHECKING:
    from escrow.models import EscrowEntry

logger = logging.getLogger(__name__)


escrow_status_changed = Signal()


def send_status_changed(entry: EscrowEntry, previous_status: str, actor=None) -> None:
    """
    Fire escrow_status_changed once the current transaction commits.

    Outside a transaction the signal fires immediately.
    """
    payload = {
        "entry_id": entry.id,
        "rental_id": entry.rental_id,
        "previous_status": previous_status,
        "status": entry.status,
        "actor_id": getattr(actor, "pk", None),
    }

    def _send():
        responses = escrow_status_changed.send_robust(sender=type(entry), **payload)
        for receiver, response in responses:
            if isinstance(response, Exception):
                logger.error(
                    "Escrow status receiver failed",
                    extra={
                        "entry_id": str(payload["entry_id"]),
                        "receiver": getattr(receiver, "__qualname__", repr(receiver)),
                        "status": payload["status"],
                    },
                    exc_info=response,
                )

    transaction.on_commit(_send)


def log_status_change(sender, entry_id, previous_status, status, actor_id=None, **kwargs):
    """Default receiver: one structured log line per transition."""
    logger.info(
        "Escrow status changed",
        extra={
            "entry_id": str(entry_id),
            "rental_id": str(kwargs.get("rental_id")),
            "previous_status": previous_status,
            "status": status,
            "actor_id": actor_id,
        },
    )


def register_signals():
    """
    Connect the escrow app's own receivers.

    Called from apps.py when the app is ready.
    """
    escrow_status_changed.connect(
        log_status_change,
        dispatch_uid="escrow.log_status_change",
    )
    logger.debug("Escrow signals registered")
