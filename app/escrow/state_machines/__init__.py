"""
State machine enums for escrow models.

This module defines the state enums used by escrow models with django-fsm.
"""

from escrow.state_machines.states import (
    ConfirmingParty,
    DisputeOutcome,
    DisputeStatus,
    EscrowStatus,
    SettlementStatus,
    TimelineEventKind,
    WebhookEventStatus,
)

__all__ = [
    "ConfirmingParty",
    "DisputeOutcome",
    "DisputeStatus",
    "EscrowStatus",
    "SettlementStatus",
    "TimelineEventKind",
    "WebhookEventStatus",
]
