"""
Escrow models.

Usage:
    from escrow.models import EscrowEntry, Dispute, Payout, Refund
"""

from escrow.models.dispute import Dispute
from escrow.models.escrow_entry import EscrowEntry
from escrow.models.settlement import Payout, Refund, SettlementLeg
from escrow.models.timeline import EscrowTimelineEvent
from escrow.models.webhook_event import GatewayWebhookEvent

__all__ = [
    "Dispute",
    "EscrowEntry",
    "EscrowTimelineEvent",
    "GatewayWebhookEvent",
    "Payout",
    "Refund",
    "SettlementLeg",
]
