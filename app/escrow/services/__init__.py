"""
Escrow service layer.

Usage:
    from escrow.services import (
        ConfirmationService,
        DisputeService,
        EscrowLedgerService,
        EscrowReportingService,
        SettlementService,
    )
"""

from escrow.services.confirmations import ConfirmationService, both_confirmed
from escrow.services.disputes import DisputeService, split_for_outcome
from escrow.services.fees import FeeBreakdown, calculate_fee, calculate_payout, split_amount
from escrow.services.ledger import EscrowLedgerService
from escrow.services.payouts import (
    SettlementExecutionResult,
    SettlementService,
    queue_settlement,
)
from escrow.services.reporting import EscrowReportingService

__all__ = [
    "ConfirmationService",
    "DisputeService",
    "EscrowLedgerService",
    "EscrowReportingService",
    "FeeBreakdown",
    "SettlementExecutionResult",
    "SettlementService",
    "both_confirmed",
    "calculate_fee",
    "calculate_payout",
    "queue_settlement",
    "split_amount",
    "split_for_outcome",
]
