"""
Escrow custody and settlement for peer-to-peer rentals.

Related files:
    - models/: EscrowEntry, Dispute, Payout, Refund, timeline, webhook events
    - services/: Ledger, confirmations, disputes, settlement, reporting
    - webhooks/: Gateway webhook endpoint and event handlers
    - workers/: Auto-release scheduler and payout executor
"""
