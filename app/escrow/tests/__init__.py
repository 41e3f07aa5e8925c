"""
Tests for the escrow app.

This package contains test modules for:
- test_fees.py: Platform fee arithmetic
- test_models.py: Entry, dispute, settlement leg and timeline models
- test_locks.py: Conditional updates and distributed locks
- test_ledger.py / test_confirmations.py / test_disputes.py: Service layer
- test_settlement.py: Payout and refund execution
- test_reporting.py: Aggregates
- test_auto_release.py / test_payout_executor.py / test_tasks.py: Celery tasks
- test_handlers.py: Webhook handlers
- test_stripe_gateway.py: Stripe adapter error mapping and event parsing
- test_views.py: API endpoints
- test_integration.py: Full release and dispute journeys

Usage:
    pytest escrow/tests/
    pytest escrow/tests/test_ledger.py
"""
