"""
Workers for async escrow processing.

This module contains Celery tasks for background escrow operations:
- AutoRelease: Releases HELD entries whose auto-release window has elapsed
- PayoutExecutor: Executes pending payouts and refunds against the gateway

Usage:
    from escrow.workers import (
        auto_release_entry,
        execute_single_payout,
        execute_single_refund,
        process_pending_payouts,
        recover_stuck_payouts,
        sweep_auto_releases,
    )

    sweep_auto_releases.delay()
    execute_single_payout.delay(str(payout_id))
"""

from escrow.workers.auto_release import auto_release_entry, sweep_auto_releases
from escrow.workers.payout_executor import (
    execute_single_payout,
    execute_single_refund,
    process_pending_payouts,
    recover_stuck_payouts,
)

__all__ = [
    # Auto Release
    "auto_release_entry",
    "sweep_auto_releases",
    # Payout Executor
    "execute_single_payout",
    "execute_single_refund",
    "process_pending_payouts",
    "recover_stuck_payouts",
]
