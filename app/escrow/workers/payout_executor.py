"""
Settlement executor worker for payouts and refunds.

Tasks:
- process_pending_payouts: Periodic task that queues every due PENDING leg
- execute_single_payout: Executes one payout with distributed locking
- execute_single_refund: Executes one refund with distributed locking
- recover_stuck_payouts: Periodic task that returns interrupted legs to PENDING

Transient gateway failures are not retried by Celery: the service defers
the leg with an exponential next_attempt_at and the periodic scan picks
it up again once it is due.

Usage:
    from escrow.workers import execute_single_payout, process_pending_payouts

    process_pending_payouts.delay()
    execute_single_payout.delay(str(payout.id))
"""

from __future__ import annotations

import logging
from uuid import UUID

from celery import shared_task

from core.exceptions import NotFoundError

from escrow.exceptions import LockAcquisitionError
from escrow.models import Payout, Refund

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Maximum legs of each kind to queue per scan
BATCH_SIZE = 100


# =============================================================================
# Periodic Task: Scan for Due Legs
# =============================================================================


@shared_task(bind=True)
def process_pending_payouts(self) -> dict:
    """
    Queue execution tasks for PENDING payouts and refunds that are due.

    Idempotent: the executor claims a leg with a conditional update, so a
    leg queued twice is submitted once.

    Returns:
        Dict with:
        - payouts_queued: Number of payouts queued
        - refunds_queued: Number of refunds queued
    """
    from escrow.services import SettlementService

    logger.info("Starting pending settlement scan")

    counts = {}
    for leg_model, task, key in (
        (Payout, execute_single_payout, "payouts_queued"),
        (Refund, execute_single_refund, "refunds_queued"),
    ):
        queued = 0
        for leg_id in SettlementService.due_ids(leg_model, limit=BATCH_SIZE):
            try:
                task.delay(str(leg_id))
                queued += 1
            except Exception as e:
                logger.error(
                    f"Failed to queue {leg_model.__name__.lower()} for execution: {e}",
                    extra={"leg_id": str(leg_id), "error": str(e)},
                )
        counts[key] = queued

    logger.info(
        "Pending settlement scan complete",
        extra=counts,
    )
    return counts


# =============================================================================
# Individual Execution Tasks
# =============================================================================


def _run_execution(leg_label: str, leg_id: str, execute) -> dict:
    id_key = f"{leg_label}_id"

    try:
        leg_uuid = UUID(str(leg_id))
    except ValueError:
        logger.error(f"Invalid {id_key} format: {leg_id}")
        return {"status": "not_found", id_key: str(leg_id), "error": "Invalid UUID format"}

    logger.info(f"Processing {leg_label} execution", extra={id_key: str(leg_id)})

    try:
        result = execute(leg_uuid)
    except NotFoundError:
        logger.warning(f"{leg_label.capitalize()} not found", extra={id_key: str(leg_id)})
        return {"status": "not_found", id_key: str(leg_id)}
    except LockAcquisitionError as e:
        logger.warning(
            f"Could not acquire lock for {leg_label} execution: {e}",
            extra={id_key: str(leg_id)},
        )
        return {"status": "lock_failed", id_key: str(leg_id), "error": str(e)}

    if result.success:
        leg = result.data.leg
        return {
            "status": "executed",
            id_key: str(leg_id),
            "leg_status": leg.status,
            "transaction_ref": result.data.transaction_ref,
        }

    logger.warning(
        f"{leg_label.capitalize()} execution did not complete: {result.error}",
        extra={id_key: str(leg_id), "error_code": result.error_code},
    )
    status = "deferred" if result.error_code in ("GATEWAY_UNAVAILABLE", "NOT_DUE") else "failed"
    return {
        "status": status,
        id_key: str(leg_id),
        "error": result.error,
        "error_code": result.error_code,
    }


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": 3},
    acks_late=True,
)
def execute_single_payout(self, payout_id: str) -> dict:
    """
    Execute a single payout.

    Returns:
        Dict with:
        - status: One of "executed", "deferred", "failed", "not_found",
                  "lock_failed"
        - payout_id: The payout processed
        - transaction_ref: Gateway transfer reference, when obtained
    """
    from escrow.services import SettlementService

    return _run_execution("payout", payout_id, SettlementService.execute_payout)


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": 3},
    acks_late=True,
)
def execute_single_refund(self, refund_id: str) -> dict:
    """Execute a single refund. Same result shape as execute_single_payout."""
    from escrow.services import SettlementService

    return _run_execution("refund", refund_id, SettlementService.execute_refund)


# =============================================================================
# Periodic Task: Recover Interrupted Legs
# =============================================================================


@shared_task
def recover_stuck_payouts() -> dict:
    """
    Return PROCESSING legs that never stored a gateway reference to PENDING.

    Returns:
        Dict with counts of recovered payouts and refunds
    """
    from escrow.services import SettlementService

    result = {
        "payouts_recovered": SettlementService.recover_stuck(Payout, limit=BATCH_SIZE),
        "refunds_recovered": SettlementService.recover_stuck(Refund, limit=BATCH_SIZE),
    }

    if result["payouts_recovered"] or result["refunds_recovered"]:
        logger.info("Recovered stuck settlements", extra=result)

    return result


__all__ = [
    "execute_single_payout",
    "execute_single_refund",
    "process_pending_payouts",
    "recover_stuck_payouts",
]
