"""
Auto-release worker for escrow entries whose window has elapsed.

Tasks:
- sweep_auto_releases: Periodic task that finds due HELD entries and queues them
- auto_release_entry: Task that releases a single entry as the system actor

Usage:
    # Typically called via celery-beat schedule
    from escrow.workers import sweep_auto_releases

    sweep_auto_releases.delay()

    # Release a specific entry
    auto_release_entry.delay(str(entry.id))
"""

from __future__ import annotations

import logging
from uuid import UUID

from celery import shared_task
from django.conf import settings
from django.utils import timezone

from escrow.exceptions import (
    AlreadyReleasedError,
    EscrowNotFoundError,
    InvalidTransitionError,
    LockAcquisitionError,
)
from escrow.locks import DistributedLock
from escrow.models import EscrowEntry
from escrow.state_machines import DisputeStatus, EscrowStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Maximum entries to queue per sweep
BATCH_SIZE = 100

# Lock TTL for release operations (seconds)
RELEASE_LOCK_TTL = 60

# Lock timeout for blocking acquisition (seconds)
RELEASE_LOCK_TIMEOUT = 10.0


def due_entries(limit: int = BATCH_SIZE):
    """HELD entries past their auto-release time with no active dispute."""
    return (
        EscrowEntry.objects.filter(
            status=EscrowStatus.HELD,
            auto_release_enabled=True,
            auto_release_scheduled_at__isnull=False,
            auto_release_scheduled_at__lte=timezone.now(),
        )
        .exclude(disputes__status__in=DisputeStatus.active())
        .order_by("auto_release_scheduled_at")[:limit]
    )


# =============================================================================
# Periodic Task: Sweep Due Entries
# =============================================================================


@shared_task(bind=True)
def sweep_auto_releases(self) -> dict:
    """
    Queue an auto_release_entry task for every due entry.

    Safe to run repeatedly: auto_release_entry re-checks the entry under
    lock, so an entry queued twice is released once.

    Returns:
        Dict with:
        - queued_count: Number of entries queued
        - skipped: True when auto-release is disabled globally
    """
    if not settings.ESCROW_AUTO_RELEASE_ENABLED:
        logger.info("Auto-release disabled, skipping sweep")
        return {"queued_count": 0, "skipped": True}

    logger.info("Starting auto-release sweep")

    queued_count = 0
    for entry in due_entries():
        try:
            auto_release_entry.delay(str(entry.id))
            queued_count += 1
            logger.info(
                "Queued entry for auto-release",
                extra={
                    "entry_id": str(entry.id),
                    "rental_id": str(entry.rental_id),
                    "scheduled_at": entry.auto_release_scheduled_at.isoformat(),
                },
            )
        except Exception as e:
            logger.error(
                f"Failed to queue entry for auto-release: {e}",
                extra={"entry_id": str(entry.id), "error": str(e)},
            )

    logger.info(
        f"Auto-release sweep complete: queued {queued_count} entries",
        extra={"queued_count": queued_count},
    )
    return {"queued_count": queued_count, "skipped": False}


# =============================================================================
# Individual Release Task
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": 3},
    acks_late=True,
)
def auto_release_entry(self, entry_id: str) -> dict:
    """
    Release one entry as the system actor.

    Returns:
        Dict with:
        - status: One of "released", "already_released", "not_found",
                  "invalid_state", "disputed", "not_due", "lock_failed"
        - entry_id: The entry processed

    Raises:
        Exception: Re-raised to trigger Celery retry for unexpected failures
    """
    from escrow.services import EscrowLedgerService

    try:
        entry_uuid = UUID(str(entry_id))
    except ValueError:
        logger.error(f"Invalid entry_id format: {entry_id}")
        return {"status": "not_found", "entry_id": str(entry_id)}

    lock_key = f"escrow:release:{entry_uuid}"

    try:
        with DistributedLock(
            lock_key, ttl=RELEASE_LOCK_TTL, blocking=True, timeout=RELEASE_LOCK_TIMEOUT
        ):
            # Fresh read under lock
            entry = EscrowEntry.objects.filter(pk=entry_uuid).first()
            if entry is None:
                return {"status": "not_found", "entry_id": str(entry_id)}

            if entry.status == EscrowStatus.RELEASED:
                return {"status": "already_released", "entry_id": str(entry_id)}

            if entry.status != EscrowStatus.HELD:
                logger.info(
                    "Entry no longer held, skipping auto-release",
                    extra={"entry_id": str(entry_id), "current_status": entry.status},
                )
                return {
                    "status": "invalid_state",
                    "entry_id": str(entry_id),
                    "current_status": entry.status,
                }

            if entry.has_open_dispute:
                return {"status": "disputed", "entry_id": str(entry_id)}

            if (
                entry.auto_release_scheduled_at is None
                or entry.auto_release_scheduled_at > timezone.now()
            ):
                return {"status": "not_due", "entry_id": str(entry_id)}

            entry = EscrowLedgerService.release(entry_uuid, actor=None)

    except LockAcquisitionError as e:
        logger.warning(
            f"Could not acquire lock for auto-release: {e}",
            extra={"entry_id": str(entry_id), "lock_key": lock_key},
        )
        return {"status": "lock_failed", "entry_id": str(entry_id), "error": str(e)}

    except AlreadyReleasedError:
        return {"status": "already_released", "entry_id": str(entry_id)}

    except EscrowNotFoundError:
        return {"status": "not_found", "entry_id": str(entry_id)}

    except InvalidTransitionError as e:
        # Lost a race with a dispute or an administrator action
        logger.info(
            "Auto-release no longer applicable",
            extra={"entry_id": str(entry_id), "details": e.details},
        )
        return {"status": "invalid_state", "entry_id": str(entry_id)}

    logger.info(
        "Entry auto-released",
        extra={"entry_id": str(entry_id), "rental_id": str(entry.rental_id)},
    )
    return {"status": "released", "entry_id": str(entry_id)}


__all__ = [
    "auto_release_entry",
    "due_entries",
    "sweep_auto_releases",
]
