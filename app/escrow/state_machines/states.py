"""
State enums for escrow models.

This module defines the enums used by the escrow models with django-fsm.
These are Django TextChoices for database storage and admin integration.

State Machines Overview:

EscrowEntry States:
    pending → held → released
    pending → cancelled (capture failed)
    held → disputed → released / refunded
    disputed → held (dispute cancelled, no fund movement)

Dispute States:
    open → under_review → resolved
    open/under_review → cancelled

Settlement Leg States (Payout, Refund):
    pending → processing → completed
    pending → processing → pending (transient failure, retry)
    pending → processing → failed (attempts exhausted or permanent error)
"""

from django.db import models


class EscrowStatus(models.TextChoices):
    """
    States for the EscrowEntry lifecycle.

    Terminal states: RELEASED, REFUNDED, CANCELLED

    State Flow (Normal):
        PENDING → HELD → RELEASED

    State Flow (Dispute):
        HELD → DISPUTED → RELEASED / REFUNDED
        HELD → DISPUTED → HELD (dispute cancelled)

    Capture Failure:
        PENDING → CANCELLED
    """

    PENDING = "pending", "Pending"
    HELD = "held", "Held"
    RELEASED = "released", "Released"
    DISPUTED = "disputed", "Disputed"
    REFUNDED = "refunded", "Refunded"
    CANCELLED = "cancelled", "Cancelled"

    @classmethod
    def terminal(cls) -> list[str]:
        """States from which no further status transition is accepted."""
        return [cls.RELEASED, cls.REFUNDED, cls.CANCELLED]


class DisputeStatus(models.TextChoices):
    """Resolution status of a dispute."""

    OPEN = "open", "Open"
    UNDER_REVIEW = "under_review", "Under Review"
    RESOLVED = "resolved", "Resolved"
    CANCELLED = "cancelled", "Cancelled"

    @classmethod
    def active(cls) -> list[str]:
        """Statuses that freeze the entry."""
        return [cls.OPEN, cls.UNDER_REVIEW]


class DisputeOutcome(models.TextChoices):
    """
    Administrator decision for a dispute.

    RELEASE_TO_OWNER and REFUND_TO_RENTER move the whole amount to one
    side. PARTIAL_REFUND and SPLIT require explicit amounts that sum to
    the entry amount.
    """

    RELEASE_TO_OWNER = "release_to_owner", "Release to Owner"
    REFUND_TO_RENTER = "refund_to_renter", "Refund to Renter"
    PARTIAL_REFUND = "partial_refund", "Partial Refund"
    SPLIT = "split", "Split"

    @classmethod
    def requires_amounts(cls) -> list[str]:
        return [cls.PARTIAL_REFUND, cls.SPLIT]


class SettlementStatus(models.TextChoices):
    """
    States shared by the Payout and Refund legs.

    Terminal states: COMPLETED, FAILED (an administrator may retry FAILED)
    """

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"


class ConfirmingParty(models.TextChoices):
    """Parties that can attest a rental was completed."""

    RENTER = "renter", "Renter"
    OWNER = "owner", "Owner"


class TimelineEventKind(models.TextChoices):
    """Kinds of entries in the append-only escrow timeline."""

    CAPTURED = "captured", "Captured"
    HELD = "held", "Held"
    RENTER_CONFIRMED = "renter_confirmed", "Renter Confirmed"
    OWNER_CONFIRMED = "owner_confirmed", "Owner Confirmed"
    ADMIN_VERIFIED = "admin_verified", "Admin Verified"
    RELEASE_REJECTED = "release_rejected", "Release Rejected"
    RELEASED = "released", "Released"
    REFUNDED = "refunded", "Refunded"
    CANCELLED = "cancelled", "Cancelled"
    DISPUTED = "disputed", "Disputed"
    DISPUTE_UNDER_REVIEW = "dispute_under_review", "Dispute Under Review"
    RESOLVED = "resolved", "Resolved"
    DISPUTE_CANCELLED = "dispute_cancelled", "Dispute Cancelled"
    PAYOUT_COMPLETED = "payout_completed", "Payout Completed"
    PAYOUT_FAILED = "payout_failed", "Payout Failed"
    REFUND_COMPLETED = "refund_completed", "Refund Completed"
    REFUND_FAILED = "refund_failed", "Refund Failed"
    SETTLEMENT_RETRIED = "settlement_retried", "Settlement Retried"


class WebhookEventStatus(models.TextChoices):
    """
    Processing status for GatewayWebhookEvent records.

    Flow:
        PENDING → PROCESSING → PROCESSED
        PENDING → PROCESSING → FAILED (retried by retry_failed_webhooks)
    """

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    PROCESSED = "processed", "Processed"
    FAILED = "failed", "Failed"
