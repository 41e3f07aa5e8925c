"""
Payout and Refund models: the money-movement legs of a settled entry.

A released entry gets one Payout (owner-facing). A dispute outcome with a
refund gets one Refund (renter-facing); a split gets both. Legs settle
out-of-band: they stay PENDING until the executor or a gateway webhook
applies a result, so a slow gateway never holds the ledger's write path.

State Flow (both legs):
    PENDING -> PROCESSING -> COMPLETED
    PENDING -> PROCESSING -> PENDING (transient failure, next_attempt_at set)
    PENDING / PROCESSING -> FAILED
    FAILED -> PENDING (administrator retry)
"""

from __future__ import annotations

from django.db import models
from django.db.models import F
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from escrow.state_machines import SettlementStatus


class SettlementLeg(UUIDPrimaryKeyMixin, BaseModel):
    """
    Abstract base for a single outbound money movement.

    Fields:
        amount_cents / currency: Amount to move
        status: Current FSM state
        transaction_ref: Gateway reference (transfer or refund id)
        failure_reason: Last failure message
        attempts: Gateway calls made so far
        next_attempt_at: Earliest time the executor may try again
        retry_count: Administrator retries so far (part of the idempotency key)
        version: Optimistic locking version
    """

    amount_cents = models.PositiveBigIntegerField()
    currency = models.CharField(max_length=3, default="usd")

    status = FSMField(
        default=SettlementStatus.PENDING,
        choices=SettlementStatus.choices,
        db_index=True,
        protected=True,
    )

    transaction_ref = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        db_index=True,
    )
    failure_reason = models.TextField(null=True, blank=True)

    attempts = models.PositiveSmallIntegerField(default=0)
    next_attempt_at = models.DateTimeField(null=True, blank=True)
    retry_count = models.PositiveSmallIntegerField(default=0)

    version = models.PositiveIntegerField(default=1)

    # Name of the concrete leg's settlement timestamp field
    settled_at_field: str = ""

    class Meta:
        abstract = True
        ordering = ["-created_at"]

    def save(self, *args, **kwargs):
        is_update = not self._state.adding and not kwargs.get("force_insert", False)
        if is_update:
            self.version = F("version") + 1
        super().save(*args, **kwargs)
        if is_update:
            self.refresh_from_db(fields=["version"])

    @property
    def is_settled(self) -> bool:
        return self.status in (SettlementStatus.COMPLETED, SettlementStatus.FAILED)

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field="status",
        source=SettlementStatus.PENDING,
        target=SettlementStatus.PROCESSING,
    )
    def start(self):
        self.attempts += 1
        self.next_attempt_at = None

    @transition(
        field="status",
        source=SettlementStatus.PROCESSING,
        target=SettlementStatus.PENDING,
    )
    def defer(self, next_attempt_at, reason: str):
        self.next_attempt_at = next_attempt_at
        self.failure_reason = reason

    @transition(
        field="status",
        source=[SettlementStatus.PENDING, SettlementStatus.PROCESSING],
        target=SettlementStatus.COMPLETED,
    )
    def complete(self, transaction_ref: str | None = None):
        if transaction_ref:
            self.transaction_ref = transaction_ref
        self.failure_reason = None
        self.mark_settled_at(timezone.now())

    @transition(
        field="status",
        source=[SettlementStatus.PENDING, SettlementStatus.PROCESSING],
        target=SettlementStatus.FAILED,
    )
    def fail(self, reason: str):
        self.failure_reason = reason

    @transition(
        field="status",
        source=SettlementStatus.FAILED,
        target=SettlementStatus.PENDING,
    )
    def requeue(self):
        self.attempts = 0
        self.retry_count += 1
        self.next_attempt_at = None

    def mark_settled_at(self, when) -> None:
        setattr(self, self.settled_at_field, when)


class Payout(SettlementLeg):
    """
    Owner-facing transfer of the net amount.

    On the normal path: amount_cents == entry.amount_cents - entry.fee_cents.
    On a dispute path: amount_cents == release - fee(release).
    """

    settled_at_field = "paid_at"

    entry = models.OneToOneField(
        "escrow.EscrowEntry",
        on_delete=models.PROTECT,
        related_name="payout",
    )

    fee_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Platform fee withheld on this leg",
    )

    destination_account = models.CharField(max_length=255, blank=True, default="")

    paid_at = models.DateTimeField(null=True, blank=True)

    class Meta(SettlementLeg.Meta):
        verbose_name = "Payout"
        verbose_name_plural = "Payouts"
        indexes = [
            models.Index(
                fields=["status", "next_attempt_at"],
                name="escrow_payout_status_next_idx",
            ),
        ]

    def __str__(self) -> str:
        return f"Payout({self.id}, {self.status}, {self.amount_cents})"


class Refund(SettlementLeg):
    """Renter-facing refund of the disputed amount awarded to the renter."""

    settled_at_field = "refunded_at"

    entry = models.OneToOneField(
        "escrow.EscrowEntry",
        on_delete=models.PROTECT,
        related_name="refund",
    )

    refunded_at = models.DateTimeField(null=True, blank=True)

    class Meta(SettlementLeg.Meta):
        verbose_name = "Refund"
        verbose_name_plural = "Refunds"
        indexes = [
            models.Index(
                fields=["status", "next_attempt_at"],
                name="escrow_refund_status_next_idx",
            ),
        ]

    def __str__(self) -> str:
        return f"Refund({self.id}, {self.status}, {self.amount_cents})"
