"""
Dispute model.

A dispute freezes its escrow entry until an administrator resolves or
cancels it. At most one dispute per entry can be active (open or under
review) at a time; resolved and cancelled disputes are kept for audit.
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from escrow.state_machines import DisputeOutcome, DisputeStatus


class Dispute(UUIDPrimaryKeyMixin, BaseModel):
    """
    A renter's or owner's challenge to the normal release flow.

    State Flow:
        OPEN -> UNDER_REVIEW -> RESOLVED
        OPEN -> RESOLVED
        OPEN / UNDER_REVIEW -> CANCELLED

    Invariant:
        refund_amount_cents + release_amount_cents == entry.amount_cents
        whenever outcome is set.
    """

    entry = models.ForeignKey(
        "escrow.EscrowEntry",
        on_delete=models.PROTECT,
        related_name="disputes",
    )

    opened_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="escrow_disputes_opened",
    )
    opened_at = models.DateTimeField(default=timezone.now)
    reason = models.TextField()

    status = FSMField(
        default=DisputeStatus.OPEN,
        choices=DisputeStatus.choices,
        db_index=True,
        protected=True,
    )

    outcome = models.CharField(
        max_length=20,
        choices=DisputeOutcome.choices,
        null=True,
        blank=True,
    )
    refund_amount_cents = models.PositiveBigIntegerField(null=True, blank=True)
    release_amount_cents = models.PositiveBigIntegerField(null=True, blank=True)

    resolved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="escrow_disputes_resolved",
    )
    resolved_at = models.DateTimeField(null=True, blank=True)
    resolution_note = models.TextField(blank=True, default="")

    class Meta:
        ordering = ["-opened_at"]
        verbose_name = "Dispute"
        verbose_name_plural = "Disputes"
        constraints = [
            models.UniqueConstraint(
                fields=["entry"],
                condition=models.Q(status__in=["open", "under_review"]),
                name="escrow_dispute_one_active_per_entry",
            ),
        ]

    def __str__(self) -> str:
        return f"Dispute({self.id}, {self.status}, entry={self.entry_id})"

    @property
    def is_active(self) -> bool:
        return self.status in DisputeStatus.active()

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status, source=DisputeStatus.OPEN, target=DisputeStatus.UNDER_REVIEW
    )
    def start_review(self):
        pass

    @transition(
        field=status,
        source=[DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW],
        target=DisputeStatus.RESOLVED,
    )
    def resolve(self, admin, outcome, refund_cents, release_cents, note):
        self.resolved_by = admin
        self.resolved_at = timezone.now()
        self.outcome = outcome
        self.refund_amount_cents = refund_cents
        self.release_amount_cents = release_cents
        self.resolution_note = note

    @transition(
        field=status,
        source=[DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW],
        target=DisputeStatus.CANCELLED,
    )
    def cancel(self, admin, note):
        self.resolved_by = admin
        self.resolved_at = timezone.now()
        self.resolution_note = note
