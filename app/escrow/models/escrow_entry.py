"""
EscrowEntry model: custody record for a single rental payment.

The entry is the single source of truth for "where is the money". Its
``status`` is a protected django-fsm field: the only way to change it is
one of the transition methods below, and the only way to persist a
transition is a conditional update (see escrow.locks.compare_and_set),
which is what the services in escrow.services do.

Usage:
    from escrow.models import EscrowEntry
    from escrow.state_machines import EscrowStatus

    entry = EscrowEntry(
        rental_id=rental.id,
        payer=renter,
        payee=owner,
        amount_cents=10000,
    )
    entry.hold()   # pending -> held, in memory
    entry.save()   # insert

Note:
    Never call ``refresh_from_db()`` without ``fields=`` on an entry: the
    protected status field cannot be reassigned. Re-fetch with
    ``EscrowEntry.objects.get(pk=...)`` instead.
"""

from __future__ import annotations

from decimal import Decimal

from django.conf import settings
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import F
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from escrow.state_machines import DisputeStatus, EscrowStatus


class EscrowEntry(UUIDPrimaryKeyMixin, BaseModel):
    """
    Custody record for one rental's payment, from capture to settlement.

    State Flow:
        PENDING -> HELD -> RELEASED
        PENDING -> CANCELLED
        HELD -> DISPUTED -> RELEASED / REFUNDED
        DISPUTED -> HELD (dispute cancelled)

    Fields:
        rental_id: Rental this payment belongs to (at most one entry each)
        payer / payee: Renter and equipment owner
        amount_cents / currency: Captured amount in minor units
        status: Current FSM state
        version: Optimistic locking version, bumped by every write
        renter_* / owner_*: Completion confirmations (never reset except
            by dispute cancellation)
        admin_*: Administrator verification recorded on manual release
        fee_*: Platform fee fixed at hold time
        auto_release_*: Timeout policy for the auto-release scheduler
    """

    # ==========================================================================
    # Parties & Rental
    # ==========================================================================

    rental_id = models.UUIDField(
        unique=True,
        help_text="Rental this payment custodies (one escrow per rental)",
    )

    payer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="escrow_payments",
        help_text="Renter who paid",
    )

    payee = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="escrow_earnings",
        help_text="Equipment owner who will be paid",
    )

    # ==========================================================================
    # Amount & Gateway
    # ==========================================================================

    amount_cents = models.PositiveBigIntegerField(
        help_text="Captured amount in smallest currency unit (e.g., cents)",
    )

    currency = models.CharField(
        max_length=3,
        default="usd",
        help_text="ISO 4217 currency code (lowercase)",
    )

    gateway_ref = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Gateway capture reference (e.g., Stripe PaymentIntent pi_xxx)",
    )

    payee_gateway_account = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Gateway account that receives the payout (e.g., acct_xxx)",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    status = FSMField(
        default=EscrowStatus.PENDING,
        choices=EscrowStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current custody state (managed by FSM)",
    )

    version = models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each write",
    )

    # ==========================================================================
    # Confirmations
    # ==========================================================================

    renter_confirmed = models.BooleanField(default=False)
    renter_confirmed_at = models.DateTimeField(null=True, blank=True)
    renter_note = models.TextField(blank=True, default="")

    owner_confirmed = models.BooleanField(default=False)
    owner_confirmed_at = models.DateTimeField(null=True, blank=True)
    owner_note = models.TextField(blank=True, default="")

    admin_verified = models.BooleanField(default=False)
    admin_verified_at = models.DateTimeField(null=True, blank=True)
    admin_verified_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="+",
        help_text="Administrator who verified and released the funds",
    )
    admin_note = models.TextField(blank=True, default="")

    # ==========================================================================
    # Platform Fee
    # ==========================================================================

    fee_percentage = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        default=Decimal("10"),
        validators=[MinValueValidator(0), MaxValueValidator(100)],
        help_text="Platform fee percentage applied at hold time",
    )

    fee_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Platform fee in minor units: round(amount * percentage / 100)",
    )

    fee_deducted_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the fee was withheld from a payout",
    )

    # ==========================================================================
    # Auto-Release Policy
    # ==========================================================================

    auto_release_enabled = models.BooleanField(default=True)

    auto_release_window_days = models.PositiveSmallIntegerField(default=3)

    auto_release_scheduled_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Earliest time the scheduler may release without confirmations",
    )

    # ==========================================================================
    # State Timestamps
    # ==========================================================================

    held_at = models.DateTimeField(null=True, blank=True)
    disputed_at = models.DateTimeField(null=True, blank=True)
    released_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Escrow Entry"
        verbose_name_plural = "Escrow Entries"
        indexes = [
            models.Index(
                fields=["status", "auto_release_scheduled_at"],
                name="escrow_entry_status_sched_idx",
            ),
            models.Index(fields=["payee", "status"], name="escrow_entry_payee_status_idx"),
            models.Index(fields=["payer", "status"], name="escrow_entry_payer_status_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount_cents__gt=0),
                name="escrow_entry_amount_positive",
            ),
            models.CheckConstraint(
                condition=models.Q(fee_cents__lte=F("amount_cents")),
                name="escrow_entry_fee_within_amount",
            ),
        ]

    def __str__(self) -> str:
        amount_display = f"{self.amount_cents / 100:.2f} {self.currency.upper()}"
        return f"EscrowEntry({self.id}, {self.status}, {amount_display})"

    def save(self, *args, **kwargs):
        """
        Save with version auto-increment for optimistic locking.

        Transitions go through compare_and_set instead; this covers
        inserts and administrative edits.
        """
        is_update = not self._state.adding and not kwargs.get("force_insert", False)
        if is_update:
            self.version = F("version") + 1
        super().save(*args, **kwargs)
        if is_update:
            self.refresh_from_db(fields=["version"])

    # ==========================================================================
    # Derived State
    # ==========================================================================

    @property
    def is_terminal(self) -> bool:
        return self.status in EscrowStatus.terminal()

    @property
    def active_dispute(self):
        """The open or under-review dispute, if any."""
        return self.disputes.filter(status__in=DisputeStatus.active()).first()

    @property
    def has_open_dispute(self) -> bool:
        return self.disputes.filter(status__in=DisputeStatus.active()).exists()

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(field=status, source=EscrowStatus.PENDING, target=EscrowStatus.HELD)
    def hold(self):
        """Capture confirmed; funds are now in custody."""
        self.held_at = timezone.now()

    @transition(
        field=status, source=EscrowStatus.PENDING, target=EscrowStatus.CANCELLED
    )
    def cancel(self):
        """Capture never completed."""
        self.cancelled_at = timezone.now()

    @transition(field=status, source=EscrowStatus.HELD, target=EscrowStatus.RELEASED)
    def release(self):
        """Normal release to the owner (admin or scheduler)."""
        self.released_at = timezone.now()

    @transition(field=status, source=EscrowStatus.HELD, target=EscrowStatus.DISPUTED)
    def open_dispute(self):
        """Freeze the entry pending administrator adjudication."""
        self.disputed_at = timezone.now()

    @transition(
        field=status, source=EscrowStatus.DISPUTED, target=EscrowStatus.RELEASED
    )
    def resolve_release(self):
        """Dispute resolved entirely in the owner's favour."""
        self.released_at = timezone.now()

    @transition(
        field=status, source=EscrowStatus.DISPUTED, target=EscrowStatus.REFUNDED
    )
    def resolve_refund(self):
        """Dispute resolved with a renter refund (full, partial or split)."""
        self.refunded_at = timezone.now()

    @transition(field=status, source=EscrowStatus.DISPUTED, target=EscrowStatus.HELD)
    def reinstate(self):
        """
        Dispute cancelled by an administrator; back to custody.

        Confirmations are cleared so release needs fresh acknowledgements.
        """
        self.renter_confirmed = False
        self.renter_confirmed_at = None
        self.renter_note = ""
        self.owner_confirmed = False
        self.owner_confirmed_at = None
        self.owner_note = ""
