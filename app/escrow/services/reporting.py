"""
Read-only escrow reporting for dashboards and administrators.

Usage:
    from escrow.services import EscrowReportingService

    EscrowReportingService.total_held("usd")            # cents currently in custody
    EscrowReportingService.total_held_by_currency()     # {"usd": 12550, "eur": 5000}
    EscrowReportingService.pending_release()            # confirmed, awaiting admin
    EscrowReportingService.owner_lifetime_earnings(owner)
"""

from __future__ import annotations

from django.db.models import Count, QuerySet, Sum

from core.services import BaseService

from escrow.models import EscrowEntry, Payout, Refund
from escrow.state_machines import EscrowStatus, SettlementStatus


class EscrowReportingService(BaseService):
    """Aggregates over escrow entries and settlement legs."""

    @classmethod
    def total_held(cls, currency: str) -> int:
        """Sum of amount_cents over HELD entries in one currency."""
        return (
            EscrowEntry.objects.filter(status=EscrowStatus.HELD, currency=currency.lower())
            .aggregate(total=Sum("amount_cents"))["total"]
            or 0
        )

    @classmethod
    def total_held_by_currency(cls) -> dict[str, int]:
        """Sum of amount_cents over HELD entries, keyed by currency."""
        rows = (
            EscrowEntry.objects.filter(status=EscrowStatus.HELD)
            .values("currency")
            .annotate(total=Sum("amount_cents"))
            .order_by("currency")
        )
        return {row["currency"]: row["total"] for row in rows}

    @classmethod
    def pending_release(cls) -> QuerySet[EscrowEntry]:
        """HELD entries both parties have confirmed, oldest first."""
        return (
            EscrowEntry.objects.filter(
                status=EscrowStatus.HELD,
                renter_confirmed=True,
                owner_confirmed=True,
            )
            .select_related("payer", "payee")
            .order_by("held_at")
        )

    @classmethod
    def owner_lifetime_earnings(cls, payee) -> int:
        """
        Sum of payout amounts on the owner's RELEASED entries.

        Counts the payout leg (net of fee) whatever its execution state.
        Dispute outcomes that end REFUNDED are not included even when part
        of the amount went to the owner.
        """
        return (
            Payout.objects.filter(
                entry__payee=payee,
                entry__status=EscrowStatus.RELEASED,
            ).aggregate(total=Sum("amount_cents"))["total"]
            or 0
        )

    @classmethod
    def failed_settlements(cls) -> dict[str, QuerySet]:
        """FAILED payouts and refunds awaiting an administrator retry."""
        return {
            "payouts": Payout.objects.filter(status=SettlementStatus.FAILED)
            .select_related("entry")
            .order_by("updated_at"),
            "refunds": Refund.objects.filter(status=SettlementStatus.FAILED)
            .select_related("entry")
            .order_by("updated_at"),
        }

    @classmethod
    def summary(cls) -> dict:
        """Entry counts per status plus the held amounts per currency."""
        counts = {status: 0 for status in EscrowStatus.values}
        rows = EscrowEntry.objects.values("status").annotate(n=Count("id")).order_by()
        for row in rows:
            counts[row["status"]] = row["n"]
        return {
            "total_held_by_currency": cls.total_held_by_currency(),
            "pending_release": cls.pending_release().count(),
            **{f"{status}_count": n for status, n in counts.items()},
        }
