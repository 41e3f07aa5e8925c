"""
Platform fee calculation.

Pure functions over integer minor units (cents). No state, no database.

    fee    = round_half_up(amount * percentage / 100)
    payout = amount - fee

Usage:
    from escrow.services.fees import calculate_fee, split_amount

    calculate_fee(10000, Decimal("10"))   # 1000
    split_amount(10000, Decimal("10"))    # FeeBreakdown(amount=10000, fee=1000, payout=9000, ...)
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from core.exceptions import ValidationError

DEFAULT_FEE_PERCENTAGE = Decimal("10")

_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class FeeBreakdown:
    """How an amount divides between the platform and the payee."""

    amount_cents: int
    percentage: Decimal
    fee_cents: int
    payout_cents: int


def _as_percentage(percentage: Decimal | int | str | float) -> Decimal:
    # str() first so floats like 2.5 don't carry binary noise
    try:
        value = Decimal(str(percentage))
    except InvalidOperation as e:
        raise ValidationError(
            "Fee percentage must be a number",
            error_code="INVALID_FEE_PERCENTAGE",
            details={"percentage": str(percentage)},
        ) from e
    if not value.is_finite() or value < 0 or value > _HUNDRED:
        raise ValidationError(
            "Fee percentage must be between 0 and 100",
            error_code="INVALID_FEE_PERCENTAGE",
            details={"percentage": str(value)},
        )
    return value


def calculate_fee(amount_cents: int, percentage: Decimal | int | str | float) -> int:
    """
    Return the platform fee for ``amount_cents`` at ``percentage`` percent.

    Rounds half up to the nearest minor unit.
    """
    if amount_cents < 0:
        raise ValidationError(
            "Amount must not be negative",
            error_code="INVALID_AMOUNT",
            details={"amount_cents": amount_cents},
        )
    pct = _as_percentage(percentage)
    fee = (Decimal(amount_cents) * pct / _HUNDRED).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return int(fee)


def calculate_payout(amount_cents: int, fee_cents: int) -> int:
    """Net amount owed to the payee after the platform fee."""
    if fee_cents > amount_cents:
        raise ValidationError(
            "Fee cannot exceed the amount",
            error_code="INVALID_FEE",
            details={"amount_cents": amount_cents, "fee_cents": fee_cents},
        )
    return amount_cents - fee_cents


def split_amount(
    amount_cents: int,
    percentage: Decimal | int | str | float = DEFAULT_FEE_PERCENTAGE,
) -> FeeBreakdown:
    """Compute fee and payout together."""
    pct = _as_percentage(percentage)
    fee = calculate_fee(amount_cents, pct)
    return FeeBreakdown(
        amount_cents=amount_cents,
        percentage=pct,
        fee_cents=fee,
        payout_cents=calculate_payout(amount_cents, fee),
    )


__all__ = [
    "DEFAULT_FEE_PERCENTAGE",
    "FeeBreakdown",
    "calculate_fee",
    "calculate_payout",
    "split_amount",
]
