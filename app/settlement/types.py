"""
Money arithmetic for settlement.

Amounts are integers in the smallest currency unit. Fee percentages are
Decimal fractions (Decimal("0.10") is 10%). Nothing here touches floats.

Usage:
    from settlement.types import split_fee

    breakdown = split_fee(100_000, Decimal("0.10"))
    breakdown.platform_fee   # 10000
    breakdown.seller_amount  # 90000
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal


def to_decimal(value) -> Decimal:
    """Coerce settings/DB values to Decimal without going through float."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_half_up(value: Decimal) -> int:
    """Round to a whole minor unit, halves away from zero."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_platform_fee(price: int, fee_percentage) -> int:
    """
    Platform fee for one item.

    Raises:
        ValueError: If the price is negative or the percentage is outside [0, 1]
    """
    pct = to_decimal(fee_percentage)
    if price < 0:
        raise ValueError(f"price must be non-negative, got {price}")
    if pct < 0 or pct > 1:
        raise ValueError(f"fee_percentage must be within [0, 1], got {pct}")
    return round_half_up(Decimal(price) * pct)


@dataclass(frozen=True)
class FeeBreakdown:
    """How one item's price splits between platform and seller."""

    price: int
    fee_percentage: Decimal
    platform_fee: int

    @property
    def seller_amount(self) -> int:
        return self.price - self.platform_fee


def split_fee(price: int, fee_percentage) -> FeeBreakdown:
    pct = to_decimal(fee_percentage)
    return FeeBreakdown(
        price=price,
        fee_percentage=pct,
        platform_fee=compute_platform_fee(price, pct),
    )


__all__ = [
    "FeeBreakdown",
    "compute_platform_fee",
    "round_half_up",
    "split_fee",
    "to_decimal",
]
