"""
Platform fee lookup.

The fee for a sale depends on the seller's trust tier and the item price.
FeeTier rows define price bands per tier; when no active band matches,
SETTLEMENT_DEFAULT_FEE_PERCENTAGE applies.

Usage:
    from settlement.services import FeeTierService

    breakdown = FeeTierService.calculate(seller, 100_000)
    breakdown.platform_fee  # 10000 with a 10% tier
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from django.conf import settings
from django.db.models import Q

from core.services import BaseService

from settlement.models import FeeTier, SellerAccount
from settlement.state_machines import TrustTier
from settlement.types import FeeBreakdown, split_fee, to_decimal

if TYPE_CHECKING:
    from django.contrib.auth.models import AbstractBaseUser


class FeeTierService(BaseService):
    """Resolves fee percentages from the FeeTier table."""

    @classmethod
    def trust_tier_for(cls, seller: AbstractBaseUser) -> str:
        tier = (
            SellerAccount.objects.filter(user=seller)
            .values_list("trust_tier", flat=True)
            .first()
        )
        return tier or TrustTier.NEW_SELLER

    @classmethod
    def fee_percentage(cls, seller: AbstractBaseUser, price: int) -> Decimal:
        """
        Fee fraction for one sale.

        The narrowest matching band wins when bands overlap (highest
        min_price).
        """
        tier = cls.trust_tier_for(seller)
        match = (
            FeeTier.objects.filter(trust_tier=tier, is_active=True, min_price__lte=price)
            .filter(Q(max_price__isnull=True) | Q(max_price__gt=price))
            .order_by("-min_price")
            .values_list("fee_percentage", flat=True)
            .first()
        )
        if match is None:
            cls.get_logger().debug(
                "No fee tier matched; using default",
                extra={"trust_tier": tier, "price": price},
            )
            return to_decimal(settings.SETTLEMENT_DEFAULT_FEE_PERCENTAGE)
        return match

    @classmethod
    def calculate(cls, seller: AbstractBaseUser, price: int) -> FeeBreakdown:
        return split_fee(price, cls.fee_percentage(seller, price))
