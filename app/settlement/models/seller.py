"""
Seller payout destinations and the platform fee schedule.

Usage:
    from settlement.models import FeeTier, SellerAccount

    account = SellerAccount.objects.create(
        user=seller,
        gateway_account_ref="acct_123",
        payouts_enabled=True,
        trust_tier=TrustTier.PRO_SELLER,
    )

    FeeTier.objects.create(
        trust_tier=TrustTier.PRO_SELLER,
        min_price=0,
        max_price=None,
        fee_percentage=Decimal("0.0800"),
    )
"""

from __future__ import annotations

from django.conf import settings
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from settlement.state_machines import TrustTier


class SellerAccount(UUIDPrimaryKeyMixin, BaseModel):
    """
    A seller's account at the payment gateway.

    Fields:
        user: The seller
        gateway_account_ref: Connected account id at the gateway (acct_xxx)
        payouts_enabled: Gateway has cleared the account to receive transfers
        trust_tier: Selects the fee tier applied to this seller's sales
    """

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="seller_account",
    )

    gateway_account_ref = models.CharField(
        max_length=255,
        blank=True,
        default="",
        db_index=True,
        help_text="Gateway connected account id (acct_xxx)",
    )

    payouts_enabled = models.BooleanField(default=False)

    trust_tier = models.CharField(
        max_length=20,
        choices=TrustTier.choices,
        default=TrustTier.NEW_SELLER,
    )

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"SellerAccount({self.user_id}, {self.trust_tier})"

    @property
    def is_payable(self) -> bool:
        """Whether transfers to this seller can be attempted."""
        return bool(self.gateway_account_ref) and self.payouts_enabled


class FeeTier(UUIDPrimaryKeyMixin, BaseModel):
    """
    Platform fee percentage for a trust tier and price band.

    A tier matches a price when min_price <= price and either max_price is
    null (open-ended) or price < max_price.
    """

    trust_tier = models.CharField(
        max_length=20,
        choices=TrustTier.choices,
        db_index=True,
    )

    min_price = models.PositiveBigIntegerField(default=0)

    max_price = models.PositiveBigIntegerField(
        null=True,
        blank=True,
        help_text="Exclusive upper bound; empty means no upper bound",
    )

    fee_percentage = models.DecimalField(
        max_digits=5,
        decimal_places=4,
        validators=[MinValueValidator(0), MaxValueValidator(1)],
        help_text="Fraction of the price kept by the platform (0.1000 = 10%)",
    )

    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["trust_tier", "min_price"]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(max_price__isnull=True)
                | models.Q(max_price__gt=models.F("min_price")),
                name="settlement_fee_tier_band_valid",
            ),
        ]

    def __str__(self) -> str:
        upper = self.max_price if self.max_price is not None else "∞"
        return f"FeeTier({self.trust_tier}, [{self.min_price}, {upper}), {self.fee_percentage})"

    def matches(self, price: int) -> bool:
        if price < self.min_price:
            return False
        return self.max_price is None or price < self.max_price
