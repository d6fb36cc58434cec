"""Tests for FeeTierService."""

from decimal import Decimal

import pytest

from settlement.services import FeeTierService
from settlement.state_machines import TrustTier
from settlement.tests.factories import FeeTierFactory, SellerAccountFactory, UserFactory


@pytest.mark.django_db
class TestFeePercentage:
    def test_default_when_no_tier_matches(self, settings):
        settings.SETTLEMENT_DEFAULT_FEE_PERCENTAGE = "0.12"
        seller = SellerAccountFactory().user

        assert FeeTierService.fee_percentage(seller, 100_000) == Decimal("0.12")

    def test_seller_without_account_uses_new_seller_tier(self):
        FeeTierFactory(trust_tier=TrustTier.NEW_SELLER, fee_percentage=Decimal("0.1500"))

        assert FeeTierService.fee_percentage(UserFactory(), 10_000) == Decimal("0.1500")

    def test_tier_follows_trust_level(self):
        FeeTierFactory(trust_tier=TrustTier.NEW_SELLER, fee_percentage=Decimal("0.1000"))
        FeeTierFactory(trust_tier=TrustTier.PRO_SELLER, fee_percentage=Decimal("0.0800"))
        seller = SellerAccountFactory(trust_tier=TrustTier.PRO_SELLER).user

        assert FeeTierService.fee_percentage(seller, 50_000) == Decimal("0.0800")

    def test_price_bands(self):
        FeeTierFactory(min_price=0, max_price=1_000_000, fee_percentage=Decimal("0.1000"))
        FeeTierFactory(min_price=1_000_000, max_price=None, fee_percentage=Decimal("0.0500"))
        seller = SellerAccountFactory().user

        assert FeeTierService.fee_percentage(seller, 999_999) == Decimal("0.1000")
        assert FeeTierService.fee_percentage(seller, 1_000_000) == Decimal("0.0500")

    def test_narrowest_overlapping_band_wins(self):
        FeeTierFactory(min_price=0, max_price=None, fee_percentage=Decimal("0.1000"))
        FeeTierFactory(min_price=500_000, max_price=None, fee_percentage=Decimal("0.0700"))
        seller = SellerAccountFactory().user

        assert FeeTierService.fee_percentage(seller, 600_000) == Decimal("0.0700")

    def test_inactive_tiers_ignored(self, settings):
        settings.SETTLEMENT_DEFAULT_FEE_PERCENTAGE = "0.10"
        FeeTierFactory(fee_percentage=Decimal("0.0100"), is_active=False)
        seller = SellerAccountFactory().user

        assert FeeTierService.fee_percentage(seller, 100_000) == Decimal("0.10")


@pytest.mark.django_db
def test_calculate_returns_breakdown():
    FeeTierFactory(trust_tier=TrustTier.PRO_SELLER, fee_percentage=Decimal("0.0800"))
    seller = SellerAccountFactory(trust_tier=TrustTier.PRO_SELLER).user

    breakdown = FeeTierService.calculate(seller, 50_000)

    assert breakdown.platform_fee == 4_000
    assert breakdown.seller_amount == 46_000
