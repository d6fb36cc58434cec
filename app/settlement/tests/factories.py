"""
Factory Boy factories for settlement test data.

Orders, items and transactions are normally built through
OrderService.create_order (see the checkout fixture in conftest.py)
so that their FSM fields start in a real state. The factories here cover
the catalog-side and configuration rows that checkout reads.

Usage:
    from settlement.tests.factories import ProductFactory, SellerAccountFactory

    account = SellerAccountFactory()
    product = ProductFactory(seller=account.user, price=100_000)
"""

from decimal import Decimal

import factory

from settlement.models import (
    FeeTier,
    Offer,
    Product,
    SellerAccount,
    ShippingAddress,
    WebhookEvent,
)
from settlement.state_machines import (
    OfferStatus,
    ProductStatus,
    TrustTier,
    WebhookEventStatus,
)


class UserFactory(factory.django.DjangoModelFactory):
    """Plain django.contrib.auth user acting as buyer or seller."""

    class Meta:
        model = "auth.User"
        skip_postgeneration_save = True

    username = factory.Sequence(lambda n: f"user{n}")
    email = factory.LazyAttribute(lambda obj: f"{obj.username}@example.com")
    password = factory.PostGenerationMethodCall("set_password", "testpass123")
    is_active = True


class SellerAccountFactory(factory.django.DjangoModelFactory):
    """
    Payable seller account.

    Creates the seller user automatically.
    """

    class Meta:
        model = SellerAccount
        skip_postgeneration_save = True

    user = factory.SubFactory(UserFactory)
    gateway_account_ref = factory.Sequence(lambda n: f"acct_test_{n:06d}")
    payouts_enabled = True
    trust_tier = TrustTier.NEW_SELLER


class ProductFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Product
        skip_postgeneration_save = True

    seller = factory.SubFactory(UserFactory)
    title = factory.Sequence(lambda n: f"Vintage jacket #{n}")
    price = 100_000
    currency = "vnd"
    status = ProductStatus.ACTIVE


class ShippingAddressFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = ShippingAddress
        skip_postgeneration_save = True

    user = factory.SubFactory(UserFactory)
    recipient_name = "Nguyen Van A"
    phone = "+84901234567"
    line1 = factory.Sequence(lambda n: f"{n} Le Loi")
    city = "Ho Chi Minh City"
    country_code = "VN"


class OfferFactory(factory.django.DjangoModelFactory):
    """Accepted offer by default; pass product and buyer explicitly."""

    class Meta:
        model = Offer
        skip_postgeneration_save = True

    product = factory.SubFactory(ProductFactory)
    buyer = factory.SubFactory(UserFactory)
    amount = 80_000
    status = OfferStatus.ACCEPTED


class FeeTierFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = FeeTier
        skip_postgeneration_save = True

    trust_tier = TrustTier.NEW_SELLER
    min_price = 0
    max_price = None
    fee_percentage = Decimal("0.1000")
    is_active = True


class WebhookEventFactory(factory.django.DjangoModelFactory):
    """
    Stored gateway event.

    The payload mirrors the gateway envelope: {"id", "type", "data": {"object": ...}}.
    """

    class Meta:
        model = WebhookEvent
        skip_postgeneration_save = True

    gateway_event_id = factory.Sequence(lambda n: f"evt_test_{n:06d}")
    event_type = "payment_intent.succeeded"
    payload = factory.LazyAttribute(
        lambda obj: {
            "id": obj.gateway_event_id,
            "type": obj.event_type,
            "data": {"object": {"id": "pi_test_unknown", "object": "payment_intent"}},
        }
    )
    status = WebhookEventStatus.PENDING
    retry_count = 0
