"""
Pytest fixtures for settlement tests.

Checkout state is built through the real services (create_order, then
create_payment_intent, then apply_payment_succeeded) so every FSM field
reaches its state through a declared transition. The payment gateway is
replaced by FakeGateway and Redis by a MagicMock.

Usage:
    def test_refund(paid_order, gateway):
        item = paid_order.items.first()
        result = EscrowService.refund_order_item(item.id, "damaged", gateway=gateway)
        assert result.success
"""

from __future__ import annotations

import itertools
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from settlement.adapters import INTENT_SUCCEEDED, IntentResult, PaymentGateway
from settlement.models import Order
from settlement.services import (
    EscrowService,
    OrderLineRequest,
    OrderService,
    PaymentService,
)
from settlement.state_machines import TrustTier
from settlement.tests.factories import (
    FeeTierFactory,
    ProductFactory,
    SellerAccountFactory,
    ShippingAddressFactory,
    UserFactory,
)


# =============================================================================
# Fake Gateway
# =============================================================================


class FakeGateway(PaymentGateway):
    """
    In-memory PaymentGateway.

    Every call is recorded in calls as (operation, kwargs). Set
    errors[operation] to an exception to make that operation raise it.
    """

    def __init__(self, intent_status: str = INTENT_SUCCEEDED) -> None:
        self.intent_status = intent_status
        self.signature_valid = True
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple[str, dict]] = []
        self._sequence = itertools.count(1)

    def calls_for(self, operation: str) -> list[dict]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    def _record(self, operation: str, **kwargs) -> None:
        self.calls.append((operation, kwargs))
        error = self.errors.get(operation)
        if error is not None:
            raise error

    def create_intent(self, amount, currency, order_ref, metadata=None):
        self._record("create_intent", amount=amount, currency=currency, order_ref=order_ref)
        return IntentResult(
            intent_id=f"pi_test_{order_ref}",
            client_secret=f"pi_test_{order_ref}_secret",
            status="requires_payment_method",
            amount=amount,
            currency=currency,
            metadata=dict(metadata or {}),
        )

    def confirm_intent(self, intent_id):
        self._record("confirm_intent", intent_id=intent_id)
        return self.intent_status

    def refund(self, transaction_ref, amount, idempotency_key, reason=None):
        self._record(
            "refund",
            transaction_ref=transaction_ref,
            amount=amount,
            idempotency_key=idempotency_key,
            reason=reason,
        )
        return f"re_test_{next(self._sequence):04d}"

    def transfer(self, seller_account_ref, amount, currency, idempotency_key, metadata=None):
        self._record(
            "transfer",
            seller_account_ref=seller_account_ref,
            amount=amount,
            currency=currency,
            idempotency_key=idempotency_key,
        )
        return f"tr_test_{next(self._sequence):04d}"

    def verify_signature(self, payload, signature, secret):
        self._record("verify_signature", signature=signature)
        return self.signature_valid


# =============================================================================
# Infrastructure Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def mock_redis():
    """Redis client for DistributedLock; every lock is free by default."""
    client = MagicMock()
    client.set.return_value = True
    client.eval.return_value = 1

    with patch("settlement.locks.get_redis_connection", return_value=client):
        yield client


@pytest.fixture
def gateway():
    """Fresh FakeGateway whose intents report succeeded."""
    return FakeGateway()


@pytest.fixture
def reload():
    """Load a fresh copy of a model instance (FSM fields cannot be refreshed in place)."""

    def _reload(instance):
        return type(instance).objects.get(pk=instance.pk)

    return _reload


# =============================================================================
# User and Account Fixtures
# =============================================================================


@pytest.fixture
def buyer(db):
    return UserFactory()


@pytest.fixture
def address(db, buyer):
    """Shipping address owned by the buyer."""
    return ShippingAddressFactory(user=buyer)


@pytest.fixture
def seller_account(db):
    """Payable NEW_SELLER account (default 10% fee)."""
    return SellerAccountFactory(trust_tier=TrustTier.NEW_SELLER)


@pytest.fixture
def seller(seller_account):
    return seller_account.user


@pytest.fixture
def pro_seller_account(db):
    """Payable PRO_SELLER account with an 8% fee tier."""
    FeeTierFactory(trust_tier=TrustTier.PRO_SELLER, fee_percentage=Decimal("0.0800"))
    return SellerAccountFactory(trust_tier=TrustTier.PRO_SELLER)


@pytest.fixture
def pro_seller(pro_seller_account):
    return pro_seller_account.user


# =============================================================================
# Product Fixtures
# =============================================================================


@pytest.fixture
def product(db, seller):
    """ACTIVE product priced 100,000 from the NEW_SELLER."""
    return ProductFactory(seller=seller, price=100_000)


@pytest.fixture
def pro_product(db, pro_seller):
    """ACTIVE product priced 50,000 from the PRO_SELLER."""
    return ProductFactory(seller=pro_seller, price=50_000)


# =============================================================================
# Order State Fixtures
# =============================================================================


@pytest.fixture
def checkout(buyer, address, gateway):
    """
    Create a PENDING order with a payment intent for the given products.

    Returns a function: checkout(*products, buyer=None, address=None) -> Order
    """

    def _checkout(*products, buyer=buyer, address=address):
        result = OrderService.create_order(
            buyer=buyer,
            items=[OrderLineRequest(product_id=p.pk) for p in products],
            shipping_address_id=address.pk,
        )
        assert result.success, result.error
        order = result.data.order
        intent = PaymentService.create_payment_intent(order.pk, buyer=buyer, gateway=gateway)
        assert intent.success, intent.error
        return Order.objects.get(pk=order.pk)

    return _checkout


@pytest.fixture
def pending_order(checkout, product, pro_product):
    """Two-seller PENDING order: 100,000 at 10% and 50,000 at 8%."""
    return checkout(product, pro_product)


@pytest.fixture
def paid_order(pending_order, gateway):
    """The two-seller order after payment; items PROCESSING, escrow HOLDING."""
    result = PaymentService.apply_payment_succeeded(pending_order.payment_intent_ref, gateway=gateway)
    assert result.success, result.error
    return Order.objects.get(pk=pending_order.pk)


@pytest.fixture
def deliver():
    """
    Ship and deliver one item of a paid order.

    Returns a function: deliver(item) -> Transaction
    """

    def _deliver(item):
        shipped = OrderService.mark_item_shipped(item.pk, item.seller, tracking_number="VN123456789")
        assert shipped.success, shipped.error
        txn = item.transaction
        delivered = EscrowService.confirm_delivery(txn.pk, ["proof/photo-1.jpg"])
        assert delivered.success, delivered.error
        return type(txn).objects.get(pk=txn.pk)

    return _deliver
