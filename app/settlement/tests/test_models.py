"""
Tests for settlement models.

Covers FSM transitions declared on the models, database constraints
and the small helpers the services rely on.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from django.db import IntegrityError, transaction
from django.utils import timezone
from django_fsm import TransitionNotAllowed

from settlement.models import (
    Order,
    OrderItem,
    ProductReservation,
    ReconciliationRun,
    Transaction,
)
from settlement.models.webhook_event import MAX_WEBHOOK_RETRIES
from settlement.state_machines import (
    DisputeStatus,
    EscrowStatus,
    OrderItemStatus,
    OrderStatus,
    ReconciliationRunStatus,
    TransactionStatus,
    TrustTier,
    WebhookEventStatus,
)
from settlement.tests.factories import (
    FeeTierFactory,
    ProductFactory,
    SellerAccountFactory,
    ShippingAddressFactory,
    UserFactory,
    WebhookEventFactory,
)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def bare_order(db):
    """Order created directly, without the checkout service."""
    buyer = UserFactory()
    return Order.objects.create(
        buyer=buyer,
        shipping_address=ShippingAddressFactory(user=buyer),
        total_amount=100_000,
        total_platform_fee=10_000,
    )


@pytest.fixture
def bare_item(bare_order):
    product = ProductFactory(price=100_000)
    return OrderItem.objects.create(
        order=bare_order,
        product=product,
        seller=product.seller,
        price=100_000,
        platform_fee=10_000,
        fee_percentage=Decimal("0.1000"),
    )


# =============================================================================
# Order
# =============================================================================


@pytest.mark.django_db
class TestOrder:
    def test_defaults(self, bare_order):
        assert bare_order.status == OrderStatus.PENDING
        assert bare_order.version == 1
        assert bare_order.currency == "vnd"

    def test_status_cannot_be_assigned_directly(self, bare_order):
        with pytest.raises(AttributeError):
            bare_order.status = OrderStatus.PAID

    def test_mark_paid_sets_timestamp(self, bare_order):
        bare_order.mark_paid()

        assert bare_order.status == OrderStatus.PAID
        assert bare_order.paid_at is not None

    def test_cannot_pay_twice(self, bare_order):
        bare_order.mark_paid()

        with pytest.raises(TransitionNotAllowed):
            bare_order.mark_paid()

    def test_expire_only_from_pending(self, bare_order):
        bare_order.mark_paid()

        with pytest.raises(TransitionNotAllowed):
            bare_order.expire(reason="timeout")

    def test_cancel_records_reason(self, bare_order):
        bare_order.cancel(reason="changed my mind")

        assert bare_order.status == OrderStatus.CANCELLED
        assert bare_order.cancellation_reason == "changed my mind"
        assert bare_order.is_closed

    def test_save_bumps_version(self, bare_order):
        bare_order.mark_paid()
        bare_order.save()

        assert bare_order.version == 2
        assert Order.objects.get(pk=bare_order.pk).version == 2

    def test_is_paid(self, bare_order):
        assert not bare_order.is_paid
        bare_order.mark_paid()
        assert bare_order.is_paid

    def test_is_balanced(self, bare_item):
        order = bare_item.order
        assert order.is_balanced()

        Order.objects.filter(pk=order.pk).update(total_amount=99_999)
        assert not Order.objects.get(pk=order.pk).is_balanced()

    def test_total_amount_must_be_positive(self, db):
        buyer = UserFactory()
        address = ShippingAddressFactory(user=buyer)

        with pytest.raises(IntegrityError), transaction.atomic():
            Order.objects.create(buyer=buyer, shipping_address=address, total_amount=0)


# =============================================================================
# OrderItem
# =============================================================================


@pytest.mark.django_db
class TestOrderItem:
    def test_defaults(self, bare_item):
        assert bare_item.status == OrderItemStatus.PENDING
        assert bare_item.escrow_status == EscrowStatus.PENDING
        assert bare_item.seller_amount == 90_000

    def test_escrow_happy_path(self, bare_item):
        bare_item.start_processing()
        bare_item.hold_funds()
        bare_item.ship()
        bare_item.deliver()
        bare_item.release_funds()
        bare_item.mark_transferred()

        assert bare_item.status == OrderItemStatus.DELIVERED
        assert bare_item.escrow_status == EscrowStatus.TRANSFERRED

    def test_failed_transfer_can_be_released_again(self, bare_item):
        bare_item.hold_funds()
        bare_item.release_funds()
        bare_item.mark_transfer_failed()
        bare_item.release_funds()

        assert bare_item.escrow_status == EscrowStatus.RELEASED

    def test_transferred_escrow_cannot_be_refunded(self, bare_item):
        bare_item.hold_funds()
        bare_item.release_funds()
        bare_item.mark_transferred()

        with pytest.raises(TransitionNotAllowed):
            bare_item.refund_escrow()

    def test_pending_escrow_cannot_be_released(self, bare_item):
        with pytest.raises(TransitionNotAllowed):
            bare_item.release_funds()

    def test_shipped_item_cannot_be_cancelled(self, bare_item):
        bare_item.start_processing()
        bare_item.ship()

        with pytest.raises(TransitionNotAllowed):
            bare_item.cancel()

    def test_fee_cannot_exceed_price(self, bare_order):
        product = ProductFactory()

        with pytest.raises(IntegrityError), transaction.atomic():
            OrderItem.objects.create(
                order=bare_order,
                product=product,
                seller=product.seller,
                price=100,
                platform_fee=101,
                fee_percentage=Decimal("1.0000"),
            )


# =============================================================================
# Transaction
# =============================================================================


@pytest.mark.django_db
class TestTransaction:
    @pytest.fixture
    def txn(self, bare_item):
        return Transaction.objects.create(
            order_item=bare_item,
            buyer=bare_item.order.buyer,
            seller=bare_item.seller,
            amount=bare_item.price,
            platform_fee=bare_item.platform_fee,
            fee_percentage=bare_item.fee_percentage,
        )

    def test_fulfilment_flow(self, txn):
        txn.mark_paid()
        txn.mark_shipped("VN123", "https://track.example.com/VN123")
        txn.mark_delivered(["proof/1.jpg"])

        assert txn.status == TransactionStatus.DELIVERED
        assert txn.tracking_number == "VN123"
        assert txn.delivery_evidence == ["proof/1.jpg"]
        assert txn.delivered_at is not None

    def test_pending_cannot_be_refunded(self, txn):
        with pytest.raises(TransitionNotAllowed):
            txn.refund("re_1")

    def test_is_disputed(self, txn):
        assert not txn.is_disputed
        txn.dispute_status = DisputeStatus.OPEN
        assert txn.is_disputed

    def test_seller_amount(self, txn):
        assert txn.seller_amount == 90_000


# =============================================================================
# Reservations, Sellers, Fee Tiers
# =============================================================================


@pytest.mark.django_db
class TestProductReservation:
    def test_one_active_reservation_per_product(self, bare_order):
        product = ProductFactory()
        expires = timezone.now() + timedelta(minutes=15)
        ProductReservation.objects.create(product=product, order=bare_order, expires_at=expires)

        with pytest.raises(IntegrityError), transaction.atomic():
            ProductReservation.objects.create(product=product, order=bare_order, expires_at=expires)

    def test_released_reservations_do_not_block(self, bare_order):
        product = ProductFactory()
        expires = timezone.now() + timedelta(minutes=15)
        ProductReservation.objects.create(
            product=product, order=bare_order, expires_at=expires, state="released"
        )

        ProductReservation.objects.create(product=product, order=bare_order, expires_at=expires)

        assert ProductReservation.objects.filter(product=product).count() == 2

    def test_is_expired(self, bare_order):
        reservation = ProductReservation.objects.create(
            product=ProductFactory(),
            order=bare_order,
            expires_at=timezone.now() - timedelta(seconds=1),
        )
        assert reservation.is_expired


@pytest.mark.django_db
class TestSellerAccount:
    def test_payable_requires_account_and_payouts(self):
        assert SellerAccountFactory().is_payable
        assert not SellerAccountFactory(payouts_enabled=False).is_payable
        assert not SellerAccountFactory(gateway_account_ref="").is_payable


@pytest.mark.django_db
class TestFeeTier:
    def test_matches_half_open_band(self):
        tier = FeeTierFactory(min_price=10_000, max_price=50_000)

        assert not tier.matches(9_999)
        assert tier.matches(10_000)
        assert tier.matches(49_999)
        assert not tier.matches(50_000)

    def test_open_ended_band(self):
        tier = FeeTierFactory(trust_tier=TrustTier.ELITE_SELLER, min_price=0, max_price=None)
        assert tier.matches(10**12)

    def test_max_must_exceed_min(self):
        with pytest.raises(IntegrityError), transaction.atomic():
            FeeTierFactory(min_price=50_000, max_price=50_000)


# =============================================================================
# WebhookEvent & ReconciliationRun
# =============================================================================


@pytest.mark.django_db
class TestWebhookEvent:
    def test_object_id_from_payload(self):
        event = WebhookEventFactory(
            payload={"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1"}}}
        )
        assert event.get_object_id() == "pi_1"

    def test_object_id_missing(self):
        event = WebhookEventFactory(payload={"id": "evt_2", "type": "x"})
        assert event.get_object_id() is None
        assert event.data_object == {}

    def test_processing_counts_attempts(self):
        event = WebhookEventFactory()

        event.mark_processing()
        event.mark_failed("boom")

        assert event.status == WebhookEventStatus.FAILED
        assert event.retry_count == 1
        assert event.can_retry

    def test_retry_cap(self):
        event = WebhookEventFactory(status=WebhookEventStatus.FAILED, retry_count=MAX_WEBHOOK_RETRIES)
        assert not event.can_retry

    def test_mark_processed_clears_error(self):
        event = WebhookEventFactory(error_message="old")

        event.mark_processed()

        assert event.is_processed
        assert event.error_message is None
        assert event.processed_at is not None


@pytest.mark.django_db
class TestReconciliationRun:
    def test_complete(self):
        run = ReconciliationRun.objects.create()

        run.record_error("abc", "ValueError: bad")
        run.complete()
        run.save()

        run = ReconciliationRun.objects.get(pk=run.pk)
        assert run.status == ReconciliationRunStatus.COMPLETED
        assert run.errors == [{"product_id": "abc", "error": "ValueError: bad"}]
        assert run.duration_seconds is not None

    def test_fail(self):
        run = ReconciliationRun.objects.create()
        run.fail("database gone")

        assert run.status == ReconciliationRunStatus.FAILED
        assert run.errors[-1] == {"error": "database gone"}
