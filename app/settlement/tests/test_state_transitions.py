"""
Tests for the central transition primitives.

The services are covered elsewhere; these tests pin down the shared
rules every path relies on: roll-up priority, escrow mirroring, status
history and product lock movement.
"""

import pytest

from settlement.exceptions import InvalidStateTransitionError
from settlement.models import Order, OrderItem, Product, StatusHistory, Transaction
from settlement.state_machines import (
    DisputeStatus,
    EscrowStatus,
    OrderItemStatus,
    OrderStatus,
    ProductStatus,
    TransactionStatus,
)
from settlement.state_machines import transitions


# =============================================================================
# Roll-up Derivation
# =============================================================================


class TestDeriveOrderStatus:
    @pytest.mark.parametrize(
        ("statuses", "expected"),
        [
            ([], None),
            (["pending"], None),
            (["processing", "processing"], OrderStatus.PROCESSING),
            (["shipped", "processing"], OrderStatus.SHIPPED),
            (["delivered", "processing"], OrderStatus.PROCESSING),
            (["delivered", "shipped"], OrderStatus.SHIPPED),
            (["delivered", "delivered"], OrderStatus.DELIVERED),
            (["delivered", "refunded"], OrderStatus.DELIVERED),
            (["cancelled", "cancelled"], OrderStatus.CANCELLED),
            (["refunded", "cancelled"], OrderStatus.REFUNDED),
            (["refunded", "refunded"], OrderStatus.REFUNDED),
            (["refunded", "processing"], OrderStatus.PROCESSING),
        ],
    )
    def test_priority(self, statuses, expected):
        assert transitions.derive_order_status(statuses) == expected


# =============================================================================
# fire()
# =============================================================================


@pytest.mark.django_db
class TestFire:
    def test_disallowed_transition_raises_domain_error(self, pending_order):
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            transitions.fire(pending_order, "mark_delivered")

        details = exc_info.value.details
        assert details["model"] == "Order"
        assert details["transition"] == "mark_delivered"
        assert details["current_state"] == {"status": OrderStatus.PENDING}

    def test_allowed_transition_changes_state(self, pending_order):
        transitions.fire(pending_order, "mark_paid")
        assert pending_order.status == OrderStatus.PAID


# =============================================================================
# Payment Outcomes
# =============================================================================


@pytest.mark.django_db
class TestMarkOrderPaid:
    def test_moves_every_record(self, pending_order):
        transitions.mark_order_paid(pending_order, actor="test")

        order = Order.objects.get(pk=pending_order.pk)
        assert order.status == OrderStatus.PAID
        assert order.paid_at is not None
        for item in OrderItem.objects.filter(order=order):
            assert item.status == OrderItemStatus.PROCESSING
            assert item.escrow_status == EscrowStatus.HOLDING
            txn = Transaction.objects.get(order_item=item)
            assert txn.status == TransactionStatus.PAID
            assert txn.escrow_status == EscrowStatus.HOLDING
            product = Product.objects.get(pk=item.product_id)
            assert product.status == ProductStatus.SOLD
            assert product.sold_at is not None

    def test_writes_status_history(self, pending_order):
        transitions.mark_order_paid(pending_order, actor="webhook")

        order_moves = list(
            StatusHistory.objects.filter(order=pending_order, field=StatusHistory.ORDER_STATUS)
            .order_by("created_at")
            .values_list("from_status", "to_status")
        )
        assert (OrderStatus.PENDING, OrderStatus.PAID) in order_moves
        assert (OrderStatus.PAID, OrderStatus.PROCESSING) not in order_moves
        assert StatusHistory.objects.filter(
            order=pending_order,
            field=StatusHistory.ITEM_ESCROW_STATUS,
            to_status=EscrowStatus.HOLDING,
            actor="webhook",
        ).count() == 2

    def test_paid_order_cannot_be_paid_again(self, paid_order):
        with pytest.raises(InvalidStateTransitionError):
            transitions.mark_order_paid(paid_order)


@pytest.mark.django_db
class TestCloseUnpaid:
    def test_expire_releases_products(self, pending_order):
        transitions.expire_order(pending_order, reason="card declined", actor="webhook")

        order = Order.objects.get(pk=pending_order.pk)
        assert order.status == OrderStatus.EXPIRED
        assert order.cancellation_reason == "card declined"
        for item in OrderItem.objects.filter(order=order):
            assert item.status == OrderItemStatus.CANCELLED
            assert item.escrow_status == EscrowStatus.CANCELLED
            assert Transaction.objects.get(order_item=item).status == TransactionStatus.CANCELLED
            assert Product.objects.get(pk=item.product_id).status == ProductStatus.ACTIVE

    def test_abandon_closes_escrow_as_refunded(self, pending_order):
        transitions.abandon_order(pending_order)

        assert Order.objects.get(pk=pending_order.pk).status == OrderStatus.EXPIRED
        escrow = set(OrderItem.objects.filter(order=pending_order).values_list("escrow_status", flat=True))
        assert escrow == {EscrowStatus.REFUNDED}

    def test_cancel_unpaid(self, pending_order):
        transitions.cancel_unpaid_order(pending_order, reason="changed my mind")

        assert Order.objects.get(pk=pending_order.pk).status == OrderStatus.CANCELLED


# =============================================================================
# Roll-up
# =============================================================================


@pytest.mark.django_db
class TestRollup:
    def test_one_item_shipped_rolls_order_to_shipped(self, paid_order):
        item = paid_order.items.order_by("price").first()
        txn = Transaction.objects.get(order_item=item)

        transitions.ship_item(item, txn, "VN1")
        status = transitions.rollup_order_status(paid_order)

        assert status == OrderStatus.SHIPPED

    def test_rollup_is_idempotent(self, paid_order):
        for item in paid_order.items.all():
            transitions.ship_item(item, Transaction.objects.get(order_item=item), "VN1")
        transitions.rollup_order_status(paid_order)
        assert paid_order.status == OrderStatus.SHIPPED

        # Already at the derived status
        assert transitions.rollup_order_status(paid_order) == OrderStatus.SHIPPED


# =============================================================================
# Disputes
# =============================================================================


@pytest.mark.django_db
class TestSetDisputeStatus:
    def test_open_then_close(self, paid_order):
        assert transitions.set_dispute_status(paid_order, DisputeStatus.OPEN, reason="fraudulent") == 2
        assert transitions.set_dispute_status(paid_order, DisputeStatus.OPEN) == 0

        txns = Transaction.objects.filter(order_item__order=paid_order)
        assert set(txns.values_list("dispute_status", flat=True)) == {DisputeStatus.OPEN}
        assert set(txns.values_list("dispute_reason", flat=True)) == {"fraudulent"}

        assert transitions.set_dispute_status(paid_order, DisputeStatus.CLOSED) == 2
        assert set(txns.values_list("dispute_status", flat=True)) == {DisputeStatus.CLOSED}
