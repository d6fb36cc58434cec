"""
Tests for PaymentService.

Covers intent creation, direct confirmation, and the shared outcome
application used by webhooks and reconciliation: idempotency, late
payments on closed orders and failed payments.
"""

import uuid

import pytest

from settlement.adapters import (
    INTENT_PROCESSING,
    INTENT_REQUIRES_ACTION,
    INTENT_REQUIRES_PAYMENT_METHOD,
    INTENT_SUCCEEDED,
)
from settlement.exceptions import GatewayCardDeclinedError, GatewayUnavailableError
from settlement.models import Order, OrderItem, Product, StatusHistory
from settlement.services import OrderLineRequest, OrderService, PaymentService
from settlement.state_machines import (
    EscrowStatus,
    OrderItemStatus,
    OrderStatus,
    ProductStatus,
)
from settlement.state_machines import transitions
from settlement.tests.factories import UserFactory


# =============================================================================
# Intent Creation
# =============================================================================


@pytest.mark.django_db
class TestCreatePaymentIntent:
    def test_stores_intent_on_order(self, pending_order, buyer, gateway):
        result = PaymentService.create_payment_intent(pending_order.pk, buyer=buyer, gateway=gateway)

        assert result.success
        assert result.data.intent_id == f"pi_test_{pending_order.pk}"
        assert result.data.client_secret
        assert result.data.amount == 150_000
        assert result.data.currency == "vnd"
        assert Order.objects.get(pk=pending_order.pk).payment_intent_ref == result.data.intent_id

    def test_charges_total_amount(self, pending_order, gateway):
        create_calls = gateway.calls_for("create_intent")

        assert create_calls[-1]["amount"] == pending_order.total_amount
        assert create_calls[-1]["order_ref"] == str(pending_order.pk)

    def test_repeat_call_keeps_same_intent(self, pending_order, buyer, gateway):
        first = PaymentService.create_payment_intent(pending_order.pk, buyer=buyer, gateway=gateway)
        second = PaymentService.create_payment_intent(pending_order.pk, buyer=buyer, gateway=gateway)

        assert first.data.intent_id == second.data.intent_id

    def test_other_buyer_rejected(self, pending_order, gateway):
        result = PaymentService.create_payment_intent(pending_order.pk, buyer=UserFactory(), gateway=gateway)

        assert result.error_code == "PERMISSION_DENIED"

    def test_paid_order_rejected(self, paid_order, gateway):
        result = PaymentService.create_payment_intent(paid_order.pk, gateway=gateway)

        assert result.error_code == "ORDER_NOT_PENDING"

    def test_unknown_order(self, db, gateway):
        result = PaymentService.create_payment_intent(uuid.uuid4(), gateway=gateway)

        assert result.error_code == "ORDER_NOT_FOUND"

    def test_gateway_error_leaves_order_untouched(self, product, gateway, buyer, address):
        order = OrderService.create_order(buyer, [OrderLineRequest(product_id=product.pk)], address.pk).data.order
        gateway.errors["create_intent"] = GatewayUnavailableError("down")

        result = PaymentService.create_payment_intent(order.pk, gateway=gateway)

        assert result.error_code == "GATEWAY_ERROR"
        assert Order.objects.get(pk=order.pk).payment_intent_ref is None


# =============================================================================
# Direct Confirmation
# =============================================================================


@pytest.mark.django_db
class TestConfirmPayment:
    def test_succeeded_intent_pays_order(self, pending_order, buyer, gateway):
        result = PaymentService.confirm_payment(
            pending_order.pk, pending_order.payment_intent_ref, buyer=buyer, gateway=gateway
        )

        assert result.success, result.error
        assert result.data.action == "paid"
        assert result.data.changed is True
        assert Order.objects.get(pk=pending_order.pk).status == OrderStatus.PAID

    @pytest.mark.parametrize(
        ("intent_status", "message_fragment"),
        [
            (INTENT_REQUIRES_PAYMENT_METHOD, "another payment method"),
            (INTENT_REQUIRES_ACTION, "authentication"),
            (INTENT_PROCESSING, "still processing"),
            ("unexpected_status", "unexpected_status"),
        ],
    )
    def test_unpaid_intent_reports_status(self, pending_order, gateway, intent_status, message_fragment):
        gateway.intent_status = intent_status

        result = PaymentService.confirm_payment(pending_order.pk, pending_order.payment_intent_ref, gateway=gateway)

        assert result.error_code == "PAYMENT_NOT_COMPLETED"
        assert message_fragment in result.error
        assert Order.objects.get(pk=pending_order.pk).status == OrderStatus.PENDING

    def test_mismatched_intent(self, pending_order, gateway):
        result = PaymentService.confirm_payment(pending_order.pk, "pi_someone_else", gateway=gateway)

        assert result.error_code == "ORDER_VALIDATION_ERROR"
        assert "intent_id" in result.errors
        assert gateway.calls_for("confirm_intent") == []

    def test_already_paid_skips_gateway(self, paid_order, gateway):
        result = PaymentService.confirm_payment(paid_order.pk, paid_order.payment_intent_ref, gateway=gateway)

        assert result.success
        assert result.data.action == "already_paid"
        assert gateway.calls_for("confirm_intent") == []

    def test_gateway_error(self, pending_order, gateway):
        gateway.errors["confirm_intent"] = GatewayUnavailableError("down")

        result = PaymentService.confirm_payment(pending_order.pk, pending_order.payment_intent_ref, gateway=gateway)

        assert result.error_code == "GATEWAY_ERROR"


# =============================================================================
# Payment Succeeded
# =============================================================================


@pytest.mark.django_db
class TestApplyPaymentSucceeded:
    def test_moves_items_to_escrow(self, pending_order, gateway):
        result = PaymentService.apply_payment_succeeded(pending_order.payment_intent_ref, gateway=gateway)

        assert result.data.action == "paid"
        order = Order.objects.get(pk=pending_order.pk)
        assert order.paid_at is not None
        for item in OrderItem.objects.filter(order=order):
            assert item.status == OrderItemStatus.PROCESSING
            assert item.escrow_status == EscrowStatus.HOLDING
            assert Product.objects.get(pk=item.product_id).status == ProductStatus.SOLD

    def test_second_delivery_is_noop(self, pending_order, gateway):
        PaymentService.apply_payment_succeeded(pending_order.payment_intent_ref, gateway=gateway)
        history_count = StatusHistory.objects.filter(order=pending_order).count()
        version = Order.objects.get(pk=pending_order.pk).version

        result = PaymentService.apply_payment_succeeded(pending_order.payment_intent_ref, gateway=gateway)

        assert result.success
        assert result.data.action == "already_paid"
        assert result.data.changed is False
        assert StatusHistory.objects.filter(order=pending_order).count() == history_count
        assert Order.objects.get(pk=pending_order.pk).version == version

    def test_unknown_intent(self, db, gateway):
        result = PaymentService.apply_payment_succeeded("pi_unknown", gateway=gateway)

        assert result.error_code == "ORDER_NOT_FOUND"

    def test_late_payment_on_expired_order_is_refunded(self, pending_order, gateway):
        transitions.expire_order(pending_order, reason="abandoned")

        result = PaymentService.apply_payment_succeeded(pending_order.payment_intent_ref, gateway=gateway)

        assert result.success
        assert result.data.action == "late_refund"
        assert result.data.order_status == OrderStatus.EXPIRED
        refund = gateway.calls_for("refund")[-1]
        assert refund["amount"] == pending_order.total_amount
        assert refund["idempotency_key"] == f"late_refund:{pending_order.pk}"

        order = Order.objects.get(pk=pending_order.pk)
        assert order.status == OrderStatus.EXPIRED
        assert order.metadata["late_refund_ref"] == result.data.refund_ref

    def test_late_refund_happens_once(self, pending_order, gateway):
        transitions.cancel_unpaid_order(pending_order, reason="changed my mind")
        PaymentService.apply_payment_succeeded(pending_order.payment_intent_ref, gateway=gateway)

        result = PaymentService.apply_payment_succeeded(pending_order.payment_intent_ref, gateway=gateway)

        assert result.data.action == "late_refund"
        assert result.data.changed is False
        assert len(gateway.calls_for("refund")) == 1

    def test_late_refund_gateway_failure(self, pending_order, gateway):
        transitions.expire_order(pending_order, reason="abandoned")
        gateway.errors["refund"] = GatewayCardDeclinedError("nope")

        result = PaymentService.apply_payment_succeeded(pending_order.payment_intent_ref, gateway=gateway)

        assert result.error_code == "GATEWAY_ERROR"
        assert "late_refund_ref" not in Order.objects.get(pk=pending_order.pk).metadata


# =============================================================================
# Payment Failed
# =============================================================================


@pytest.mark.django_db
class TestApplyPaymentFailed:
    def test_expires_order_and_releases_products(self, pending_order):
        result = PaymentService.apply_payment_failed(pending_order.payment_intent_ref, reason="Card declined")

        assert result.data.action == "expired"
        order = Order.objects.get(pk=pending_order.pk)
        assert order.status == OrderStatus.EXPIRED
        assert order.cancellation_reason == "Card declined"
        for item in OrderItem.objects.filter(order=order):
            assert item.escrow_status == EscrowStatus.CANCELLED
            assert Product.objects.get(pk=item.product_id).status == ProductStatus.ACTIVE

    def test_paid_order_ignored(self, paid_order):
        result = PaymentService.apply_payment_failed(paid_order.payment_intent_ref)

        assert result.data.action == "ignored"
        assert Order.objects.get(pk=paid_order.pk).status == OrderStatus.PAID

    def test_unknown_intent(self, db):
        result = PaymentService.apply_payment_failed("pi_unknown")

        assert result.error_code == "ORDER_NOT_FOUND"

    def test_success_after_failure_is_refunded(self, pending_order, gateway):
        PaymentService.apply_payment_failed(pending_order.payment_intent_ref, reason="declined")
        gateway.intent_status = INTENT_SUCCEEDED

        result = PaymentService.apply_payment_succeeded(pending_order.payment_intent_ref, gateway=gateway)

        assert result.data.action == "late_refund"
