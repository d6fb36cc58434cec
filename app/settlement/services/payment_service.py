"""
Payment confirmation for orders.

Two inbound paths lead to a paid order: the buyer's client confirming
directly (confirm_payment) and the gateway's webhook
(payment_intent.succeeded). Reconciliation is a third, for webhooks that
never arrived. All of them end in apply_payment_succeeded, which locks
the order row and re-checks its status, so whichever path arrives second
finds the work already done.

Usage:
    result = PaymentService.create_payment_intent(order.id, buyer=user)
    client_secret = result.data.client_secret

    # Later, from the client after card confirmation
    result = PaymentService.confirm_payment(order.id, intent_id, buyer=user)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from django.utils import timezone

from core.services import BaseService, ServiceResult

from settlement.adapters import (
    INTENT_CANCELED,
    INTENT_PROCESSING,
    INTENT_REQUIRES_ACTION,
    INTENT_REQUIRES_CONFIRMATION,
    INTENT_REQUIRES_PAYMENT_METHOD,
    INTENT_SUCCEEDED,
    get_payment_gateway,
)
from settlement.exceptions import GatewayError, OrderValidationError, PaymentNotCompletedError
from settlement.models import Order
from settlement.state_machines import OrderStatus
from settlement.state_machines import transitions

if TYPE_CHECKING:
    from uuid import UUID

    from django.contrib.auth.models import AbstractBaseUser

    from settlement.adapters import PaymentGateway


INTENT_STATUS_MESSAGES = {
    INTENT_REQUIRES_PAYMENT_METHOD: "Payment failed. Please try another payment method.",
    INTENT_REQUIRES_CONFIRMATION: "Payment has not been confirmed yet.",
    INTENT_REQUIRES_ACTION: "Payment requires additional authentication.",
    INTENT_PROCESSING: "Payment is still processing. Please check back shortly.",
    INTENT_CANCELED: "Payment was canceled.",
}


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class PaymentIntentData:
    order_id: UUID
    intent_id: str
    client_secret: str | None
    status: str
    amount: int
    currency: str


@dataclass
class PaymentOutcome:
    """
    What applying a payment event did to an order.

    Attributes:
        action: "paid", "already_paid", "late_refund", "expired" or "ignored"
        changed: Whether any row was written
    """

    order_id: UUID
    order_status: str
    action: str
    changed: bool
    refund_ref: str | None = None


# =============================================================================
# Payment Service
# =============================================================================


class PaymentService(BaseService):
    """Issues payment intents and applies payment outcomes to orders."""

    @classmethod
    def create_payment_intent(
        cls,
        order_id: UUID,
        buyer: AbstractBaseUser | None = None,
        gateway: PaymentGateway | None = None,
    ) -> ServiceResult[PaymentIntentData]:
        """
        Create the gateway payment intent for a PENDING order.

        Idempotent: the gateway derives its idempotency key from the order
        id, so calling this again returns the same intent.

        Returns:
            ServiceResult with PaymentIntentData (client_secret for the buyer)
        """
        logger = cls.get_logger()
        gateway = gateway or get_payment_gateway()

        order = Order.objects.filter(pk=order_id).first()
        if order is None:
            return ServiceResult.failure(f"Order {order_id} not found", "ORDER_NOT_FOUND")
        if buyer is not None and order.buyer_id != buyer.pk:
            return ServiceResult.failure("Order belongs to another buyer", "PERMISSION_DENIED")
        if order.status != OrderStatus.PENDING:
            return ServiceResult.failure(
                f"Order is {order.status}; only pending orders can be paid",
                "ORDER_NOT_PENDING",
            )

        try:
            intent = gateway.create_intent(
                order.total_amount,
                order.currency,
                order_ref=str(order.pk),
                metadata={"order_id": str(order.pk), "buyer_id": str(order.buyer_id)},
            )
        except GatewayError as e:
            logger.warning(
                "Payment intent creation failed",
                extra={"order_id": str(order.pk), "error_code": e.error_code, "retryable": e.is_retryable},
            )
            return ServiceResult.failure(e.message, "GATEWAY_ERROR")

        with cls.atomic():
            locked = Order.objects.select_for_update().get(pk=order.pk)
            if locked.payment_intent_ref != intent.intent_id:
                if locked.payment_intent_ref:
                    logger.warning(
                        "Replacing payment intent on order",
                        extra={
                            "order_id": str(order.pk),
                            "old_intent_id": locked.payment_intent_ref,
                            "new_intent_id": intent.intent_id,
                        },
                    )
                locked.payment_intent_ref = intent.intent_id
                locked.save(update_fields=["payment_intent_ref", "updated_at"])

        logger.info(
            "Payment intent ready",
            extra={"order_id": str(order.pk), "intent_id": intent.intent_id, "status": intent.status},
        )
        return ServiceResult.success(
            PaymentIntentData(
                order_id=order.pk,
                intent_id=intent.intent_id,
                client_secret=intent.client_secret,
                status=intent.status,
                amount=order.total_amount,
                currency=order.currency,
            )
        )

    @classmethod
    def confirm_payment(
        cls,
        order_id: UUID,
        intent_id: str,
        buyer: AbstractBaseUser | None = None,
        gateway: PaymentGateway | None = None,
    ) -> ServiceResult[PaymentOutcome]:
        """
        Direct confirmation: ask the gateway and apply the result.

        Returns:
            ServiceResult with PaymentOutcome, or a PAYMENT_NOT_COMPLETED
            failure whose message depends on the intent status
        """
        gateway = gateway or get_payment_gateway()

        order = Order.objects.filter(pk=order_id).first()
        if order is None:
            return ServiceResult.failure(f"Order {order_id} not found", "ORDER_NOT_FOUND")
        if buyer is not None and order.buyer_id != buyer.pk:
            return ServiceResult.failure("Order belongs to another buyer", "PERMISSION_DENIED")
        if not intent_id or order.payment_intent_ref != intent_id:
            return ServiceResult.from_exception(
                OrderValidationError(
                    "Payment intent does not match this order",
                    details={"intent_id": ["Payment intent does not match this order."]},
                )
            )
        if order.is_paid:
            return ServiceResult.success(
                PaymentOutcome(order.pk, order.status, action="already_paid", changed=False)
            )

        try:
            status = gateway.confirm_intent(intent_id)
        except GatewayError as e:
            cls.get_logger().warning(
                "Could not read payment intent",
                extra={"order_id": str(order.pk), "intent_id": intent_id, "error_code": e.error_code},
            )
            return ServiceResult.failure(e.message, "GATEWAY_ERROR")

        if status != INTENT_SUCCEEDED:
            message = INTENT_STATUS_MESSAGES.get(status, f"Payment not completed (status: {status}).")
            return ServiceResult.from_exception(
                PaymentNotCompletedError(message, details={"intent_status": status})
            )

        return cls.apply_payment_succeeded(intent_id, source="direct", gateway=gateway)

    # =========================================================================
    # Shared Outcome Application
    # =========================================================================

    @classmethod
    def apply_payment_succeeded(
        cls,
        intent_id: str,
        source: str = "webhook",
        gateway: PaymentGateway | None = None,
    ) -> ServiceResult[PaymentOutcome]:
        """
        Apply a successful payment to the order that owns the intent.

        PENDING -> paid (items to escrow, products sold). An order that is
        already paid is left alone. A payment that lands after the order
        was cancelled or expired is refunded in full.
        """
        logger = cls.get_logger()

        with cls.atomic():
            order = Order.objects.select_for_update().filter(payment_intent_ref=intent_id).first()
            if order is None:
                logger.warning(
                    "Payment succeeded for unknown intent",
                    extra={"intent_id": intent_id, "source": source},
                )
                return ServiceResult.failure(
                    f"No order for payment intent {intent_id}", "ORDER_NOT_FOUND"
                )

            if order.status == OrderStatus.PENDING:
                transitions.mark_order_paid(order, actor=source)
                logger.info(
                    "Order paid",
                    extra={"order_id": str(order.pk), "intent_id": intent_id, "source": source},
                )
                return ServiceResult.success(
                    PaymentOutcome(order.pk, order.status, action="paid", changed=True)
                )

            if order.status not in (OrderStatus.CANCELLED, OrderStatus.EXPIRED):
                logger.debug(
                    "Duplicate payment confirmation ignored",
                    extra={"order_id": str(order.pk), "status": order.status, "source": source},
                )
                return ServiceResult.success(
                    PaymentOutcome(order.pk, order.status, action="already_paid", changed=False)
                )

            existing_refund = order.metadata.get("late_refund_ref")
            if existing_refund:
                return ServiceResult.success(
                    PaymentOutcome(
                        order.pk, order.status, action="late_refund", changed=False, refund_ref=existing_refund
                    )
                )

        # Order was closed before the money arrived; refund outside the row lock.
        return cls._refund_late_payment(order, source, gateway or get_payment_gateway())

    @classmethod
    def _refund_late_payment(cls, order: Order, source: str, gateway: PaymentGateway) -> ServiceResult[PaymentOutcome]:
        logger = cls.get_logger()
        try:
            refund_ref = gateway.refund(
                order.payment_intent_ref,
                order.total_amount,
                idempotency_key=f"late_refund:{order.pk}",
                reason="payment succeeded after checkout closed",
            )
        except GatewayError as e:
            logger.error(
                "Late payment refund failed",
                extra={"order_id": str(order.pk), "error_code": e.error_code, "retryable": e.is_retryable},
            )
            return ServiceResult.failure(e.message, "GATEWAY_ERROR")

        with cls.atomic():
            locked = Order.objects.select_for_update().get(pk=order.pk)
            locked.metadata = {
                **locked.metadata,
                "late_refund_ref": refund_ref,
                "late_refund_at": timezone.now().isoformat(),
            }
            locked.save(update_fields=["metadata", "updated_at"])

        logger.warning(
            "Payment arrived after checkout closed; refunded",
            extra={
                "order_id": str(order.pk),
                "status": order.status,
                "refund_ref": refund_ref,
                "source": source,
            },
        )
        return ServiceResult.success(
            PaymentOutcome(order.pk, order.status, action="late_refund", changed=True, refund_ref=refund_ref)
        )

    @classmethod
    def apply_payment_failed(
        cls,
        intent_id: str,
        reason: str = "",
        source: str = "webhook",
    ) -> ServiceResult[PaymentOutcome]:
        """
        Expire a PENDING order whose payment failed or was cancelled.

        Products go straight back on sale. Orders past PENDING are left
        untouched.
        """
        with cls.atomic():
            order = Order.objects.select_for_update().filter(payment_intent_ref=intent_id).first()
            if order is None:
                return ServiceResult.failure(
                    f"No order for payment intent {intent_id}", "ORDER_NOT_FOUND"
                )

            if order.status != OrderStatus.PENDING:
                return ServiceResult.success(
                    PaymentOutcome(order.pk, order.status, action="ignored", changed=False)
                )

            transitions.expire_order(order, reason or "payment failed", actor=source)

        cls.get_logger().info(
            "Order expired after failed payment",
            extra={"order_id": str(order.pk), "intent_id": intent_id, "reason": reason},
        )
        return ServiceResult.success(
            PaymentOutcome(order.pk, order.status, action="expired", changed=True)
        )
