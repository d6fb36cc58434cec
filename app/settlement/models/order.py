"""
Order and OrderItem models.

An Order is one buyer checkout. It owns one OrderItem per purchased
product, and items from different sellers are settled independently:
each item carries its own fulfilment status and its own escrow status.

Usage:
    from settlement.models import Order, OrderItem

    order.mark_paid()        # pending -> paid
    order.save()

    item.start_processing()  # pending -> processing
    item.hold_funds()        # escrow pending -> holding
    item.save()

Note:
    Both status fields are protected FSM fields. Do not assign to them
    directly; call a transition. Services normally go through
    settlement.state_machines.transitions, which also keeps the paired
    Transaction, the product lock and the status history in step.
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin, VersionedMixin

from settlement.state_machines import EscrowStatus, OrderItemStatus, OrderStatus


class Order(UUIDPrimaryKeyMixin, VersionedMixin, BaseModel):
    """
    A buyer checkout spanning one or more sellers.

    State Flow:
        PENDING -> PAID -> PROCESSING -> SHIPPED -> DELIVERED
        PAID -> SHIPPED | DELIVERED

    Closing Flows:
        PENDING -> CANCELLED | EXPIRED
        PAID/PROCESSING -> CANCELLED
        PAID/PROCESSING/SHIPPED/DELIVERED -> REFUNDED

    A paid order stays PAID until an item changes; from then on the
    status is derived from the items (see transitions.rollup_order_status).

    Fields:
        buyer: User paying for the order
        total_amount: Sum of item prices plus total_shipping_fee
        total_platform_fee: Sum of item platform fees
        total_shipping_fee: Shipping charged across all seller groups
        payment_intent_ref: Gateway payment intent id (pi_xxx)
        version: Optimistic locking version
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    buyer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="orders",
    )

    shipping_address = models.ForeignKey(
        "settlement.ShippingAddress",
        on_delete=models.PROTECT,
        related_name="orders",
    )

    # ==========================================================================
    # Amounts
    # ==========================================================================

    total_amount = models.PositiveBigIntegerField(
        help_text="Amount charged to the buyer (items + shipping)",
    )

    total_platform_fee = models.PositiveBigIntegerField(default=0)

    total_shipping_fee = models.PositiveBigIntegerField(default=0)

    currency = models.CharField(max_length=3, default="vnd")

    # ==========================================================================
    # State
    # ==========================================================================

    status = FSMField(
        default=OrderStatus.PENDING,
        choices=OrderStatus.choices,
        db_index=True,
        protected=True,
    )

    payment_intent_ref = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Gateway payment intent id (pi_xxx)",
    )

    # ==========================================================================
    # State Timestamps
    # ==========================================================================

    paid_at = models.DateTimeField(null=True, blank=True)
    shipped_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    expired_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)

    cancellation_reason = models.TextField(blank=True, default="")

    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["buyer", "status"], name="stl_order_buyer_status_idx"),
            models.Index(fields=["status", "created_at"], name="stl_order_status_created_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(total_amount__gt=0),
                name="settlement_order_amount_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"Order({self.id}, {self.status}, {self.total_amount} {self.currency.upper()})"

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(field=status, source=OrderStatus.PENDING, target=OrderStatus.PAID)
    def mark_paid(self):
        """Payment confirmed by the gateway."""
        self.paid_at = timezone.now()

    @transition(field=status, source=OrderStatus.PAID, target=OrderStatus.PROCESSING)
    def start_processing(self):
        """Some items were closed while the rest are still being prepared."""

    @transition(
        field=status,
        source=[OrderStatus.PAID, OrderStatus.PROCESSING],
        target=OrderStatus.SHIPPED,
    )
    def mark_shipped(self):
        self.shipped_at = timezone.now()

    @transition(
        field=status,
        source=[OrderStatus.PAID, OrderStatus.PROCESSING, OrderStatus.SHIPPED],
        target=OrderStatus.DELIVERED,
    )
    def mark_delivered(self):
        self.delivered_at = timezone.now()

    @transition(
        field=status,
        source=[OrderStatus.PENDING, OrderStatus.PAID, OrderStatus.PROCESSING],
        target=OrderStatus.CANCELLED,
    )
    def cancel(self, reason: str = ""):
        """
        Close the order without delivery.

        Before payment no money moved. After payment every item must have
        been refunded or cancelled by the caller first.
        """
        self.cancelled_at = timezone.now()
        if reason:
            self.cancellation_reason = reason

    @transition(field=status, source=OrderStatus.PENDING, target=OrderStatus.EXPIRED)
    def expire(self, reason: str = ""):
        """Checkout abandoned, payment failed or the lease ran out."""
        self.expired_at = timezone.now()
        if reason:
            self.cancellation_reason = reason

    @transition(
        field=status,
        source=[
            OrderStatus.PAID,
            OrderStatus.PROCESSING,
            OrderStatus.SHIPPED,
            OrderStatus.DELIVERED,
        ],
        target=OrderStatus.REFUNDED,
    )
    def refund(self):
        self.refunded_at = timezone.now()

    # ==========================================================================
    # Helper Properties
    # ==========================================================================

    @property
    def is_paid(self) -> bool:
        """Whether funds were captured for this order at some point."""
        return self.status in (
            OrderStatus.PAID,
            OrderStatus.PROCESSING,
            OrderStatus.SHIPPED,
            OrderStatus.DELIVERED,
        )

    @property
    def is_closed(self) -> bool:
        return self.status in (
            OrderStatus.CANCELLED,
            OrderStatus.REFUNDED,
            OrderStatus.EXPIRED,
        )

    def is_balanced(self) -> bool:
        """Check total_amount == sum of item prices + shipping."""
        items_total = sum(item.price for item in self.items.all())
        return self.total_amount == items_total + self.total_shipping_fee


class OrderItem(UUIDPrimaryKeyMixin, BaseModel):
    """
    One purchased product within an order, settled with one seller.

    Fulfilment Flow:
        PENDING -> PROCESSING -> SHIPPED -> DELIVERED
        PENDING/PROCESSING -> CANCELLED
        PROCESSING/SHIPPED/DELIVERED -> REFUNDED

    Escrow Flow:
        PENDING -> HOLDING -> RELEASED -> TRANSFERRED
        RELEASED -> TRANSFER_FAILED -> RELEASED (retry)
        PENDING -> CANCELLED | REFUNDED
        HOLDING/TRANSFER_FAILED -> REFUNDED

    Fields:
        price: What the buyer pays for this product (offer or list price)
        platform_fee: round_half_up(price * fee_percentage)
        fee_percentage: Fee fraction resolved at checkout time
    """

    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name="items",
    )

    product = models.ForeignKey(
        "settlement.Product",
        on_delete=models.PROTECT,
        related_name="order_items",
    )

    seller = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="sold_items",
    )

    offer = models.ForeignKey(
        "settlement.Offer",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="order_items",
    )

    price = models.PositiveBigIntegerField()

    platform_fee = models.PositiveBigIntegerField(default=0)

    fee_percentage = models.DecimalField(max_digits=5, decimal_places=4)

    status = FSMField(
        default=OrderItemStatus.PENDING,
        choices=OrderItemStatus.choices,
        db_index=True,
        protected=True,
    )

    escrow_status = FSMField(
        default=EscrowStatus.PENDING,
        choices=EscrowStatus.choices,
        db_index=True,
        protected=True,
    )

    class Meta:
        ordering = ["created_at"]
        indexes = [
            models.Index(fields=["seller", "escrow_status"], name="stl_item_seller_escrow_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(platform_fee__lte=models.F("price")),
                name="settlement_item_fee_within_price",
            ),
        ]

    def __str__(self) -> str:
        return f"OrderItem({self.id}, {self.status}/{self.escrow_status})"

    @property
    def seller_amount(self) -> int:
        """Amount owed to the seller once escrow is released."""
        return self.price - self.platform_fee

    # ==========================================================================
    # Fulfilment Transitions
    # ==========================================================================

    @transition(
        field=status,
        source=OrderItemStatus.PENDING,
        target=OrderItemStatus.PROCESSING,
    )
    def start_processing(self):
        pass

    @transition(
        field=status,
        source=OrderItemStatus.PROCESSING,
        target=OrderItemStatus.SHIPPED,
    )
    def ship(self):
        pass

    @transition(
        field=status,
        source=OrderItemStatus.SHIPPED,
        target=OrderItemStatus.DELIVERED,
    )
    def deliver(self):
        pass

    @transition(
        field=status,
        source=[OrderItemStatus.PENDING, OrderItemStatus.PROCESSING],
        target=OrderItemStatus.CANCELLED,
    )
    def cancel(self):
        pass

    @transition(
        field=status,
        source=[
            OrderItemStatus.PROCESSING,
            OrderItemStatus.SHIPPED,
            OrderItemStatus.DELIVERED,
        ],
        target=OrderItemStatus.REFUNDED,
    )
    def refund(self):
        pass

    # ==========================================================================
    # Escrow Transitions
    # ==========================================================================

    @transition(
        field=escrow_status,
        source=EscrowStatus.PENDING,
        target=EscrowStatus.HOLDING,
    )
    def hold_funds(self):
        """Payment captured; the item's share now sits in escrow."""

    @transition(
        field=escrow_status,
        source=EscrowStatus.PENDING,
        target=EscrowStatus.CANCELLED,
    )
    def cancel_escrow(self):
        """Nothing was ever captured for this item."""

    @transition(
        field=escrow_status,
        source=EscrowStatus.PENDING,
        target=EscrowStatus.REFUNDED,
    )
    def close_unpaid_escrow(self):
        """
        Bookkeeping close-out for an abandoned checkout.

        No gateway refund is issued; nothing was captured.
        """

    @transition(
        field=escrow_status,
        source=[EscrowStatus.HOLDING, EscrowStatus.TRANSFER_FAILED],
        target=EscrowStatus.RELEASED,
    )
    def release_funds(self):
        """Protection window elapsed (or a failed transfer is retried)."""

    @transition(
        field=escrow_status,
        source=EscrowStatus.RELEASED,
        target=EscrowStatus.TRANSFERRED,
    )
    def mark_transferred(self):
        pass

    @transition(
        field=escrow_status,
        source=EscrowStatus.RELEASED,
        target=EscrowStatus.TRANSFER_FAILED,
    )
    def mark_transfer_failed(self):
        pass

    @transition(
        field=escrow_status,
        source=[EscrowStatus.HOLDING, EscrowStatus.TRANSFER_FAILED],
        target=EscrowStatus.REFUNDED,
    )
    def refund_escrow(self):
        """Captured funds returned to the buyer."""
