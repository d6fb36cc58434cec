"""
Transaction and EscrowRelease models.

A Transaction is the settlement record for one order item: it carries
the money figures, the fulfilment evidence, the dispute flag and the
transfer bookkeeping. Transactions are never deleted.

EscrowRelease is the append-only ledger of money leaving escrow, either
as a transfer to the seller or as a refund to the buyer. Failed attempts
are recorded too.
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin, VersionedMixin

from settlement.state_machines import (
    DisputeStatus,
    EscrowReleaseKind,
    EscrowReleaseStatus,
    EscrowStatus,
    TransactionStatus,
)


class Transaction(UUIDPrimaryKeyMixin, VersionedMixin, BaseModel):
    """
    Settlement record paired 1:1 with an OrderItem.

    State Flow:
        PENDING -> PAID -> SHIPPED -> DELIVERED
        PENDING -> CANCELLED
        PAID/SHIPPED/DELIVERED -> REFUNDED

    Fields:
        amount: Item price charged to the buyer
        platform_fee: Fee kept by the platform
        escrow_status: Mirror of order_item.escrow_status
        dispute_status: OPEN blocks escrow release
        delivery_evidence: Proof photo references supplied by the buyer
        transfer_ref: Gateway transfer id once the seller is paid
        refund_ref: Gateway refund id once the buyer is refunded
        transfer_attempts: Number of transfer attempts made
        escalated_at: Set when automatic retries stop

    Note:
        escrow_status is written only by the transition module, which
        copies it from the order item in the same transaction.
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    order_item = models.OneToOneField(
        "settlement.OrderItem",
        on_delete=models.PROTECT,
        related_name="transaction",
    )

    buyer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="purchases",
    )

    seller = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="sales",
    )

    # ==========================================================================
    # Amounts
    # ==========================================================================

    amount = models.PositiveBigIntegerField()
    platform_fee = models.PositiveBigIntegerField(default=0)
    fee_percentage = models.DecimalField(max_digits=5, decimal_places=4)

    # ==========================================================================
    # State
    # ==========================================================================

    status = FSMField(
        default=TransactionStatus.PENDING,
        choices=TransactionStatus.choices,
        db_index=True,
        protected=True,
    )

    escrow_status = models.CharField(
        max_length=20,
        choices=EscrowStatus.choices,
        default=EscrowStatus.PENDING,
        db_index=True,
    )

    dispute_status = models.CharField(
        max_length=10,
        choices=DisputeStatus.choices,
        default=DisputeStatus.NONE,
    )

    dispute_reason = models.TextField(blank=True, default="")

    buyer_protection_eligible = models.BooleanField(default=True)

    # ==========================================================================
    # Fulfilment
    # ==========================================================================

    tracking_number = models.CharField(max_length=128, blank=True, default="")
    tracking_url = models.URLField(max_length=500, blank=True, default="")

    delivery_evidence = models.JSONField(
        default=list,
        blank=True,
        help_text="Proof-of-delivery photo references",
    )

    paid_at = models.DateTimeField(null=True, blank=True)
    shipped_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True, db_index=True)

    # ==========================================================================
    # Payout Bookkeeping
    # ==========================================================================

    released_at = models.DateTimeField(null=True, blank=True)

    transfer_ref = models.CharField(max_length=255, blank=True, default="")
    refund_ref = models.CharField(max_length=255, blank=True, default="")

    transfer_attempts = models.PositiveIntegerField(default=0)
    last_transfer_error = models.TextField(blank=True, default="")
    last_transfer_error_code = models.CharField(max_length=64, blank=True, default="")
    escalated_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["escrow_status", "delivered_at"], name="stl_txn_escrow_delivered_idx"),
            models.Index(fields=["seller", "escrow_status"], name="stl_txn_seller_escrow_idx"),
        ]

    def __str__(self) -> str:
        return f"Transaction({self.id}, {self.status}/{self.escrow_status})"

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=TransactionStatus.PENDING,
        target=TransactionStatus.PAID,
    )
    def mark_paid(self):
        self.paid_at = timezone.now()

    @transition(
        field=status,
        source=TransactionStatus.PAID,
        target=TransactionStatus.SHIPPED,
    )
    def mark_shipped(self, tracking_number: str, tracking_url: str = ""):
        self.tracking_number = tracking_number
        self.tracking_url = tracking_url or ""
        self.shipped_at = timezone.now()

    @transition(
        field=status,
        source=TransactionStatus.SHIPPED,
        target=TransactionStatus.DELIVERED,
    )
    def mark_delivered(self, evidence: list[str]):
        self.delivery_evidence = list(evidence)
        self.delivered_at = timezone.now()

    @transition(
        field=status,
        source=TransactionStatus.PENDING,
        target=TransactionStatus.CANCELLED,
    )
    def cancel(self):
        pass

    @transition(
        field=status,
        source=[
            TransactionStatus.PAID,
            TransactionStatus.SHIPPED,
            TransactionStatus.DELIVERED,
        ],
        target=TransactionStatus.REFUNDED,
    )
    def refund(self, refund_ref: str = ""):
        self.refund_ref = refund_ref

    # ==========================================================================
    # Helper Properties
    # ==========================================================================

    @property
    def seller_amount(self) -> int:
        return self.amount - self.platform_fee

    @property
    def is_disputed(self) -> bool:
        return self.dispute_status == DisputeStatus.OPEN


class EscrowRelease(UUIDPrimaryKeyMixin, BaseModel):
    """
    One attempt to move money out of escrow.

    Fields:
        kind: TRANSFER (to seller) or REFUND (to buyer)
        amount: Amount requested from the gateway
        status: COMPLETED or FAILED
        gateway_ref: Transfer/refund id when COMPLETED
        reason: Refund reason or gateway error message
    """

    transaction = models.ForeignKey(
        Transaction,
        on_delete=models.PROTECT,
        related_name="escrow_releases",
    )

    kind = models.CharField(max_length=10, choices=EscrowReleaseKind.choices)

    amount = models.PositiveBigIntegerField()

    status = models.CharField(max_length=10, choices=EscrowReleaseStatus.choices)

    reason = models.TextField(blank=True, default="")

    gateway_ref = models.CharField(max_length=255, blank=True, default="")

    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["transaction", "kind", "status"], name="stl_release_txn_kind_idx"),
        ]

    def __str__(self) -> str:
        return f"EscrowRelease({self.kind}, {self.amount}, {self.status})"
