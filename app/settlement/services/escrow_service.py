"""
Escrow release engine: delivery, payouts to sellers, refunds to buyers.

Money for each order item sits in escrow (HOLDING) from payment until
either the buyer-protection window after delivery elapses (transfer to
the seller) or the item is refunded (back to the buyer). Items of the
same order are settled independently.

Seller transfers use a two-phase pattern so the gateway call never runs
inside a database transaction:
1. Phase 1: Lock the item, move escrow to RELEASED, count the attempt, commit
2. Phase 2: Call gateway.transfer with the stable key "transfer:{item_id}"
3. Phase 3: Record TRANSFERRED, or TRANSFER_FAILED and decide on retry

If a worker dies between phases 1 and 3 the item stays RELEASED without a
transfer_ref; the reconciliation sweep re-queues it, and the stable key
keeps the gateway from paying twice.

Usage:
    from settlement.services import EscrowService

    EscrowService.confirm_delivery(txn.id, ["proof/photo-1.jpg"], buyer=user)
    EscrowService.release_escrow(item.id)
    EscrowService.refund_order_item(item.id, reason="item not as described")
    EscrowService.cancel_order(order.id, reason="changed my mind", actor=user)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.db.models import F, Q, Sum
from django.utils import timezone

from core.services import BaseService, ServiceResult

from settlement.adapters import get_payment_gateway
from settlement.exceptions import (
    AMBIGUOUS_GATEWAY_ERROR_CODES,
    EscrowAlreadyTransferredError,
    GatewayError,
    GatewayInvalidAccountError,
    InvalidStateTransitionError,
    LockAcquisitionError,
    OrderNotCancellableError,
    OrderValidationError,
    TransferEscalatedError,
    TransferOutcomeUnknownError,
)
from settlement.locks import DistributedLock
from settlement.models import Order, OrderItem, SellerAccount, Transaction
from settlement.services.order_service import OrderSummary
from settlement.state_machines import (
    DisputeStatus,
    EscrowStatus,
    OrderItemStatus,
    OrderStatus,
    TransactionStatus,
)
from settlement.state_machines import transitions

if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID

    from django.contrib.auth.models import AbstractBaseUser

    from settlement.adapters import PaymentGateway


# =============================================================================
# Constants
# =============================================================================

# Escrow lock TTL (seconds); must outlive one gateway call with SDK retries
ESCROW_LOCK_TTL = 120

# Time to wait for the escrow lock when refunding (seconds)
ESCROW_LOCK_TIMEOUT = 5.0

_CLOSED_ITEM_STATUSES = (OrderItemStatus.CANCELLED, OrderItemStatus.REFUNDED)


def escrow_lock_key(order_item_id) -> str:
    return f"escrow:release:{order_item_id}"


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class ReleaseOutcome:
    """
    Result of one escrow release attempt.

    Attributes:
        action: "transferred", "already_transferred" or "failed"
    """

    order_item_id: UUID
    escrow_status: str
    action: str
    transfer_ref: str | None = None
    attempts: int = 0
    escalated: bool = False


@dataclass
class RefundOutcome:
    order_item_id: UUID
    refund_ref: str
    order_status: str
    shipping_refund_ref: str | None = None


@dataclass
class ItemCancelOutcome:
    order_item_id: UUID
    success: bool
    refund_ref: str | None = None
    error: str | None = None
    error_code: str | None = None


@dataclass
class CancelOutcome:
    order_id: UUID
    order_status: str
    refunded_before_payment: bool = False
    items: list[ItemCancelOutcome] = field(default_factory=list)


# =============================================================================
# Escrow Service
# =============================================================================


class EscrowService(BaseService):
    """
    Moves order item funds out of escrow.

    Gateway calls are made outside database transactions. Release and
    refund of the same item are serialised by a Redis lock on
    "escrow:release:{item_id}".
    """

    # =========================================================================
    # Delivery
    # =========================================================================

    @classmethod
    def confirm_delivery(
        cls,
        transaction_id: UUID,
        proof_photos: list[str],
        buyer: AbstractBaseUser | None = None,
    ) -> ServiceResult[OrderSummary]:
        """
        Buyer confirms receipt of a shipped item.

        Transaction SHIPPED -> DELIVERED and item SHIPPED -> DELIVERED.
        Escrow stays HOLDING until the buyer-protection window elapses.

        Args:
            transaction_id: Transaction of the delivered item
            proof_photos: Photo references, at least one
            buyer: If given, must be the order's buyer
        """
        photos = [photo for photo in (proof_photos or []) if photo]
        if not photos:
            return ServiceResult.from_exception(
                OrderValidationError(
                    "At least one proof-of-delivery photo is required",
                    details={"proof_photos": ["At least one photo is required."]},
                )
            )

        txn = Transaction.objects.select_related("order_item").filter(pk=transaction_id).first()
        if txn is None:
            return ServiceResult.failure(f"Transaction {transaction_id} not found", "ORDER_NOT_FOUND")
        if buyer is not None and txn.buyer_id != buyer.pk:
            return ServiceResult.failure("Only the buyer can confirm delivery", "PERMISSION_DENIED")

        actor = f"buyer:{txn.buyer_id}"
        try:
            with cls.atomic():
                order = Order.objects.select_for_update().get(pk=txn.order_item.order_id)
                txn = Transaction.objects.select_for_update().get(pk=transaction_id)
                item = OrderItem.objects.get(pk=txn.order_item_id)
                transitions.deliver_item(item, txn, photos, actor=actor)
                transitions.rollup_order_status(order, actor)
        except InvalidStateTransitionError as e:
            return ServiceResult.from_exception(e)

        cls.get_logger().info(
            "Delivery confirmed",
            extra={"order_id": str(order.pk), "transaction_id": str(txn.pk), "photos": len(photos)},
        )
        return ServiceResult.success(OrderSummary.from_order(order))

    # =========================================================================
    # Release Scanning
    # =========================================================================

    @staticmethod
    def _releasable_filter(now: datetime) -> Q:
        cutoff = now - timedelta(days=settings.SETTLEMENT_BUYER_PROTECTION_DAYS)
        return Q(transaction__status=TransactionStatus.DELIVERED) & (
            Q(transaction__delivered_at__lte=cutoff)
            | Q(transaction__buyer_protection_eligible=False)
        )

    @classmethod
    def find_releasable_items(cls, now: datetime | None = None):
        """
        Items whose buyer-protection window has elapsed.

        Escrow HOLDING, delivered at least SETTLEMENT_BUYER_PROTECTION_DAYS
        ago (or not covered by buyer protection), and not under an open
        dispute.
        """
        now = now or timezone.now()
        return (
            OrderItem.objects.filter(escrow_status=EscrowStatus.HOLDING)
            .filter(cls._releasable_filter(now))
            .exclude(transaction__dispute_status=DisputeStatus.OPEN)
            .order_by("transaction__delivered_at")
        )

    @classmethod
    def retry_failed_transfers(cls) -> list[UUID]:
        """
        Ids of TRANSFER_FAILED items that may be retried automatically.

        Escalated items and items that reached the attempt cap are left
        for manual review.
        """
        return list(
            OrderItem.objects.filter(
                escrow_status=EscrowStatus.TRANSFER_FAILED,
                transaction__escalated_at__isnull=True,
                transaction__transfer_attempts__lt=settings.SETTLEMENT_MAX_TRANSFER_ATTEMPTS,
            )
            .exclude(transaction__dispute_status=DisputeStatus.OPEN)
            .values_list("pk", flat=True)
        )

    @classmethod
    def find_stuck_releases(cls, now: datetime | None = None):
        """Items left RELEASED without a transfer_ref longer than the stuck threshold."""
        now = now or timezone.now()
        cutoff = now - timedelta(minutes=settings.SETTLEMENT_STUCK_RELEASE_MINUTES)
        return OrderItem.objects.filter(
            escrow_status=EscrowStatus.RELEASED,
            transaction__released_at__lt=cutoff,
            transaction__transfer_ref="",
        )

    # =========================================================================
    # Release (transfer to seller)
    # =========================================================================

    @classmethod
    def release_escrow(
        cls,
        order_item_id: UUID,
        gateway: PaymentGateway | None = None,
        now: datetime | None = None,
    ) -> ServiceResult[ReleaseOutcome]:
        """
        Pay the seller their share of one item.

        Returns:
            ServiceResult with ReleaseOutcome. Failure codes:
            - ORDER_NOT_FOUND: Unknown item
            - NOT_RELEASABLE: Window not elapsed, disputed, or wrong state
            - LOCK_ACQUISITION_FAILED: Another worker is on this item
            - TRANSFER_ESCALATED: Permanent error or attempts exhausted

        Raises:
            GatewayError: Transient gateway error (is_retryable=True) after
                the item was recorded as TRANSFER_FAILED; the caller
                retries with backoff
        """
        gateway = gateway or get_payment_gateway()
        now = now or timezone.now()

        try:
            with DistributedLock(escrow_lock_key(order_item_id), ttl=ESCROW_LOCK_TTL, blocking=False):
                return cls._release_locked(order_item_id, gateway, now)
        except LockAcquisitionError as e:
            cls.get_logger().info(
                "Escrow release already in progress",
                extra={"order_item_id": str(order_item_id)},
            )
            return ServiceResult.from_exception(e)

    @classmethod
    def _release_locked(cls, order_item_id: UUID, gateway: PaymentGateway, now: datetime) -> ServiceResult[ReleaseOutcome]:
        logger = cls.get_logger()

        # ---------------------------------------------------------------------
        # Phase 1: claim the item for transfer
        # ---------------------------------------------------------------------
        with cls.atomic():
            item = OrderItem.objects.select_for_update().select_related("order").filter(pk=order_item_id).first()
            if item is None:
                return ServiceResult.failure(f"Order item {order_item_id} not found", "ORDER_NOT_FOUND")
            txn = Transaction.objects.select_for_update().get(order_item=item)

            if item.escrow_status == EscrowStatus.TRANSFERRED:
                return ServiceResult.success(
                    ReleaseOutcome(
                        item.pk,
                        item.escrow_status,
                        action="already_transferred",
                        transfer_ref=txn.transfer_ref,
                        attempts=txn.transfer_attempts,
                    )
                )

            refusal = cls._release_refusal(item, txn, now)
            if refusal:
                logger.debug("Escrow not releasable", extra={"order_item_id": str(item.pk), "reason": refusal})
                return ServiceResult.failure(refusal, "NOT_RELEASABLE")

            if txn.escalated_at is not None:
                return ServiceResult.from_exception(
                    TransferEscalatedError(
                        "Transfer is escalated for manual review",
                        details={"order_item_id": str(item.pk)},
                    )
                )

            if item.escrow_status == EscrowStatus.RELEASED:
                # Re-queued after a crash between phases; same idempotency key.
                txn.transfer_attempts += 1
                txn.save(update_fields=["transfer_attempts", "updated_at"])
            else:
                transitions.release_item_escrow(item, txn, actor="escrow", now=now)

            account = SellerAccount.objects.filter(user_id=item.seller_id).first()
            destination = account.gateway_account_ref if account and account.is_payable else None
            amount = item.seller_amount
            currency = item.order.currency
            attempts = txn.transfer_attempts

        log_context = {
            "order_item_id": str(item.pk),
            "order_id": str(item.order_id),
            "seller_id": item.seller_id,
            "amount": amount,
            "attempt": attempts,
        }

        # ---------------------------------------------------------------------
        # Phase 2: gateway transfer (outside any transaction)
        # ---------------------------------------------------------------------
        error: GatewayError | None = None
        transfer_ref = ""
        if destination is None:
            error = GatewayInvalidAccountError(
                "Seller has no payout account able to receive transfers",
                details={"seller_id": item.seller_id},
            )
        elif amount > 0:
            try:
                transfer_ref = gateway.transfer(
                    destination,
                    amount,
                    currency,
                    idempotency_key=f"transfer:{item.pk}",
                    metadata={"order_item_id": str(item.pk), "order_id": str(item.order_id)},
                )
            except GatewayError as e:
                error = e

        # ---------------------------------------------------------------------
        # Phase 3: record the outcome
        # ---------------------------------------------------------------------
        if error is None:
            with cls.atomic():
                item = OrderItem.objects.select_for_update().get(pk=item.pk)
                txn = Transaction.objects.select_for_update().get(order_item=item)
                transitions.complete_transfer(item, txn, transfer_ref, actor="escrow")
            logger.info("Escrow transferred to seller", extra={**log_context, "transfer_ref": transfer_ref})
            return ServiceResult.success(
                ReleaseOutcome(item.pk, item.escrow_status, action="transferred", transfer_ref=transfer_ref, attempts=attempts)
            )

        escalate = not error.is_retryable or attempts >= settings.SETTLEMENT_MAX_TRANSFER_ATTEMPTS
        with cls.atomic():
            item = OrderItem.objects.select_for_update().get(pk=item.pk)
            txn = Transaction.objects.select_for_update().get(order_item=item)
            transitions.fail_transfer(
                item,
                txn,
                f"{error.error_code}: {error.message}",
                error_code=error.error_code,
                escalate=escalate,
                actor="escrow",
            )

        if escalate:
            logger.critical(
                "Seller transfer escalated for manual review",
                extra={**log_context, "error_code": error.error_code, "error": error.message},
            )
            return ServiceResult.from_exception(
                TransferEscalatedError(
                    f"Transfer escalated for manual review: {error.message}",
                    details={"order_item_id": str(item.pk), "attempts": attempts},
                )
            )

        logger.warning(
            "Seller transfer failed, will retry",
            extra={**log_context, "error_code": error.error_code},
        )
        raise error

    @staticmethod
    def _release_refusal(item: OrderItem, txn: Transaction, now: datetime) -> str | None:
        if txn.dispute_status == DisputeStatus.OPEN:
            return "Transaction is under dispute"
        if item.escrow_status == EscrowStatus.HOLDING:
            if txn.status != TransactionStatus.DELIVERED:
                return "Item has not been delivered"
            if txn.buyer_protection_eligible:
                window_end = txn.delivered_at + timedelta(days=settings.SETTLEMENT_BUYER_PROTECTION_DAYS)
                if window_end > now:
                    return "Buyer protection window has not elapsed"
            return None
        if item.escrow_status in (EscrowStatus.TRANSFER_FAILED, EscrowStatus.RELEASED):
            return None
        return f"Escrow is {item.escrow_status}"

    # =========================================================================
    # Refunds
    # =========================================================================

    @classmethod
    def refund_order_item(
        cls,
        order_item_id: UUID,
        reason: str,
        gateway: PaymentGateway | None = None,
        actor: str = "system",
    ) -> ServiceResult[RefundOutcome]:
        """
        Return one item's price to the buyer.

        Allowed while escrow is HOLDING, or TRANSFER_FAILED after the
        gateway definitely rejected the transfer. A timed-out or unavailable
        transfer blocks the refund until a retry settles it. A TRANSFERRED
        item is rejected (the seller was already paid). On gateway failure
        nothing changes.
        """
        gateway = gateway or get_payment_gateway()

        if not OrderItem.objects.filter(pk=order_item_id).exists():
            return ServiceResult.failure(f"Order item {order_item_id} not found", "ORDER_NOT_FOUND")

        try:
            with DistributedLock(
                escrow_lock_key(order_item_id),
                ttl=ESCROW_LOCK_TTL,
                blocking=True,
                timeout=ESCROW_LOCK_TIMEOUT,
            ):
                return cls._refund_locked(order_item_id, reason, gateway, actor)
        except (
            LockAcquisitionError,
            EscrowAlreadyTransferredError,
            TransferOutcomeUnknownError,
            InvalidStateTransitionError,
        ) as e:
            cls.get_logger().info(
                "Refund rejected",
                extra={"order_item_id": str(order_item_id), "error_code": e.error_code},
            )
            return ServiceResult.from_exception(e)

    @classmethod
    def _refund_locked(cls, order_item_id: UUID, reason: str, gateway: PaymentGateway, actor: str) -> ServiceResult[RefundOutcome]:
        logger = cls.get_logger()
        item = OrderItem.objects.select_related("order", "transaction").get(pk=order_item_id)
        cls._check_refundable(item, item.transaction)
        order = item.order

        try:
            refund_ref = gateway.refund(
                order.payment_intent_ref,
                item.price,
                idempotency_key=f"refund:{item.pk}",
                reason=reason,
            )
        except GatewayError as e:
            logger.error(
                "Item refund failed at gateway",
                extra={"order_item_id": str(item.pk), "error_code": e.error_code, "retryable": e.is_retryable},
            )
            return ServiceResult.failure(e.message, "GATEWAY_ERROR")

        with cls.atomic():
            order = Order.objects.select_for_update().get(pk=order.pk)
            item = OrderItem.objects.get(pk=order_item_id)
            txn = Transaction.objects.select_for_update().get(order_item=item)
            cls._check_refundable(item, txn)
            transitions.refund_item(item, txn, refund_ref, reason=reason, actor=actor)
            transitions.rollup_order_status(order, actor)

        logger.info(
            "Item refunded",
            extra={"order_id": str(order.pk), "order_item_id": str(item.pk), "amount": item.price, "refund_ref": refund_ref},
        )

        shipping_refund_ref = cls._refund_shipping_if_done(order, gateway)
        return ServiceResult.success(
            RefundOutcome(
                order_item_id=item.pk,
                refund_ref=refund_ref,
                order_status=order.status,
                shipping_refund_ref=shipping_refund_ref,
            )
        )

    @staticmethod
    def _check_refundable(item: OrderItem, txn: Transaction) -> None:
        if item.escrow_status == EscrowStatus.TRANSFERRED:
            raise EscrowAlreadyTransferredError(
                "Seller was already paid for this item; refund is not possible",
                details={"order_item_id": str(item.pk)},
            )
        if (
            item.escrow_status == EscrowStatus.TRANSFER_FAILED
            and txn.last_transfer_error_code in AMBIGUOUS_GATEWAY_ERROR_CODES
        ):
            raise TransferOutcomeUnknownError(
                "Last transfer to the seller may have gone through; retry it before refunding",
                details={"order_item_id": str(item.pk), "error_code": txn.last_transfer_error_code},
            )
        if item.escrow_status not in (EscrowStatus.HOLDING, EscrowStatus.TRANSFER_FAILED):
            raise InvalidStateTransitionError(
                f"Cannot refund an item whose escrow is {item.escrow_status}",
                details={
                    "model": "OrderItem",
                    "pk": str(item.pk),
                    "transition": "refund_escrow",
                    "current_state": {"escrow_status": item.escrow_status},
                },
            )

    @classmethod
    def _refund_shipping_if_done(cls, order: Order, gateway: PaymentGateway) -> str | None:
        """
        Refund the shipping fee once no item of the order is still payable.

        Best effort: a gateway failure is logged and can be repeated safely
        because the idempotency key is fixed per order.
        """
        if order.total_shipping_fee <= 0 or order.metadata.get("shipping_refund_ref"):
            return order.metadata.get("shipping_refund_ref")
        if order.items.exclude(status__in=_CLOSED_ITEM_STATUSES).exists():
            return None

        try:
            refund_ref = gateway.refund(
                order.payment_intent_ref,
                order.total_shipping_fee,
                idempotency_key=f"refund_shipping:{order.pk}",
                reason="shipping",
            )
        except GatewayError as e:
            cls.get_logger().error(
                "Shipping fee refund failed",
                extra={"order_id": str(order.pk), "error_code": e.error_code},
            )
            return None

        with cls.atomic():
            locked = Order.objects.select_for_update().get(pk=order.pk)
            locked.metadata = {**locked.metadata, "shipping_refund_ref": refund_ref}
            locked.save(update_fields=["metadata", "updated_at"])
        return refund_ref

    # =========================================================================
    # Cancellation
    # =========================================================================

    @classmethod
    def cancel_order(
        cls,
        order_id: UUID,
        reason: str,
        actor: AbstractBaseUser | None = None,
        gateway: PaymentGateway | None = None,
    ) -> ServiceResult[CancelOutcome]:
        """
        Cancel an order before or after payment.

        Before payment the order is closed and its products released with
        no gateway call. After payment each item still being prepared is
        refunded on its own; one item's refund failure does not undo the
        others. Any shipped or delivered item blocks the whole cancel.

        Returns:
            ServiceResult with CancelOutcome listing per-item outcomes. If
            some refunds failed the result is a PARTIAL_CANCELLATION
            failure that still carries the outcome.
        """
        logger = cls.get_logger()

        order = Order.objects.filter(pk=order_id).first()
        if order is None:
            return ServiceResult.failure(f"Order {order_id} not found", "ORDER_NOT_FOUND")
        if actor is not None and actor.pk != order.buyer_id and not actor.is_staff:
            return ServiceResult.failure("Only the buyer can cancel this order", "PERMISSION_DENIED")

        actor_label = f"user:{actor.pk}" if actor is not None else "system"

        if order.status == OrderStatus.PENDING:
            with cls.atomic():
                order = Order.objects.select_for_update().get(pk=order_id)
                if order.status == OrderStatus.PENDING:
                    transitions.cancel_unpaid_order(order, reason, actor=actor_label)
                    logger.info(
                        "Unpaid order cancelled",
                        extra={"order_id": str(order.pk), "reason": reason},
                    )
                    return ServiceResult.success(
                        CancelOutcome(order.pk, order.status, refunded_before_payment=True)
                    )
            # Paid while we waited for the lock; fall through to the refund path.

        if order.status not in (OrderStatus.PAID, OrderStatus.PROCESSING):
            return ServiceResult.from_exception(
                OrderNotCancellableError(
                    f"Order is {order.status} and cannot be cancelled",
                    details={"order_id": str(order.pk), "status": order.status},
                )
            )

        items = list(order.items.order_by("created_at"))
        blocking = [
            str(item.pk)
            for item in items
            if item.status in (OrderItemStatus.SHIPPED, OrderItemStatus.DELIVERED)
        ]
        if blocking:
            return ServiceResult.from_exception(
                OrderNotCancellableError(
                    "Order has items that were already shipped",
                    details={"order_id": str(order.pk), "items": blocking},
                )
            )

        gateway = gateway or get_payment_gateway()
        outcome = CancelOutcome(order.pk, order.status)
        for item in items:
            if item.status in _CLOSED_ITEM_STATUSES:
                continue
            result = cls.refund_order_item(item.pk, reason, gateway=gateway, actor=actor_label)
            outcome.items.append(
                ItemCancelOutcome(
                    order_item_id=item.pk,
                    success=result.success,
                    refund_ref=result.data.refund_ref if result.success else None,
                    error=result.error,
                    error_code=result.error_code,
                )
            )

        with cls.atomic():
            order = Order.objects.select_for_update().get(pk=order_id)
            if reason and not order.cancellation_reason:
                order.cancellation_reason = reason
                order.save(update_fields=["cancellation_reason", "updated_at"])
        outcome.order_status = order.status

        failed = [item for item in outcome.items if not item.success]
        logger.info(
            "Paid order cancellation finished",
            extra={
                "order_id": str(order.pk),
                "order_status": order.status,
                "refunded": len(outcome.items) - len(failed),
                "failed": len(failed),
            },
        )
        if failed:
            return ServiceResult(
                success=False,
                data=outcome,
                error=f"{len(failed)} of {len(outcome.items)} item refunds failed",
                error_code="PARTIAL_CANCELLATION",
            )
        return ServiceResult.success(outcome)

    # =========================================================================
    # Balances
    # =========================================================================

    @staticmethod
    def seller_pending_escrow(seller: AbstractBaseUser) -> int:
        """Seller's share (price minus fee) of items still held in escrow."""
        total = OrderItem.objects.filter(
            seller=seller, escrow_status=EscrowStatus.HOLDING
        ).aggregate(total=Sum(F("price") - F("platform_fee")))["total"]
        return total or 0

    @staticmethod
    def buyer_escrow_amount(buyer: AbstractBaseUser) -> int:
        """Item prices the buyer has paid that are still held in escrow."""
        total = OrderItem.objects.filter(
            order__buyer=buyer, escrow_status=EscrowStatus.HOLDING
        ).aggregate(total=Sum("price"))["total"]
        return total or 0
