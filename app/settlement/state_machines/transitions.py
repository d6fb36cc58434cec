"""
Central state transition primitives.

Every path that changes settlement state (webhooks, direct confirmation,
cancellation, escrow release, reconciliation) goes through these
functions so that the same rules apply everywhere:

- FSM transitions on Order, OrderItem and Transaction are fired here;
  TransitionNotAllowed is re-raised as InvalidStateTransitionError.
- Transaction.escrow_status is copied from its item in the same write.
- Product locks move through ProductLockManager.
- Each status change appends a StatusHistory row.

None of these functions open a transaction or take row locks. Callers
wrap them in transaction.atomic() and load the order with
select_for_update() first.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.utils import timezone

from django_fsm import TransitionNotAllowed, can_proceed

from settlement.exceptions import InvalidStateTransitionError
from settlement.models import EscrowRelease, StatusHistory, Transaction
from settlement.reservations import ProductLockManager
from settlement.state_machines.states import (
    DisputeStatus,
    EscrowReleaseKind,
    EscrowReleaseStatus,
    OrderItemStatus,
    OrderStatus,
)

if TYPE_CHECKING:
    from datetime import datetime

    from settlement.models import Order, OrderItem

logger = logging.getLogger(__name__)


# =============================================================================
# Helpers
# =============================================================================


def fire(instance, name: str, *args, **kwargs) -> None:
    """
    Call a django-fsm transition by name.

    Raises:
        InvalidStateTransitionError: The transition is not allowed from the
            instance's current state
    """
    method = getattr(instance, name)
    try:
        method(*args, **kwargs)
    except TransitionNotAllowed as e:
        model_name = instance.__class__.__name__
        current = {
            attr: getattr(instance, attr)
            for attr in ("status", "escrow_status")
            if hasattr(instance, attr)
        }
        raise InvalidStateTransitionError(
            f"Cannot {name} {model_name} {instance.pk} from {current}",
            details={
                "model": model_name,
                "pk": str(instance.pk),
                "transition": name,
                "current_state": current,
            },
        ) from e


def record(
    order_id,
    field: str,
    from_status: str,
    to_status: str,
    actor: str = "",
    order_item_id=None,
    note: str = "",
) -> StatusHistory:
    return StatusHistory.objects.create(
        order_id=order_id,
        order_item_id=order_item_id,
        field=field,
        from_status=from_status,
        to_status=to_status,
        actor=actor,
        note=note,
    )


def _record_item_changes(item: OrderItem, before: tuple[str, str], actor: str, note: str = "") -> None:
    status_before, escrow_before = before
    if item.status != status_before:
        record(
            item.order_id,
            StatusHistory.ITEM_STATUS,
            status_before,
            item.status,
            actor,
            order_item_id=item.pk,
            note=note,
        )
    if item.escrow_status != escrow_before:
        record(
            item.order_id,
            StatusHistory.ITEM_ESCROW_STATUS,
            escrow_before,
            item.escrow_status,
            actor,
            order_item_id=item.pk,
            note=note,
        )


def _move_order(order: Order, name: str, actor: str, note: str = "", **kwargs) -> None:
    before = order.status
    fire(order, name, **kwargs)
    order.save()
    record(order.pk, StatusHistory.ORDER_STATUS, before, order.status, actor, note=note)


def _save_pair(item: OrderItem, txn: Transaction) -> None:
    txn.escrow_status = item.escrow_status
    item.save()
    txn.save()


# =============================================================================
# Order Roll-up
# =============================================================================

ROLLUP_TRANSITIONS = {
    OrderStatus.CANCELLED: "cancel",
    OrderStatus.REFUNDED: "refund",
    OrderStatus.DELIVERED: "mark_delivered",
    OrderStatus.SHIPPED: "mark_shipped",
    OrderStatus.PROCESSING: "start_processing",
}

_CLOSED_ITEM_STATUSES = {OrderItemStatus.CANCELLED, OrderItemStatus.REFUNDED}


def derive_order_status(item_statuses: list[str]) -> str | None:
    """
    Order status implied by its items' statuses, or None if undetermined.

    Priority:
        all CANCELLED                       -> CANCELLED
        all REFUNDED/CANCELLED, any REFUNDED -> REFUNDED
        every open item DELIVERED           -> DELIVERED
        any SHIPPED                         -> SHIPPED
        any PROCESSING                      -> PROCESSING
    """
    if not item_statuses:
        return None
    statuses = set(item_statuses)
    if statuses == {OrderItemStatus.CANCELLED}:
        return OrderStatus.CANCELLED
    if statuses <= _CLOSED_ITEM_STATUSES:
        return OrderStatus.REFUNDED
    open_statuses = statuses - _CLOSED_ITEM_STATUSES
    if open_statuses == {OrderItemStatus.DELIVERED}:
        return OrderStatus.DELIVERED
    if OrderItemStatus.SHIPPED in statuses:
        return OrderStatus.SHIPPED
    if OrderItemStatus.PROCESSING in statuses:
        return OrderStatus.PROCESSING
    return None


def rollup_order_status(order: Order, actor: str = "system") -> str:
    """
    Move a paid order to the status derived from its items.

    Moves the FSM does not allow (for example SHIPPED back to PROCESSING
    when one item ships before another) are skipped.

    Returns:
        The order's status after the roll-up
    """
    target = derive_order_status(list(order.items.values_list("status", flat=True)))
    if target is None or target == order.status:
        return order.status

    method = getattr(order, ROLLUP_TRANSITIONS[target])
    if not can_proceed(method):
        logger.debug(
            "Order roll-up skipped",
            extra={"order_id": str(order.pk), "from": order.status, "to": target},
        )
        return order.status

    _move_order(order, ROLLUP_TRANSITIONS[target], actor, note="roll-up")
    logger.info(
        "Order status rolled up",
        extra={"order_id": str(order.pk), "status": order.status},
    )
    return order.status


# =============================================================================
# Payment Outcomes
# =============================================================================


def mark_order_paid(order: Order, actor: str = "system", now: datetime | None = None) -> Order:
    """
    Apply a confirmed payment to a PENDING order.

    Order -> PAID, each item -> PROCESSING with escrow HOLDING, each
    transaction -> PAID, each reserved product -> SOLD. The order stays
    PAID until the first item change rolls it up.
    """
    now = now or timezone.now()
    _move_order(order, "mark_paid", actor)

    for item in order.items.select_related("transaction"):
        txn = item.transaction
        before = (item.status, item.escrow_status)
        fire(item, "start_processing")
        fire(item, "hold_funds")
        fire(txn, "mark_paid")
        _save_pair(item, txn)
        _record_item_changes(item, before, actor)

    ProductLockManager.consume(order, now=now)
    return order


def _close_unpaid(order: Order, order_transition: str, escrow_transition: str, reason: str, actor: str) -> Order:
    for item in order.items.select_related("transaction").filter(status=OrderItemStatus.PENDING):
        txn = item.transaction
        before = (item.status, item.escrow_status)
        fire(item, "cancel")
        fire(item, escrow_transition)
        fire(txn, "cancel")
        _save_pair(item, txn)
        _record_item_changes(item, before, actor, note=reason)

    _move_order(order, order_transition, actor, note=reason, reason=reason)
    ProductLockManager.release(order, reason)
    return order


def expire_order(order: Order, reason: str, actor: str = "system") -> Order:
    """
    Close a PENDING order whose payment failed or was abandoned.

    Order -> EXPIRED, items and transactions -> CANCELLED, escrow
    -> CANCELLED, products back to ACTIVE.
    """
    return _close_unpaid(order, "expire", "cancel_escrow", reason, actor)


def cancel_unpaid_order(order: Order, reason: str, actor: str = "system") -> Order:
    """Buyer/ops cancellation before any money moved."""
    return _close_unpaid(order, "cancel", "cancel_escrow", reason, actor)


def abandon_order(order: Order, reason: str = "checkout abandoned", actor: str = "reconciliation") -> Order:
    """
    Reconciliation close-out of an abandoned checkout.

    Same as expire_order except escrow is closed as REFUNDED, as a
    bookkeeping entry only; no gateway refund is issued.
    """
    return _close_unpaid(order, "expire", "close_unpaid_escrow", reason, actor)


# =============================================================================
# Fulfilment
# =============================================================================


def ship_item(item: OrderItem, txn: Transaction, tracking_number: str, tracking_url: str = "", actor: str = "seller") -> None:
    before = (item.status, item.escrow_status)
    fire(item, "ship")
    fire(txn, "mark_shipped", tracking_number, tracking_url)
    _save_pair(item, txn)
    _record_item_changes(item, before, actor, note=tracking_number)


def deliver_item(item: OrderItem, txn: Transaction, evidence: list[str], actor: str = "buyer") -> None:
    before = (item.status, item.escrow_status)
    fire(item, "deliver")
    fire(txn, "mark_delivered", evidence)
    _save_pair(item, txn)
    _record_item_changes(item, before, actor)


# =============================================================================
# Escrow
# =============================================================================


def release_item_escrow(item: OrderItem, txn: Transaction, actor: str = "escrow", now: datetime | None = None) -> None:
    """HOLDING/TRANSFER_FAILED -> RELEASED and count the transfer attempt."""
    before = (item.status, item.escrow_status)
    fire(item, "release_funds")
    txn.released_at = now or timezone.now()
    txn.transfer_attempts += 1
    _save_pair(item, txn)
    _record_item_changes(item, before, actor, note=f"attempt {txn.transfer_attempts}")


def complete_transfer(item: OrderItem, txn: Transaction, transfer_ref: str, actor: str = "escrow") -> EscrowRelease:
    before = (item.status, item.escrow_status)
    fire(item, "mark_transferred")
    txn.transfer_ref = transfer_ref
    txn.last_transfer_error = ""
    txn.last_transfer_error_code = ""
    _save_pair(item, txn)
    _record_item_changes(item, before, actor, note=transfer_ref)
    return EscrowRelease.objects.create(
        transaction=txn,
        kind=EscrowReleaseKind.TRANSFER,
        amount=item.seller_amount,
        status=EscrowReleaseStatus.COMPLETED,
        gateway_ref=transfer_ref,
        completed_at=timezone.now(),
    )


def fail_transfer(
    item: OrderItem,
    txn: Transaction,
    error: str,
    error_code: str = "",
    escalate: bool = False,
    actor: str = "escrow",
) -> EscrowRelease:
    before = (item.status, item.escrow_status)
    fire(item, "mark_transfer_failed")
    txn.last_transfer_error = error
    txn.last_transfer_error_code = error_code
    if escalate:
        txn.escalated_at = timezone.now()
    _save_pair(item, txn)
    _record_item_changes(item, before, actor, note=error[:255])
    return EscrowRelease.objects.create(
        transaction=txn,
        kind=EscrowReleaseKind.TRANSFER,
        amount=item.seller_amount,
        status=EscrowReleaseStatus.FAILED,
        reason=error,
    )


def refund_item(
    item: OrderItem,
    txn: Transaction,
    refund_ref: str,
    reason: str = "",
    actor: str = "system",
) -> EscrowRelease:
    """
    Book a completed gateway refund for one item.

    Item and escrow -> REFUNDED, transaction -> REFUNDED, and the product
    goes back on sale if no newer checkout has claimed it. The caller
    rolls up the order afterwards.
    """
    before = (item.status, item.escrow_status)
    fire(item, "refund")
    fire(item, "refund_escrow")
    fire(txn, "refund", refund_ref)
    _save_pair(item, txn)
    _record_item_changes(item, before, actor, note=reason)

    ProductLockManager.restore_after_refund(item)

    return EscrowRelease.objects.create(
        transaction=txn,
        kind=EscrowReleaseKind.REFUND,
        amount=item.price,
        status=EscrowReleaseStatus.COMPLETED,
        reason=reason,
        gateway_ref=refund_ref,
        completed_at=timezone.now(),
    )


# =============================================================================
# Disputes
# =============================================================================


def set_dispute_status(order: Order, status: str, reason: str = "") -> int:
    """
    Flag every transaction of the order with a dispute status.

    OPEN blocks escrow release; CLOSED lifts the block.

    Returns:
        Number of transactions updated
    """
    updated = 0
    for txn in Transaction.objects.select_for_update().filter(order_item__order=order):
        if txn.dispute_status == status:
            continue
        txn.dispute_status = status
        if reason or status == DisputeStatus.OPEN:
            txn.dispute_reason = reason
        txn.save(update_fields=["dispute_status", "dispute_reason", "updated_at"])
        updated += 1
    return updated


__all__ = [
    "abandon_order",
    "cancel_unpaid_order",
    "complete_transfer",
    "deliver_item",
    "derive_order_status",
    "expire_order",
    "fail_transfer",
    "fire",
    "mark_order_paid",
    "record",
    "refund_item",
    "release_item_escrow",
    "rollup_order_status",
    "set_dispute_status",
    "ship_item",
]
