"""
Product lock manager.

All engine writes to Product.status go through this module. Each write
is a compare-and-set: a queryset update filtered on the status the
caller expects, so a lost race shows up as zero rows updated instead of
a silent overwrite.

Lock lifecycle:
    acquire()             ACTIVE -> PENDING_PAYMENT, reservation ACTIVE
    consume()             PENDING_PAYMENT -> SOLD, reservation CONSUMED
    release()             PENDING_PAYMENT -> ACTIVE, reservation RELEASED
    restore_after_refund  SOLD -> ACTIVE (only for the latest reservation)

Usage:
    with transaction.atomic():
        for product in sorted(products, key=lambda p: p.pk):
            ProductLockManager.acquire(product, order)
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from settlement.exceptions import ConcurrentCheckoutError
from settlement.models import Product, ProductReservation
from settlement.state_machines import ProductStatus, ReservationState

if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID

    from settlement.models import Order, OrderItem

logger = logging.getLogger(__name__)


class ProductLockManager:
    """
    Owns the PENDING_PAYMENT lock on products.

    All methods must run inside the caller's transaction.atomic() block
    so the product row and the reservation row change together.
    """

    @staticmethod
    def checkout_timeout() -> timedelta:
        return timedelta(minutes=settings.SETTLEMENT_CHECKOUT_TIMEOUT_MINUTES)

    @staticmethod
    def compare_and_set(
        product_id: UUID,
        expected: str,
        target: str,
        now: datetime | None = None,
        **extra,
    ) -> bool:
        """
        Move a product from expected to target status.

        Returns:
            True if this call made the move, False if the product was not
            in the expected status
        """
        now = now or timezone.now()
        updated = Product.objects.filter(pk=product_id, status=expected).update(
            status=target,
            updated_at=now,
            **extra,
        )
        return updated == 1

    # =========================================================================
    # Acquire
    # =========================================================================

    @classmethod
    def acquire(cls, product: Product, order: Order, now: datetime | None = None) -> ProductReservation:
        """
        Lock a product for an order's checkout.

        Raises:
            ConcurrentCheckoutError: Another checkout holds or just took
                the product
        """
        now = now or timezone.now()

        if not cls.compare_and_set(
            product.pk, ProductStatus.ACTIVE, ProductStatus.PENDING_PAYMENT, now=now
        ):
            raise ConcurrentCheckoutError(
                f"Product {product.pk} was reserved by another checkout",
                details={"product_id": str(product.pk)},
            )

        try:
            with transaction.atomic():
                reservation = ProductReservation.objects.create(
                    product=product,
                    order=order,
                    expires_at=now + cls.checkout_timeout(),
                )
        except IntegrityError as e:
            raise ConcurrentCheckoutError(
                f"Product {product.pk} already has an active reservation",
                details={"product_id": str(product.pk)},
            ) from e

        product.status = ProductStatus.PENDING_PAYMENT
        logger.debug(
            "Product locked",
            extra={"product_id": str(product.pk), "order_id": str(order.pk)},
        )
        return reservation

    # =========================================================================
    # Consume (payment confirmed)
    # =========================================================================

    @classmethod
    def consume(cls, order: Order, now: datetime | None = None) -> int:
        """
        Mark every product held by the order as SOLD.

        Returns:
            Number of products moved to SOLD
        """
        now = now or timezone.now()
        sold = 0
        reservations = ProductReservation.objects.select_for_update().filter(
            order=order, state=ReservationState.ACTIVE
        )
        for reservation in reservations:
            if cls.finalize_sale(reservation.product_id, now=now):
                sold += 1
            else:
                logger.error(
                    "Paid order held a product that was not pending payment",
                    extra={
                        "order_id": str(order.pk),
                        "product_id": str(reservation.product_id),
                    },
                )
            cls._close(reservation, ReservationState.CONSUMED, "paid", now)
        return sold

    @classmethod
    def finalize_sale(cls, product_id: UUID, now: datetime | None = None) -> bool:
        """PENDING_PAYMENT -> SOLD for a single product."""
        now = now or timezone.now()
        return cls.compare_and_set(
            product_id,
            ProductStatus.PENDING_PAYMENT,
            ProductStatus.SOLD,
            now=now,
            sold_at=now,
        )

    @classmethod
    def consume_for_product(cls, product_id: UUID, now: datetime | None = None) -> bool:
        """
        Reconciliation path: a paid transaction references a product that
        was left in PENDING_PAYMENT.
        """
        now = now or timezone.now()
        moved = cls.finalize_sale(product_id, now=now)
        for reservation in ProductReservation.objects.select_for_update().filter(
            product_id=product_id, state=ReservationState.ACTIVE
        ):
            cls._close(reservation, ReservationState.CONSUMED, "paid (reconciled)", now)
        return moved

    # =========================================================================
    # Release (checkout closed without payment)
    # =========================================================================

    @classmethod
    def release(cls, order: Order, reason: str, now: datetime | None = None) -> int:
        """
        Return every product held by the order to ACTIVE.

        Returns:
            Number of products moved back to ACTIVE
        """
        now = now or timezone.now()
        released = 0
        reservations = ProductReservation.objects.select_for_update().filter(
            order=order, state=ReservationState.ACTIVE
        )
        for reservation in reservations:
            if cls.compare_and_set(
                reservation.product_id,
                ProductStatus.PENDING_PAYMENT,
                ProductStatus.ACTIVE,
                now=now,
            ):
                released += 1
            cls._close(reservation, ReservationState.RELEASED, reason, now)
        return released

    @classmethod
    def release_product(cls, product_id: UUID, reason: str, now: datetime | None = None) -> bool:
        """
        Reconciliation path: no transaction references the product.

        Returns the product to ACTIVE and drops any dangling reservation.
        """
        now = now or timezone.now()
        moved = cls.compare_and_set(
            product_id, ProductStatus.PENDING_PAYMENT, ProductStatus.ACTIVE, now=now
        )
        for reservation in ProductReservation.objects.select_for_update().filter(
            product_id=product_id, state=ReservationState.ACTIVE
        ):
            cls._close(reservation, ReservationState.RELEASED, reason, now)
        return moved

    # =========================================================================
    # Restore (refund after sale)
    # =========================================================================

    @classmethod
    def restore_after_refund(cls, order_item: OrderItem, now: datetime | None = None) -> bool:
        """
        Put a refunded product back on sale.

        Only done when this order's reservation is still the newest one
        for the product. If the product was relisted and sold again in
        the meantime, it is left alone.
        """
        latest = (
            ProductReservation.objects.filter(product_id=order_item.product_id)
            .order_by("-created_at")
            .first()
        )
        if latest is not None and latest.order_id != order_item.order_id:
            logger.info(
                "Skipping product restore; superseded by a newer checkout",
                extra={
                    "product_id": str(order_item.product_id),
                    "order_id": str(order_item.order_id),
                },
            )
            return False

        return cls.compare_and_set(
            order_item.product_id,
            ProductStatus.SOLD,
            ProductStatus.ACTIVE,
            now=now,
            sold_at=None,
        )

    @staticmethod
    def _close(reservation: ProductReservation, state: str, reason: str, now: datetime) -> None:
        reservation.state = state
        reservation.released_at = now
        reservation.release_reason = reason[:255]
        reservation.save(update_fields=["state", "released_at", "release_reason", "updated_at"])


__all__ = ["ProductLockManager"]
