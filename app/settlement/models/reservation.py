"""
ProductReservation: the checkout lease on a product.

The reservation row is the authority for which order holds a product and
until when. Product.status only mirrors it for catalog visibility. A
partial unique constraint allows at most one ACTIVE reservation per
product, so two checkouts that both slip past the status check still
cannot both commit.
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from settlement.state_machines import ReservationState


class ProductReservation(UUIDPrimaryKeyMixin, BaseModel):
    """
    Lease held by an order on a product during checkout.

    State Flow:
        ACTIVE -> CONSUMED (payment confirmed, product sold)
        ACTIVE -> RELEASED (cancelled, expired or abandoned)

    Fields:
        expires_at: When the checkout lease runs out
        released_at: When the lease ended (consumed or released)
        release_reason: Why the lease was released
    """

    product = models.ForeignKey(
        "settlement.Product",
        on_delete=models.PROTECT,
        related_name="reservations",
    )

    order = models.ForeignKey(
        "settlement.Order",
        on_delete=models.CASCADE,
        related_name="reservations",
    )

    state = models.CharField(
        max_length=10,
        choices=ReservationState.choices,
        default=ReservationState.ACTIVE,
        db_index=True,
    )

    expires_at = models.DateTimeField(db_index=True)

    released_at = models.DateTimeField(null=True, blank=True)

    release_reason = models.CharField(max_length=255, blank=True, default="")

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["product"],
                condition=models.Q(state=ReservationState.ACTIVE),
                name="settlement_one_active_reservation_per_product",
            ),
        ]

    def __str__(self) -> str:
        return f"ProductReservation({self.product_id}, {self.state})"

    @property
    def is_expired(self) -> bool:
        return self.state == ReservationState.ACTIVE and self.expires_at <= timezone.now()
