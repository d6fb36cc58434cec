"""
Catalog-side rows the settlement engine reads or locks.

Product, Offer and ShippingAddress belong to the wider marketplace; only
the fields the checkout needs are modelled here. Product.status is the
contended lock target and is only written by
settlement.reservations.ProductLockManager through conditional updates.
"""

from __future__ import annotations

from django.conf import settings
from django.db import models

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from settlement.state_machines import OfferStatus, ProductStatus


class Product(UUIDPrimaryKeyMixin, BaseModel):
    """
    A single sellable item listed by a seller.

    Status Flow (engine-owned moves only):
        ACTIVE -> PENDING_PAYMENT -> SOLD
        PENDING_PAYMENT -> ACTIVE (checkout abandoned/cancelled)
        SOLD -> ACTIVE (refund restores availability)

    Note:
        status is a plain CharField, not an FSMField, because every
        engine write is a compare-and-set queryset update guarded by the
        expected current status. Saving a stale instance would undo a
        concurrent checkout.
    """

    seller = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="products",
        help_text="User selling this item",
    )

    title = models.CharField(max_length=255)

    price = models.PositiveBigIntegerField(
        help_text="Listing price in the smallest currency unit",
    )

    currency = models.CharField(
        max_length=3,
        default="vnd",
        help_text="ISO 4217 currency code (lowercase)",
    )

    status = models.CharField(
        max_length=20,
        choices=ProductStatus.choices,
        default=ProductStatus.ACTIVE,
        db_index=True,
    )

    sold_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "updated_at"], name="stl_product_status_upd_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(price__gt=0),
                name="settlement_product_price_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"Product({self.id}, {self.title!r}, {self.status})"


class Offer(UUIDPrimaryKeyMixin, BaseModel):
    """
    A negotiated price a buyer proposed for a product.

    An ACCEPTED offer replaces the listing price for that buyer at checkout.
    """

    product = models.ForeignKey(
        Product,
        on_delete=models.CASCADE,
        related_name="offers",
    )

    buyer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="offers",
    )

    amount = models.PositiveBigIntegerField(
        help_text="Offered price in the smallest currency unit",
    )

    status = models.CharField(
        max_length=20,
        choices=OfferStatus.choices,
        default=OfferStatus.PENDING,
    )

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"Offer({self.id}, {self.amount}, {self.status})"


class ShippingAddress(UUIDPrimaryKeyMixin, BaseModel):
    """Delivery address owned by a buyer."""

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="shipping_addresses",
    )

    recipient_name = models.CharField(max_length=255)
    phone = models.CharField(max_length=32, blank=True, default="")
    line1 = models.CharField(max_length=255)
    city = models.CharField(max_length=128)
    country_code = models.CharField(max_length=2, default="VN")

    class Meta:
        ordering = ["-created_at"]
        verbose_name_plural = "Shipping addresses"

    def __str__(self) -> str:
        return f"{self.recipient_name}, {self.line1}, {self.city}"
