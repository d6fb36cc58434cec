"""
Status enums for settlement models.

Every status field is a closed Django TextChoices enum. Fields that are
driven by django-fsm transitions reject any value outside their enum
and any move that is not declared as a transition.

State Machines Overview:

Order:
    pending → paid → processing → shipped → delivered
    paid → shipped | delivered
    pending → cancelled | expired
    paid/processing/shipped/delivered → refunded
    paid/processing → cancelled

OrderItem:
    pending → processing → shipped → delivered
    pending/processing → cancelled
    processing/shipped/delivered → refunded

OrderItem escrow:
    pending → holding → released → transferred
    released → transfer_failed → released (retry)
    pending → cancelled                       (cancel before payment)
    pending → refunded                        (abandoned checkout close-out)
    holding/transfer_failed → refunded        (refund after payment)

Transaction:
    pending → paid → shipped → delivered
    pending → cancelled
    paid/shipped/delivered → refunded

Product (catalog row, written only through ProductLockManager):
    active → pending_payment → sold
    pending_payment → active
    sold → active (refund restores availability)
"""

from django.db import models


class OrderStatus(models.TextChoices):
    """
    States for one buyer checkout.

    Terminal states: CANCELLED, REFUNDED, EXPIRED
    """

    PENDING = "pending", "Pending"
    PAID = "paid", "Paid"
    PROCESSING = "processing", "Processing"
    SHIPPED = "shipped", "Shipped"
    DELIVERED = "delivered", "Delivered"
    CANCELLED = "cancelled", "Cancelled"
    REFUNDED = "refunded", "Refunded"
    EXPIRED = "expired", "Expired"


class OrderItemStatus(models.TextChoices):
    """Fulfilment states for one seller's line within an order."""

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    SHIPPED = "shipped", "Shipped"
    DELIVERED = "delivered", "Delivered"
    CANCELLED = "cancelled", "Cancelled"
    REFUNDED = "refunded", "Refunded"


class EscrowStatus(models.TextChoices):
    """
    Where the money for one order item currently sits.

    PENDING means the item was created for escrow but no funds are held
    yet (payment not confirmed).
    """

    PENDING = "pending", "Pending Payment"
    HOLDING = "holding", "Holding"
    RELEASED = "released", "Released"
    TRANSFERRED = "transferred", "Transferred"
    REFUNDED = "refunded", "Refunded"
    CANCELLED = "cancelled", "Cancelled"
    TRANSFER_FAILED = "transfer_failed", "Transfer Failed"


class TransactionStatus(models.TextChoices):
    """Settlement record states, paired 1:1 with an order item."""

    PENDING = "pending", "Pending"
    PAID = "paid", "Paid"
    SHIPPED = "shipped", "Shipped"
    DELIVERED = "delivered", "Delivered"
    CANCELLED = "cancelled", "Cancelled"
    REFUNDED = "refunded", "Refunded"


class DisputeStatus(models.TextChoices):
    """Chargeback/dispute flag; an OPEN dispute blocks escrow release."""

    NONE = "none", "None"
    OPEN = "open", "Open"
    CLOSED = "closed", "Closed"


class ProductStatus(models.TextChoices):
    """Catalog status of a sellable item."""

    ACTIVE = "active", "Active"
    INACTIVE = "inactive", "Inactive"
    PENDING_PAYMENT = "pending_payment", "Pending Payment"
    SOLD = "sold", "Sold"


class ReservationState(models.TextChoices):
    """
    Lease states for a checkout reservation.

    ACTIVE: lock held by a checkout
    CONSUMED: checkout paid, product sold
    RELEASED: checkout abandoned, cancelled or expired
    """

    ACTIVE = "active", "Active"
    CONSUMED = "consumed", "Consumed"
    RELEASED = "released", "Released"


class OfferStatus(models.TextChoices):
    """Negotiated price offer states."""

    PENDING = "pending", "Pending"
    ACCEPTED = "accepted", "Accepted"
    REJECTED = "rejected", "Rejected"
    EXPIRED = "expired", "Expired"


class TrustTier(models.TextChoices):
    """Seller trust tiers; the fee tier table is keyed by these."""

    NEW_SELLER = "new_seller", "New Seller"
    RISING_SELLER = "rising_seller", "Rising Seller"
    PRO_SELLER = "pro_seller", "Pro Seller"
    ELITE_SELLER = "elite_seller", "Elite Seller"


class EscrowReleaseKind(models.TextChoices):
    """Direction of money leaving escrow."""

    TRANSFER = "transfer", "Transfer to Seller"
    REFUND = "refund", "Refund to Buyer"


class EscrowReleaseStatus(models.TextChoices):
    """Outcome of an escrow release attempt."""

    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"


class WebhookEventStatus(models.TextChoices):
    """
    Processing states for gateway webhook events.

    Flow:
        pending → processing → processed
        pending → processing → failed (retry later)
    """

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    PROCESSED = "processed", "Processed"
    FAILED = "failed", "Failed"


class ReconciliationRunStatus(models.TextChoices):
    """States for a reconciliation sweep run."""

    RUNNING = "running", "Running"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
