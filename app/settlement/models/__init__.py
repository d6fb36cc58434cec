"""
Settlement domain models.

- Product, Offer, ShippingAddress: Minimal catalog-side rows used by checkout
- SellerAccount, FeeTier: Payout destinations and the platform fee schedule
- Order, OrderItem: Buyer checkout and per-seller lines with escrow state
- Transaction, EscrowRelease: Settlement records and the escrow ledger
- ProductReservation: Checkout lease on a product
- StatusHistory: Append-only audit of state changes
- WebhookEvent: Gateway notifications for idempotent processing
- ReconciliationRun: Reconciliation sweep audit
"""

from settlement.models.history import StatusHistory
from settlement.models.order import Order, OrderItem
from settlement.models.product import Offer, Product, ShippingAddress
from settlement.models.reconciliation import ReconciliationRun
from settlement.models.reservation import ProductReservation
from settlement.models.seller import FeeTier, SellerAccount
from settlement.models.transaction import EscrowRelease, Transaction
from settlement.models.webhook_event import WebhookEvent

__all__ = [
    "EscrowRelease",
    "FeeTier",
    "Offer",
    "Order",
    "OrderItem",
    "Product",
    "ProductReservation",
    "ReconciliationRun",
    "SellerAccount",
    "ShippingAddress",
    "StatusHistory",
    "Transaction",
    "WebhookEvent",
]
