"""
State machine enums for the settlement app.

The transition primitives that move orders, items, transactions and
products between these states live in settlement.state_machines.transitions
(imported directly, since it depends on the models).
"""

from settlement.state_machines.states import (
    DisputeStatus,
    EscrowReleaseKind,
    EscrowReleaseStatus,
    EscrowStatus,
    OfferStatus,
    OrderItemStatus,
    OrderStatus,
    ProductStatus,
    ReconciliationRunStatus,
    ReservationState,
    TransactionStatus,
    TrustTier,
    WebhookEventStatus,
)

__all__ = [
    "DisputeStatus",
    "EscrowReleaseKind",
    "EscrowReleaseStatus",
    "EscrowStatus",
    "OfferStatus",
    "OrderItemStatus",
    "OrderStatus",
    "ProductStatus",
    "ReconciliationRunStatus",
    "ReservationState",
    "TransactionStatus",
    "TrustTier",
    "WebhookEventStatus",
]
