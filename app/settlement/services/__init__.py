"""
Settlement services.

This module provides:
- OrderService: Checkout, order summaries and seller shipping updates
- PaymentService: Payment intents and payment outcome application
- EscrowService: Delivery confirmation, escrow release, refunds, cancellation
- FeeTierService: Platform fee lookup by seller trust tier and price band
- ReconciliationService: Repairs stale product locks and stuck transfers

Usage:
    from settlement.services import OrderLineRequest, OrderService

    result = OrderService.create_order(
        buyer=user,
        items=[OrderLineRequest(product_id=product.id)],
        shipping_address_id=address.id,
    )

    from settlement.services import PaymentService

    result = PaymentService.create_payment_intent(order.id, buyer=user)

    from settlement.services import EscrowService

    result = EscrowService.release_escrow(order_item_id)
"""

from settlement.services.escrow_service import (
    CancelOutcome,
    EscrowService,
    ItemCancelOutcome,
    RefundOutcome,
    ReleaseOutcome,
)
from settlement.services.fee_service import FeeTierService
from settlement.services.order_service import (
    ItemSummary,
    OrderCreationResult,
    OrderLineRequest,
    OrderService,
    OrderSummary,
)
from settlement.services.payment_service import (
    PaymentIntentData,
    PaymentOutcome,
    PaymentService,
)
from settlement.services.reconciliation_service import (
    ReconciliationReport,
    ReconciliationService,
)

__all__ = [
    # Orders
    "OrderService",
    "OrderLineRequest",
    "OrderCreationResult",
    "OrderSummary",
    "ItemSummary",
    # Payments
    "PaymentService",
    "PaymentIntentData",
    "PaymentOutcome",
    # Escrow
    "EscrowService",
    "ReleaseOutcome",
    "RefundOutcome",
    "CancelOutcome",
    "ItemCancelOutcome",
    # Fees
    "FeeTierService",
    # Reconciliation
    "ReconciliationService",
    "ReconciliationReport",
]
