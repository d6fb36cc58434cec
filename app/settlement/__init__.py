"""
Settlement app: buyer-to-seller money movement through platform escrow.

This app handles:
- Checkout: order creation with exclusive product reservations
- Payment intents and gateway confirmation (webhook and direct)
- Per-seller platform fee split and escrow hold
- Escrow release to sellers after the buyer-protection window
- Cancellation and refunds
- Periodic reconciliation of stuck checkouts and transfers

Usage:
    from settlement.services import OrderLineRequest, OrderService, PaymentService

    result = OrderService.create_order(buyer, [OrderLineRequest(product_id)], address_id)
    intent = PaymentService.create_payment_intent(result.data.order.id, buyer=buyer)
"""
