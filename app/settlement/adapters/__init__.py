"""
Payment gateway adapters.

- PaymentGateway: Provider-neutral contract used by the services
- StripeGateway: Stripe SDK implementation
- get_payment_gateway: Resolve the configured gateway
"""

from settlement.adapters.base import (
    INTENT_CANCELED,
    INTENT_PROCESSING,
    INTENT_REQUIRES_ACTION,
    INTENT_REQUIRES_CONFIRMATION,
    INTENT_REQUIRES_PAYMENT_METHOD,
    INTENT_SUCCEEDED,
    IntentResult,
    PaymentGateway,
    get_payment_gateway,
    get_webhook_secret,
)
from settlement.adapters.stripe_adapter import (
    IdempotencyKeyGenerator,
    StripeGateway,
)

__all__ = [
    "INTENT_CANCELED",
    "INTENT_PROCESSING",
    "INTENT_REQUIRES_ACTION",
    "INTENT_REQUIRES_CONFIRMATION",
    "INTENT_REQUIRES_PAYMENT_METHOD",
    "INTENT_SUCCEEDED",
    "IdempotencyKeyGenerator",
    "IntentResult",
    "PaymentGateway",
    "StripeGateway",
    "get_payment_gateway",
    "get_webhook_secret",
]
