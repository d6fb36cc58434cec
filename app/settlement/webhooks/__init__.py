"""
Webhook handling for payment gateway events.

Webhooks are verified, stored idempotently, and processed asynchronously
via Celery tasks.
"""

from settlement.webhooks.handlers import dispatch_webhook, register_handler
from settlement.webhooks.views import payment_webhook

__all__ = [
    "dispatch_webhook",
    "payment_webhook",
    "register_handler",
]
