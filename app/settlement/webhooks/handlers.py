"""
Webhook event handlers for payment gateway events.

Handlers are registered by event type and dispatched from
settlement.tasks.process_webhook_event. Each returns a ServiceResult;
a failure marks the WebhookEvent FAILED so retry_failed_webhooks picks
it up again.

Usage:
    from settlement.webhooks.handlers import dispatch_webhook, register_handler

    @register_handler("custom.event")
    def handle_custom_event(webhook_event: WebhookEvent) -> ServiceResult:
        ...

    result = dispatch_webhook(webhook_event)
"""

from __future__ import annotations

import logging
from typing import Callable

from django.db import transaction

from core.services import ServiceResult

from settlement.models import Order, WebhookEvent
from settlement.services import PaymentService
from settlement.state_machines import DisputeStatus
from settlement.state_machines import transitions

logger = logging.getLogger(__name__)


# =============================================================================
# Handler Registry
# =============================================================================


WEBHOOK_HANDLERS: dict[str, Callable[[WebhookEvent], ServiceResult]] = {}


def register_handler(event_type: str) -> Callable:
    """
    Decorator to register a webhook event handler.

    Usage:
        @register_handler("payment_intent.succeeded")
        def handle_payment_succeeded(webhook_event: WebhookEvent) -> ServiceResult:
            ...
    """

    def decorator(func: Callable[[WebhookEvent], ServiceResult]) -> Callable:
        WEBHOOK_HANDLERS[event_type] = func
        logger.debug(f"Registered webhook handler for {event_type}")
        return func

    return decorator


def dispatch_webhook(webhook_event: WebhookEvent) -> ServiceResult:
    """
    Dispatch a webhook event to its handler.

    Event types without a handler succeed as no-ops so the gateway stops
    redelivering them.
    """
    handler = WEBHOOK_HANDLERS.get(webhook_event.event_type)

    if not handler:
        logger.info(
            f"No handler registered for event type: {webhook_event.event_type}",
            extra={"gateway_event_id": webhook_event.gateway_event_id},
        )
        return ServiceResult.success(None)

    logger.info(
        f"Dispatching {webhook_event.event_type} to handler",
        extra={"gateway_event_id": webhook_event.gateway_event_id},
    )
    return handler(webhook_event)


def _missing_object_id(webhook_event: WebhookEvent) -> ServiceResult:
    logger.error(
        f"{webhook_event.event_type}: Could not extract object id",
        extra={"gateway_event_id": webhook_event.gateway_event_id},
    )
    return ServiceResult.failure(
        "Could not extract object id from webhook",
        error_code="INVALID_WEBHOOK_PAYLOAD",
    )


# =============================================================================
# Payment Intent Handlers
# =============================================================================


@register_handler("payment_intent.succeeded")
def handle_payment_intent_succeeded(webhook_event: WebhookEvent) -> ServiceResult:
    """
    Mark the order paid.

    Shares apply_payment_succeeded with direct confirmation, so a webhook
    arriving after the client already confirmed changes nothing.
    """
    intent_id = webhook_event.get_object_id()
    if not intent_id:
        return _missing_object_id(webhook_event)

    logger.info(
        "Processing payment_intent.succeeded",
        extra={"gateway_event_id": webhook_event.gateway_event_id, "intent_id": intent_id},
    )
    return PaymentService.apply_payment_succeeded(intent_id, source="webhook")


@register_handler("payment_intent.payment_failed")
def handle_payment_intent_failed(webhook_event: WebhookEvent) -> ServiceResult:
    intent_id = webhook_event.get_object_id()
    if not intent_id:
        return _missing_object_id(webhook_event)

    last_error = webhook_event.data_object.get("last_payment_error") or {}
    reason = last_error.get("message") or "Payment failed"

    logger.info(
        "Processing payment_intent.payment_failed",
        extra={
            "gateway_event_id": webhook_event.gateway_event_id,
            "intent_id": intent_id,
            "reason": reason,
        },
    )
    return PaymentService.apply_payment_failed(intent_id, reason=reason, source="webhook")


@register_handler("payment_intent.canceled")
def handle_payment_intent_canceled(webhook_event: WebhookEvent) -> ServiceResult:
    """Treated as a failed payment: the order expires and products go back on sale."""
    intent_id = webhook_event.get_object_id()
    if not intent_id:
        return _missing_object_id(webhook_event)

    reason = webhook_event.data_object.get("cancellation_reason") or "Payment canceled"
    return PaymentService.apply_payment_failed(intent_id, reason=reason, source="webhook")


# =============================================================================
# Dispute Handlers
# =============================================================================


def _apply_dispute_status(webhook_event: WebhookEvent, status: str) -> ServiceResult:
    dispute = webhook_event.data_object
    intent_id = dispute.get("payment_intent")
    if not intent_id:
        logger.error(
            f"{webhook_event.event_type}: dispute has no payment_intent",
            extra={"gateway_event_id": webhook_event.gateway_event_id},
        )
        return ServiceResult.failure(
            "Could not extract payment_intent from dispute",
            error_code="INVALID_WEBHOOK_PAYLOAD",
        )

    order = Order.objects.filter(payment_intent_ref=intent_id).first()
    if order is None:
        logger.warning(
            "Dispute for unknown payment intent",
            extra={"gateway_event_id": webhook_event.gateway_event_id, "intent_id": intent_id},
        )
        return ServiceResult.failure(
            f"No order for payment intent {intent_id}", "ORDER_NOT_FOUND"
        )

    with transaction.atomic():
        updated = transitions.set_dispute_status(order, status, reason=dispute.get("reason") or "")
    logger.warning(
        f"Dispute {status} on order",
        extra={
            "order_id": str(order.pk),
            "dispute_id": dispute.get("id"),
            "transactions_updated": updated,
        },
    )
    return ServiceResult.success(updated)


@register_handler("charge.dispute.created")
def handle_dispute_created(webhook_event: WebhookEvent) -> ServiceResult:
    """Block escrow release for every item of the disputed order."""
    return _apply_dispute_status(webhook_event, DisputeStatus.OPEN)


@register_handler("charge.dispute.closed")
def handle_dispute_closed(webhook_event: WebhookEvent) -> ServiceResult:
    return _apply_dispute_status(webhook_event, DisputeStatus.CLOSED)
