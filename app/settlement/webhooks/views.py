"""
Webhook endpoint for the payment gateway.

The view:
1. Verifies the webhook signature (fail closed: nothing is stored otherwise)
2. Creates/retrieves the WebhookEvent record (idempotent)
3. Queues the event for async processing
4. Returns immediately

Usage:
    # In urls.py
    from settlement.webhooks.views import payment_webhook

    urlpatterns = [
        path("webhooks/payments/", payment_webhook, name="payment_webhook"),
    ]
"""

from __future__ import annotations

import json
import logging

from django.http import HttpRequest, HttpResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from settlement.adapters import get_payment_gateway, get_webhook_secret
from settlement.exceptions import InvalidSignatureError
from settlement.models import WebhookEvent
from settlement.state_machines import WebhookEventStatus

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Stripe-Signature"


@csrf_exempt
@require_POST
def payment_webhook(request: HttpRequest) -> HttpResponse:
    """
    Receive and queue gateway webhook events.

    Returns:
        HttpResponse with status:
        - 200: Event accepted (new or duplicate)
        - 400: Missing/invalid signature or malformed payload
    """
    payload = request.body
    signature = request.headers.get(SIGNATURE_HEADER, "")

    if not signature:
        logger.warning(f"Webhook received without {SIGNATURE_HEADER} header")
        return HttpResponse("Missing signature", status=400)

    # Step 1: Verify signature
    if not get_payment_gateway().verify_signature(payload, signature, get_webhook_secret()):
        error = InvalidSignatureError("Webhook signature verification failed")
        logger.warning(error.message, extra={"error_code": error.error_code})
        return HttpResponse("Invalid signature", status=400)

    try:
        event_data = json.loads(payload)
    except ValueError:
        logger.warning("Webhook payload is not valid JSON")
        return HttpResponse("Invalid payload", status=400)

    gateway_event_id = event_data.get("id") if isinstance(event_data, dict) else None
    event_type = event_data.get("type") if isinstance(event_data, dict) else None

    if not gateway_event_id or not event_type:
        logger.warning("Webhook missing required fields")
        return HttpResponse("Invalid event", status=400)

    logger.info(
        f"Received webhook: {event_type}",
        extra={"gateway_event_id": gateway_event_id, "event_type": event_type},
    )

    # Step 2: Create/get WebhookEvent (idempotent)
    webhook_event, created = WebhookEvent.objects.get_or_create(
        gateway_event_id=gateway_event_id,
        defaults={
            "event_type": event_type,
            "payload": event_data,
            "status": WebhookEventStatus.PENDING,
        },
    )

    if not created:
        if webhook_event.status == WebhookEventStatus.PROCESSED:
            logger.info(
                "Webhook already processed, returning success",
                extra={"gateway_event_id": gateway_event_id},
            )
            return HttpResponse("Already processed", status=200)

        logger.info(
            f"Webhook already exists with status: {webhook_event.status}",
            extra={"gateway_event_id": gateway_event_id},
        )

    # Step 3: Queue for async processing
    from settlement.tasks import process_webhook_event

    process_webhook_event.delay(str(webhook_event.pk))
    logger.info(
        "Webhook queued for processing",
        extra={"gateway_event_id": gateway_event_id, "webhook_event_id": str(webhook_event.pk)},
    )

    return HttpResponse("Accepted", status=200)
