"""
Celery tasks for settlement processing.

This module provides async tasks for:
- Processing gateway webhook events
- Retrying failed webhook events
- Resetting webhooks stuck in PROCESSING

Escrow and reconciliation tasks live in settlement.workers and are
re-exported here so Celery autodiscover finds them.

Usage:
    from settlement.tasks import process_webhook_event

    process_webhook_event.delay(str(webhook_event.id))
"""

from __future__ import annotations

import logging
from datetime import timedelta
from uuid import UUID

from celery import shared_task
from django.utils import timezone

from settlement.models import WebhookEvent
from settlement.models.webhook_event import MAX_WEBHOOK_RETRIES
from settlement.state_machines import WebhookEventStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

STUCK_PROCESSING_THRESHOLD_MINUTES = 30

RETRY_BATCH_SIZE = 100


# =============================================================================
# Webhook Processing Tasks
# =============================================================================


@shared_task(
    bind=True,
    name="settlement.process_webhook_event",
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": MAX_WEBHOOK_RETRIES},
    acks_late=True,
)
def process_webhook_event(self, webhook_event_id: str) -> dict:
    """
    Process a stored webhook event.

    1. Loads the WebhookEvent by ID
    2. Skips it if already processed
    3. Marks it PROCESSING
    4. Dispatches to its handler (handlers open their own transactions
       and never call the gateway inside one)
    5. Marks it PROCESSED or FAILED

    Returns:
        Dict with processing result status

    Raises:
        Exception: Re-raised to trigger Celery retry
    """
    from settlement.webhooks.handlers import dispatch_webhook

    webhook_event_id = str(webhook_event_id)

    try:
        webhook_event = WebhookEvent.objects.get(pk=UUID(webhook_event_id))
    except (ValueError, WebhookEvent.DoesNotExist):
        logger.error("WebhookEvent not found", extra={"webhook_event_id": webhook_event_id})
        return {"status": "not_found", "webhook_event_id": webhook_event_id}

    if webhook_event.is_processed:
        logger.info(
            "WebhookEvent already processed, skipping",
            extra={
                "webhook_event_id": webhook_event_id,
                "gateway_event_id": webhook_event.gateway_event_id,
            },
        )
        return {"status": "already_processed", "webhook_event_id": webhook_event_id}

    webhook_event.mark_processing()
    webhook_event.save()

    logger.info(
        f"Dispatching webhook: {webhook_event.event_type}",
        extra={
            "webhook_event_id": webhook_event_id,
            "gateway_event_id": webhook_event.gateway_event_id,
            "retry_count": webhook_event.retry_count,
        },
    )

    try:
        result = dispatch_webhook(webhook_event)
    except Exception as e:
        error_msg = f"{type(e).__name__}: {e}"
        webhook_event.mark_failed(error_msg)
        webhook_event.save()
        logger.exception(
            "Webhook processing failed with exception",
            extra={
                "webhook_event_id": webhook_event_id,
                "gateway_event_id": webhook_event.gateway_event_id,
            },
        )
        raise

    if result.success:
        webhook_event.mark_processed()
        webhook_event.save()
        logger.info(
            "Webhook processed successfully",
            extra={
                "webhook_event_id": webhook_event_id,
                "gateway_event_id": webhook_event.gateway_event_id,
            },
        )
        return {
            "status": "processed",
            "webhook_event_id": webhook_event_id,
            "gateway_event_id": webhook_event.gateway_event_id,
        }

    error_msg = result.error or "Handler returned failure"
    webhook_event.mark_failed(error_msg)
    webhook_event.save()
    logger.warning(
        f"Webhook handler failed: {error_msg}",
        extra={
            "webhook_event_id": webhook_event_id,
            "gateway_event_id": webhook_event.gateway_event_id,
            "error_code": result.error_code,
        },
    )
    return {
        "status": "handler_failed",
        "webhook_event_id": webhook_event_id,
        "error": error_msg,
        "error_code": result.error_code,
    }


@shared_task(name="settlement.retry_failed_webhooks")
def retry_failed_webhooks() -> dict:
    """
    Re-queue FAILED webhooks that are below the retry cap.

    Scheduled every 5 minutes.
    """
    failed_webhooks = WebhookEvent.objects.filter(
        status=WebhookEventStatus.FAILED,
        retry_count__lt=MAX_WEBHOOK_RETRIES,
    ).order_by("created_at")[:RETRY_BATCH_SIZE]

    queued_count = 0
    for webhook in failed_webhooks:
        process_webhook_event.delay(str(webhook.pk))
        queued_count += 1
        logger.info(
            "Queued failed webhook for retry",
            extra={
                "webhook_event_id": str(webhook.pk),
                "gateway_event_id": webhook.gateway_event_id,
                "retry_count": webhook.retry_count,
            },
        )

    logger.info(
        f"Queued {queued_count} failed webhooks for retry",
        extra={"queued_count": queued_count},
    )
    return {"queued_count": queued_count}


@shared_task(name="settlement.cleanup_stuck_webhooks")
def cleanup_stuck_webhooks() -> dict:
    """
    Reset webhooks stuck in PROCESSING to FAILED so they are retried.

    Covers workers that crashed mid-processing.
    """
    threshold = timezone.now() - timedelta(minutes=STUCK_PROCESSING_THRESHOLD_MINUTES)

    stuck_webhooks = WebhookEvent.objects.filter(
        status=WebhookEventStatus.PROCESSING,
        updated_at__lt=threshold,
    )

    reset_count = 0
    for webhook in stuck_webhooks:
        stuck_since = webhook.updated_at
        webhook.mark_failed("Processing timed out - reset for retry")
        webhook.save()
        reset_count += 1
        logger.warning(
            "Reset stuck webhook",
            extra={
                "webhook_event_id": str(webhook.pk),
                "gateway_event_id": webhook.gateway_event_id,
                "stuck_since": stuck_since.isoformat(),
            },
        )

    if reset_count > 0:
        logger.info(f"Reset {reset_count} stuck webhooks", extra={"reset_count": reset_count})

    return {"reset_count": reset_count}


# =============================================================================
# Re-exported Worker Tasks
# =============================================================================

from settlement.workers import (  # noqa: E402, F401
    process_escrow_releases,
    release_single_escrow,
    retry_failed_transfers,
    run_reconciliation_sweep,
)
