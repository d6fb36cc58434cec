"""
Escrow release worker.

Tasks:
- process_escrow_releases: Periodic scan for items whose buyer-protection
  window has elapsed; queues one release task per item
- release_single_escrow: Transfers one item's seller share, retrying
  transient gateway errors with backoff
- retry_failed_transfers: Periodic re-queue of TRANSFER_FAILED items that
  are not escalated

Usage:
    from settlement.workers import release_single_escrow

    release_single_escrow.delay(str(order_item.id))
"""

from __future__ import annotations

import logging
from uuid import UUID

from celery import shared_task
from django.conf import settings

from settlement.exceptions import TRANSIENT_GATEWAY_ERRORS

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Maximum items to queue per scan
BATCH_SIZE = 100


# =============================================================================
# Periodic Task: Scan for Releasable Escrow
# =============================================================================


@shared_task(bind=True, name="settlement.process_escrow_releases")
def process_escrow_releases(self) -> dict:
    """
    Queue a release for every item past its buyer-protection window.

    Idempotent: release_single_escrow re-checks state under a lock, so an
    item queued twice is transferred once.
    """
    from settlement.services import EscrowService

    logger.info("Starting escrow release scan")

    item_ids = list(EscrowService.find_releasable_items().values_list("pk", flat=True)[:BATCH_SIZE])

    queued_count = 0
    for item_id in item_ids:
        release_single_escrow.delay(str(item_id))
        queued_count += 1
        logger.info("Queued escrow release", extra={"order_item_id": str(item_id)})

    logger.info(
        f"Escrow release scan complete: queued {queued_count} items",
        extra={"queued_count": queued_count},
    )
    return {"queued_count": queued_count}


# =============================================================================
# Individual Release Task
# =============================================================================


@shared_task(
    bind=True,
    name="settlement.release_single_escrow",
    autoretry_for=TRANSIENT_GATEWAY_ERRORS,
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": settings.SETTLEMENT_MAX_TRANSFER_ATTEMPTS},
    acks_late=True,
)
def release_single_escrow(self, order_item_id: str) -> dict:
    """
    Transfer one item's escrow to its seller.

    Returns:
        Dict with:
        - status: "transferred", "already_transferred", "not_found",
          "not_releasable", "lock_failed", "escalated" or "failed"
        - order_item_id: The item processed
        - transfer_ref: Gateway transfer id if successful
        - error / error_code: If not transferred

    Raises:
        GatewayRateLimitError, GatewayUnavailableError, GatewayTimeoutError:
            Re-raised to trigger Celery retry
    """
    from settlement.services import EscrowService

    try:
        item_uuid = UUID(str(order_item_id))
    except ValueError:
        logger.error(f"Invalid order_item_id format: {order_item_id}")
        return {"status": "not_found", "order_item_id": order_item_id, "error": "Invalid UUID format"}

    logger.info(
        "Releasing escrow",
        extra={"order_item_id": order_item_id, "celery_retries": self.request.retries},
    )

    result = EscrowService.release_escrow(item_uuid)

    if result.success:
        outcome = result.data
        return {
            "status": outcome.action,
            "order_item_id": order_item_id,
            "transfer_ref": outcome.transfer_ref,
            "attempts": outcome.attempts,
        }

    status = {
        "ORDER_NOT_FOUND": "not_found",
        "NOT_RELEASABLE": "not_releasable",
        "LOCK_ACQUISITION_FAILED": "lock_failed",
        "TRANSFER_ESCALATED": "escalated",
    }.get(result.error_code, "failed")

    logger.info(
        f"Escrow release ended without transfer: {status}",
        extra={"order_item_id": order_item_id, "error_code": result.error_code, "error": result.error},
    )
    return {
        "status": status,
        "order_item_id": order_item_id,
        "error": result.error,
        "error_code": result.error_code,
    }


# =============================================================================
# Periodic Task: Retry Failed Transfers
# =============================================================================


@shared_task(bind=True, name="settlement.retry_failed_transfers")
def retry_failed_transfers(self) -> dict:
    """Re-queue TRANSFER_FAILED items below the attempt cap."""
    from settlement.services import EscrowService

    item_ids = EscrowService.retry_failed_transfers()[:BATCH_SIZE]

    for item_id in item_ids:
        release_single_escrow.delay(str(item_id))
        logger.info("Queued failed transfer for retry", extra={"order_item_id": str(item_id)})

    logger.info(
        f"Queued {len(item_ids)} failed transfers for retry",
        extra={"queued_count": len(item_ids)},
    )
    return {"queued_count": len(item_ids)}
