"""
Reconciliation worker.

Tasks:
- run_reconciliation_sweep: Periodic sweep of stale product locks and
  stuck escrow releases (scheduled every
  SETTLEMENT_RECONCILIATION_INTERVAL_MINUTES by migration 0002)

Usage:
    from settlement.workers import run_reconciliation_sweep

    run_reconciliation_sweep.delay()
"""

from __future__ import annotations

import logging

from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task(bind=True, name="settlement.run_reconciliation_sweep")
def run_reconciliation_sweep(self) -> dict:
    """
    Run one reconciliation sweep.

    Returns:
        Dict with:
        - status: "completed" or "skipped" (another sweep holds the lock)
        - run_id and the run's counters when completed

    Note:
        A sweep already in progress makes this return "skipped" at once
        rather than waiting, so slow runs never pile up in the queue.
    """
    from settlement.services import ReconciliationService

    logger.info("Starting scheduled reconciliation sweep")

    result = ReconciliationService.run()
    report = result.data

    if report.skipped:
        return {"status": "skipped"}

    return {
        "status": report.status,
        "run_id": str(report.run_id),
        "products_scanned": report.products_scanned,
        "products_finalized": report.products_finalized,
        "products_released": report.products_released,
        "orders_verified": report.orders_verified,
        "transfers_requeued": report.transfers_requeued,
        "error_count": len(report.errors),
    }
