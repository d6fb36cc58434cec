"""
Workers for async settlement processing.

- EscrowWorker: Releases escrow to sellers and retries failed transfers
- ReconciliationWorker: Repairs stale product locks and stuck releases

Usage:
    from settlement.workers import (
        process_escrow_releases,
        release_single_escrow,
        retry_failed_transfers,
        run_reconciliation_sweep,
    )

    release_single_escrow.delay(str(order_item_id))
    run_reconciliation_sweep.delay()
"""

from settlement.workers.escrow_worker import (
    process_escrow_releases,
    release_single_escrow,
    retry_failed_transfers,
)
from settlement.workers.reconciliation_worker import run_reconciliation_sweep

__all__ = [
    # Escrow Worker
    "process_escrow_releases",
    "release_single_escrow",
    "retry_failed_transfers",
    # Reconciliation Worker
    "run_reconciliation_sweep",
]
