"""
ReconciliationRun: one execution of the reconciliation sweep.

Counters are filled in as the sweep progresses so an operator can see
what a run repaired. Per-product failures are appended to errors rather
than aborting the run.
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from settlement.state_machines import ReconciliationRunStatus


class ReconciliationRun(UUIDPrimaryKeyMixin, BaseModel):
    """
    Audit record for a reconciliation sweep.

    Fields:
        products_scanned: Stale PENDING_PAYMENT products examined
        products_finalized: Products moved to SOLD (paid, lock left behind)
        products_released: Products returned to ACTIVE
        orders_verified: Orders confirmed paid by asking the gateway
        transfers_requeued: Stuck RELEASED items sent back to the transfer task
        errors: [{"product_id": ..., "error": ...}, ...]
    """

    status = models.CharField(
        max_length=20,
        choices=ReconciliationRunStatus.choices,
        default=ReconciliationRunStatus.RUNNING,
        db_index=True,
    )

    started_at = models.DateTimeField(default=timezone.now)
    completed_at = models.DateTimeField(null=True, blank=True)

    products_scanned = models.PositiveIntegerField(default=0)
    products_finalized = models.PositiveIntegerField(default=0)
    products_released = models.PositiveIntegerField(default=0)
    orders_verified = models.PositiveIntegerField(default=0)
    transfers_requeued = models.PositiveIntegerField(default=0)

    errors = models.JSONField(default=list, blank=True)

    class Meta:
        ordering = ["-started_at"]

    def __str__(self) -> str:
        return f"ReconciliationRun({self.started_at:%Y-%m-%d %H:%M}, {self.status})"

    @property
    def duration_seconds(self) -> float | None:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def record_error(self, product_id, error: str) -> None:
        self.errors.append({"product_id": str(product_id), "error": error})

    def complete(self) -> None:
        self.status = ReconciliationRunStatus.COMPLETED
        self.completed_at = timezone.now()

    def fail(self, error: str) -> None:
        self.status = ReconciliationRunStatus.FAILED
        self.completed_at = timezone.now()
        self.errors.append({"error": error})
