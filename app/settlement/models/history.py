"""
StatusHistory: append-only audit trail of state changes.

Rows are written by settlement.state_machines.transitions whenever an
order status, item status or item escrow status moves.
"""

from __future__ import annotations

from django.db import models

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin


class StatusHistory(UUIDPrimaryKeyMixin, BaseModel):
    """
    One recorded state change.

    Fields:
        field: Which status moved ("order.status", "item.status",
            "item.escrow_status")
        actor: Who or what caused it ("webhook", "reconciliation",
            a user id, ...)
    """

    ORDER_STATUS = "order.status"
    ITEM_STATUS = "item.status"
    ITEM_ESCROW_STATUS = "item.escrow_status"

    order = models.ForeignKey(
        "settlement.Order",
        on_delete=models.CASCADE,
        related_name="status_history",
    )

    order_item = models.ForeignKey(
        "settlement.OrderItem",
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="status_history",
    )

    field = models.CharField(max_length=32)
    from_status = models.CharField(max_length=20)
    to_status = models.CharField(max_length=20)
    actor = models.CharField(max_length=64, blank=True, default="")
    note = models.TextField(blank=True, default="")

    class Meta:
        ordering = ["created_at"]
        verbose_name_plural = "Status history"
        indexes = [
            models.Index(fields=["order", "created_at"], name="stl_history_order_created_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.field}: {self.from_status} -> {self.to_status}"
