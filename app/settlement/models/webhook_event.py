"""
WebhookEvent model for payment gateway notifications.

Every authenticated webhook is stored before it is processed. The unique
gateway_event_id makes redelivery of the same event a no-op.

Usage:
    event, created = WebhookEvent.objects.get_or_create(
        gateway_event_id="evt_123",
        defaults={"event_type": "payment_intent.succeeded", "payload": payload},
    )
    if event.is_processed:
        return HttpResponse("Already processed", status=200)
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from settlement.state_machines import WebhookEventStatus

MAX_WEBHOOK_RETRIES = 5


class WebhookEvent(UUIDPrimaryKeyMixin, BaseModel):
    """
    A gateway event received on the webhook endpoint.

    Processing Flow:
        1. Signature verified by the view (unauthenticated payloads are
           never stored)
        2. get_or_create on gateway_event_id
        3. PENDING -> PROCESSING -> PROCESSED
        4. PROCESSING -> FAILED, picked up again by retry_failed_webhooks
    """

    gateway_event_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Gateway event id (evt_xxx)",
    )

    event_type = models.CharField(max_length=100, db_index=True)

    payload = models.JSONField()

    status = models.CharField(
        max_length=20,
        choices=WebhookEventStatus.choices,
        default=WebhookEventStatus.PENDING,
        db_index=True,
    )

    processed_at = models.DateTimeField(null=True, blank=True)

    error_message = models.TextField(null=True, blank=True)

    retry_count = models.PositiveSmallIntegerField(default=0)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "retry_count"], name="stl_webhook_status_retry_idx"),
            models.Index(fields=["status", "updated_at"], name="stl_webhook_status_upd_idx"),
        ]

    def __str__(self) -> str:
        return f"WebhookEvent({self.gateway_event_id}, {self.event_type})"

    @property
    def is_processed(self) -> bool:
        return self.status == WebhookEventStatus.PROCESSED

    @property
    def can_retry(self) -> bool:
        return (
            self.status == WebhookEventStatus.FAILED
            and self.retry_count < MAX_WEBHOOK_RETRIES
        )

    @property
    def data_object(self) -> dict:
        """The event's data.object (the intent, charge or dispute)."""
        return (self.payload or {}).get("data", {}).get("object", {}) or {}

    def get_object_id(self) -> str | None:
        return self.data_object.get("id")

    # The helpers below do not save; the caller saves.

    def mark_processing(self) -> None:
        self.status = WebhookEventStatus.PROCESSING
        self.retry_count += 1

    def mark_processed(self) -> None:
        self.status = WebhookEventStatus.PROCESSED
        self.processed_at = timezone.now()
        self.error_message = None

    def mark_failed(self, error: str) -> None:
        self.status = WebhookEventStatus.FAILED
        self.error_message = error[:2000]
