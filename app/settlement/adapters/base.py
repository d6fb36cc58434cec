"""
Payment gateway contract.

Services depend on PaymentGateway, never on a provider SDK. The concrete
gateway is chosen by the SETTLEMENT_PAYMENT_GATEWAY setting (a dotted
path) and resolved with get_payment_gateway(); tests inject a fake.

Every method may raise a settlement.exceptions.GatewayError subclass.
Check its is_retryable attribute to decide whether to try again with
the same idempotency key.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from django.conf import settings
from django.utils.module_loading import import_string

# Gateway intent statuses the engine branches on
INTENT_SUCCEEDED = "succeeded"
INTENT_PROCESSING = "processing"
INTENT_REQUIRES_PAYMENT_METHOD = "requires_payment_method"
INTENT_REQUIRES_CONFIRMATION = "requires_confirmation"
INTENT_REQUIRES_ACTION = "requires_action"
INTENT_CANCELED = "canceled"


@dataclass
class IntentResult:
    """
    A payment intent as returned by the gateway.

    Attributes:
        intent_id: Gateway intent id (pi_xxx)
        client_secret: Secret the buyer's client uses to confirm payment
        status: Gateway status string
    """

    intent_id: str
    client_secret: str | None
    status: str
    amount: int | None = None
    currency: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(ABC):
    """Operations the settlement engine needs from a payment provider."""

    @abstractmethod
    def create_intent(
        self,
        amount: int,
        currency: str,
        order_ref: str,
        metadata: dict[str, str] | None = None,
    ) -> IntentResult:
        """
        Create (or return the existing) payment intent for an order.

        Calls with the same order_ref must return the same intent.
        """

    @abstractmethod
    def confirm_intent(self, intent_id: str) -> str:
        """Return the intent's current gateway status."""

    @abstractmethod
    def refund(
        self,
        transaction_ref: str,
        amount: int,
        idempotency_key: str,
        reason: str | None = None,
    ) -> str:
        """Refund part or all of a captured payment. Returns the refund id."""

    @abstractmethod
    def transfer(
        self,
        seller_account_ref: str,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> str:
        """Pay a seller from the platform balance. Returns the transfer id."""

    @abstractmethod
    def verify_signature(self, payload: bytes, signature: str, secret: str) -> bool:
        """Whether a webhook payload was signed with the shared secret."""


def get_payment_gateway() -> PaymentGateway:
    """Instantiate the gateway named by SETTLEMENT_PAYMENT_GATEWAY."""
    gateway_class = import_string(settings.SETTLEMENT_PAYMENT_GATEWAY)
    return gateway_class()


def get_webhook_secret() -> str:
    return settings.SETTLEMENT_WEBHOOK_SECRET
