"""
Stripe implementation of the payment gateway.

All Stripe calls made by the settlement engine go through StripeGateway,
so timeouts, idempotency, logging and error translation are handled in
one place.

Configuration (via settings):
- STRIPE_SECRET_KEY: Stripe API secret key
- STRIPE_API_TIMEOUT_SECONDS: Per-request timeout (default: 10)
- STRIPE_MAX_RETRIES: SDK-level network retries (default: 2)

Usage:
    gateway = StripeGateway()
    intent = gateway.create_intent(150_000, "vnd", order_ref=str(order.id))

    transfer_id = gateway.transfer(
        seller_account_ref="acct_123",
        amount=90_000,
        currency="vnd",
        idempotency_key=f"transfer:{item.id}",
    )
"""

from __future__ import annotations

import hashlib
import logging
import time
from typing import TYPE_CHECKING

import stripe
from django.conf import settings

from settlement.adapters.base import IntentResult, PaymentGateway
from settlement.exceptions import (
    GatewayCardDeclinedError,
    GatewayError,
    GatewayInvalidAccountError,
    GatewayInvalidRequestError,
    GatewayRateLimitError,
    GatewayTimeoutError,
    GatewayUnavailableError,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from typing import Any
    from uuid import UUID

logger = logging.getLogger(__name__)


# =============================================================================
# Idempotency & Retry Helpers
# =============================================================================


class IdempotencyKeyGenerator:
    """
    Deterministic idempotency keys for Stripe calls.

    Format: "{operation}:{entity_id}:{attempt}:{hash}"

    The same operation on the same entity always yields the same key, so
    a retried create_intent for an order returns the original intent.
    The short hash is salted with SECRET_KEY so keys are not guessable
    from entity ids alone.

    Example:
        IdempotencyKeyGenerator.generate("create_intent", order.id)
        # "create_intent:550e8400-...:1:a1b2c3d4"
    """

    @staticmethod
    def generate(operation: str, entity_id: UUID | str, attempt: int = 1) -> str:
        entity = str(entity_id)
        digest = hashlib.sha256(
            f"{operation}:{entity}:{attempt}:{settings.SECRET_KEY}".encode()
        ).hexdigest()[:8]
        return f"{operation}:{entity}:{attempt}:{digest}"


# =============================================================================
# Stripe Gateway
# =============================================================================


class StripeGateway(PaymentGateway):
    """
    PaymentGateway backed by the Stripe SDK.

    Stateless apart from module-level SDK configuration, so one instance
    may be shared across threads and Celery workers.
    """

    def __init__(self) -> None:
        stripe.api_key = settings.STRIPE_SECRET_KEY
        stripe.max_network_retries = getattr(settings, "STRIPE_MAX_RETRIES", 2)
        stripe.default_http_client = stripe.RequestsClient(
            timeout=getattr(settings, "STRIPE_API_TIMEOUT_SECONDS", 10)
        )

    # =========================================================================
    # PaymentGateway
    # =========================================================================

    def create_intent(
        self,
        amount: int,
        currency: str,
        order_ref: str,
        metadata: dict[str, str] | None = None,
    ) -> IntentResult:
        """
        Create a PaymentIntent for an order.

        The idempotency key is derived from order_ref, so repeated calls
        for the same order return the intent Stripe created first.
        """
        idempotency_key = IdempotencyKeyGenerator.generate("create_intent", order_ref)
        intent = self._call(
            "create_intent",
            lambda: stripe.PaymentIntent.create(
                amount=amount,
                currency=currency,
                metadata={**(metadata or {}), "order_ref": order_ref},
                payment_method_types=["card"],
                idempotency_key=idempotency_key,
            ),
            {
                "order_ref": order_ref,
                "amount": amount,
                "currency": currency,
                "idempotency_key": idempotency_key,
            },
        )
        return IntentResult(
            intent_id=intent.id,
            client_secret=intent.client_secret,
            status=intent.status,
            amount=intent.amount,
            currency=intent.currency,
            metadata=dict(intent.metadata or {}),
        )

    def confirm_intent(self, intent_id: str) -> str:
        """
        Fetch the intent's latest status.

        The buyer confirms the card client-side; the server only reads
        back the outcome.
        """
        intent = self._call(
            "confirm_intent",
            lambda: stripe.PaymentIntent.retrieve(intent_id),
            {"intent_id": intent_id},
        )
        return intent.status

    def refund(
        self,
        transaction_ref: str,
        amount: int,
        idempotency_key: str,
        reason: str | None = None,
    ) -> str:
        refund = self._call(
            "refund",
            lambda: stripe.Refund.create(
                payment_intent=transaction_ref,
                amount=amount,
                metadata={"reason": reason or ""},
                idempotency_key=idempotency_key,
            ),
            {
                "intent_id": transaction_ref,
                "amount": amount,
                "idempotency_key": idempotency_key,
            },
        )
        return refund.id

    def transfer(
        self,
        seller_account_ref: str,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> str:
        transfer = self._call(
            "transfer",
            lambda: stripe.Transfer.create(
                amount=amount,
                currency=currency,
                destination=seller_account_ref,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            ),
            {
                "destination": seller_account_ref,
                "amount": amount,
                "currency": currency,
                "idempotency_key": idempotency_key,
            },
        )
        return transfer.id

    def verify_signature(self, payload: bytes, signature: str, secret: str) -> bool:
        """
        Check the Stripe-Signature header against the endpoint secret.

        Malformed payloads and bad or stale signatures both return False.
        """
        if not signature or not secret:
            return False
        try:
            stripe.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError as e:
            logger.warning("Webhook signature rejected", extra={"error": str(e)})
            return False
        except ValueError as e:
            logger.warning("Webhook payload malformed", extra={"error": str(e)})
            return False
        return True

    # =========================================================================
    # Call Wrapper & Error Translation
    # =========================================================================

    def _call(self, operation: str, request: Callable[[], Any], log_context: dict[str, Any]):
        """Run one SDK request with timing, logging and error translation."""
        log_context = {"operation": operation, **log_context}
        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)

        try:
            response = request()
        except stripe.StripeError as e:
            duration_ms = (time.time() - start_time) * 1000
            raise self._translate_error(e, log_context, duration_ms) from e

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            "Stripe operation completed",
            extra={**log_context, "stripe_id": getattr(response, "id", None), "duration_ms": duration_ms},
        )
        return response

    def _translate_error(
        self,
        error: stripe.StripeError,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> GatewayError:
        """
        Map a Stripe SDK error onto the gateway error taxonomy.

        Permanent: CardError, InvalidRequestError, AuthenticationError
        Transient: RateLimitError, APIConnectionError (incl. timeouts), APIError
        """
        log_context = {**log_context, "duration_ms": duration_ms, "stripe_code": error.code}

        if isinstance(error, stripe.CardError):
            decline_code = getattr(error, "decline_code", None)
            logger.warning("Card declined by Stripe", extra={**log_context, "decline_code": decline_code})
            return GatewayCardDeclinedError(
                str(error.user_message or error),
                gateway_code=error.code,
                decline_code=decline_code,
            )

        if isinstance(error, stripe.InvalidRequestError):
            if getattr(error, "param", None) == "destination" or "account" in str(error).lower():
                logger.error("Invalid payout account", extra=log_context)
                return GatewayInvalidAccountError(str(error), gateway_code=error.code)
            logger.error("Invalid request to Stripe", extra=log_context)
            return GatewayInvalidRequestError(str(error), gateway_code=error.code)

        if isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            return GatewayRateLimitError("Stripe rate limit exceeded", gateway_code="rate_limit")

        if isinstance(error, stripe.APIConnectionError):
            if "timed out" in str(error).lower() or "timeout" in str(error).lower():
                logger.error("Stripe request timed out", extra=log_context)
                return GatewayTimeoutError("Stripe request timed out", gateway_code="timeout")
            logger.error("Connection error to Stripe", extra=log_context, exc_info=True)
            return GatewayUnavailableError("Could not connect to Stripe", gateway_code="api_connection_error")

        if isinstance(error, stripe.AuthenticationError):
            logger.critical("Stripe authentication failed - check API key", extra=log_context)
            return GatewayInvalidRequestError("Stripe authentication failed", gateway_code="authentication_error")

        if isinstance(error, stripe.APIError):
            logger.error("Stripe API error", extra=log_context, exc_info=True)
            return GatewayUnavailableError("Stripe service error", gateway_code="api_error")

        logger.error(
            f"Unexpected error from Stripe: {type(error).__name__}",
            extra=log_context,
            exc_info=True,
        )
        return GatewayUnavailableError(f"Unexpected Stripe error: {error}", gateway_code="unknown_error")


__all__ = [
    "IdempotencyKeyGenerator",
    "StripeGateway",
]
