"""
Tests for the Stripe gateway adapter.

SDK calls are mocked; errors are real stripe exception instances so the
translation table is exercised against the SDK's class hierarchy.
"""

from unittest.mock import MagicMock

import pytest
import stripe

from settlement.adapters import IdempotencyKeyGenerator, StripeGateway
from settlement.exceptions import (
    GatewayCardDeclinedError,
    GatewayInvalidAccountError,
    GatewayInvalidRequestError,
    GatewayRateLimitError,
    GatewayTimeoutError,
    GatewayUnavailableError,
)


@pytest.fixture
def stripe_gateway(settings):
    settings.STRIPE_SECRET_KEY = "sk_test_123"
    return StripeGateway()


# =============================================================================
# Helpers
# =============================================================================


class TestIdempotencyKeyGenerator:
    def test_stable_for_same_input(self):
        first = IdempotencyKeyGenerator.generate("create_intent", "order-1")
        second = IdempotencyKeyGenerator.generate("create_intent", "order-1")

        assert first == second
        assert first.startswith("create_intent:order-1:1:")
        assert len(first.rsplit(":", 1)[1]) == 8

    def test_attempt_changes_key(self):
        assert IdempotencyKeyGenerator.generate("refund", "x", attempt=1) != IdempotencyKeyGenerator.generate(
            "refund", "x", attempt=2
        )


# =============================================================================
# Operations
# =============================================================================


class TestStripeGatewayOperations:
    def test_configures_sdk(self, stripe_gateway):
        assert stripe.api_key == "sk_test_123"

    def test_create_intent(self, stripe_gateway, mocker):
        create = mocker.patch.object(
            stripe.PaymentIntent,
            "create",
            return_value=MagicMock(
                id="pi_1",
                client_secret="pi_1_secret",
                status="requires_payment_method",
                amount=150_000,
                currency="vnd",
                metadata={"order_ref": "order-1"},
            ),
        )

        intent = stripe_gateway.create_intent(150_000, "vnd", order_ref="order-1", metadata={"buyer_id": "7"})

        assert intent.intent_id == "pi_1"
        assert intent.client_secret == "pi_1_secret"
        kwargs = create.call_args.kwargs
        assert kwargs["amount"] == 150_000
        assert kwargs["metadata"] == {"buyer_id": "7", "order_ref": "order-1"}
        assert kwargs["idempotency_key"] == IdempotencyKeyGenerator.generate("create_intent", "order-1")

    def test_confirm_intent_reads_status(self, stripe_gateway, mocker):
        mocker.patch.object(stripe.PaymentIntent, "retrieve", return_value=MagicMock(status="succeeded"))

        assert stripe_gateway.confirm_intent("pi_1") == "succeeded"

    def test_refund_passes_key(self, stripe_gateway, mocker):
        create = mocker.patch.object(stripe.Refund, "create", return_value=MagicMock(id="re_1"))

        assert stripe_gateway.refund("pi_1", 100_000, idempotency_key="refund:item-1", reason="damaged") == "re_1"
        kwargs = create.call_args.kwargs
        assert kwargs["payment_intent"] == "pi_1"
        assert kwargs["idempotency_key"] == "refund:item-1"

    def test_transfer_to_destination(self, stripe_gateway, mocker):
        create = mocker.patch.object(stripe.Transfer, "create", return_value=MagicMock(id="tr_1"))

        transfer_id = stripe_gateway.transfer("acct_1", 90_000, "vnd", idempotency_key="transfer:item-1")

        assert transfer_id == "tr_1"
        kwargs = create.call_args.kwargs
        assert (kwargs["destination"], kwargs["amount"], kwargs["currency"]) == ("acct_1", 90_000, "vnd")
        assert kwargs["idempotency_key"] == "transfer:item-1"


class TestVerifySignature:
    def test_valid(self, stripe_gateway, mocker):
        construct = mocker.patch.object(stripe.Webhook, "construct_event")

        assert stripe_gateway.verify_signature(b"{}", "t=1,v1=abc", "whsec_1")
        construct.assert_called_once_with(b"{}", "t=1,v1=abc", "whsec_1")

    def test_bad_signature(self, stripe_gateway, mocker):
        mocker.patch.object(
            stripe.Webhook,
            "construct_event",
            side_effect=stripe.SignatureVerificationError("No signatures found", "t=1,v1=abc"),
        )

        assert not stripe_gateway.verify_signature(b"{}", "t=1,v1=abc", "whsec_1")

    def test_malformed_payload(self, stripe_gateway, mocker):
        mocker.patch.object(stripe.Webhook, "construct_event", side_effect=ValueError("bad json"))

        assert not stripe_gateway.verify_signature(b"nope", "t=1,v1=abc", "whsec_1")

    @pytest.mark.parametrize(("signature", "secret"), [("", "whsec_1"), ("t=1,v1=abc", "")])
    def test_fails_closed_without_signature_or_secret(self, stripe_gateway, mocker, signature, secret):
        construct = mocker.patch.object(stripe.Webhook, "construct_event")

        assert not stripe_gateway.verify_signature(b"{}", signature, secret)
        construct.assert_not_called()


# =============================================================================
# Error Translation
# =============================================================================


class TestErrorTranslation:
    @pytest.mark.parametrize(
        ("error", "expected", "retryable"),
        [
            (stripe.CardError("Your card was declined.", None, "card_declined"), GatewayCardDeclinedError, False),
            (
                stripe.InvalidRequestError("No such destination: acct_x", "destination"),
                GatewayInvalidAccountError,
                False,
            ),
            (stripe.InvalidRequestError("Amount must be positive", "amount"), GatewayInvalidRequestError, False),
            (stripe.RateLimitError("Too many requests"), GatewayRateLimitError, True),
            (stripe.APIConnectionError("Request timed out"), GatewayTimeoutError, True),
            (stripe.APIConnectionError("Connection refused"), GatewayUnavailableError, True),
            (stripe.AuthenticationError("Invalid API key"), GatewayInvalidRequestError, False),
            (stripe.APIError("Internal error"), GatewayUnavailableError, True),
        ],
    )
    def test_mapping(self, stripe_gateway, mocker, error, expected, retryable):
        mocker.patch.object(stripe.Transfer, "create", side_effect=error)

        with pytest.raises(expected) as exc_info:
            stripe_gateway.transfer("acct_1", 1_000, "vnd", idempotency_key="transfer:x")

        assert exc_info.value.is_retryable is retryable
        assert exc_info.value.__cause__ is error
