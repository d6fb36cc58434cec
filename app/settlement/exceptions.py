"""
Settlement-specific exceptions.

Exception Hierarchy:
    SettlementError (base for the settlement domain)
    ├── OrderNotFoundError, ProductNotFoundError - Lookup failures
    └── PaymentNotCompletedError - Gateway reports the intent is not paid

    OrderValidationError - Malformed checkout (inherits ValidationError)
    OfferInvalidError - Offer unusable for this checkout (inherits ValidationError)
    SellerNotPayableError - Seller has no enabled payout account (inherits ValidationError)

    ProductUnavailableError - Product not ACTIVE or already reserved (ConflictError)
    ConcurrentCheckoutError - Lost the compare-and-set race (ConflictError)
    OrderNotCancellableError - Items already shipped/delivered (ConflictError)
    EscrowAlreadyTransferredError - Seller already paid, no clawback (ConflictError)
    TransferOutcomeUnknownError - Last transfer may have landed, retry first (ConflictError)
    StaleRecordError - Optimistic locking conflict (ConflictError)
    LockAcquisitionError - Distributed lock timeout (ConflictError)
    InvalidStateTransitionError - FSM transition not allowed (ConflictError)

    GatewayError - Base for payment gateway failures (ExternalServiceError)
        ├── GatewayCardDeclinedError - Card declined (permanent)
        ├── GatewayInvalidAccountError - Bad payout destination (permanent)
        ├── GatewayInvalidRequestError - Invalid request params (permanent)
        ├── GatewayRateLimitError - Rate limited (transient, retry)
        ├── GatewayUnavailableError - API unavailable (transient, retry)
        └── GatewayTimeoutError - Request timeout (transient, retry)

    InvalidSignatureError - Webhook failed authentication
    InconsistentStateError - Reconciliation met a state it cannot repair
    TransferEscalatedError - Transfer retries exhausted, needs ops review

Usage:
    from settlement.exceptions import ConcurrentCheckoutError

    if updated == 0:
        raise ConcurrentCheckoutError(
            f"Product {product.id} was reserved by another checkout",
            details={"product_id": str(product.id)},
        )
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Settlement Domain Exceptions
# =============================================================================


class SettlementError(BaseApplicationError):
    """
    Base exception for settlement operations that fit no narrower category.
    """

    default_error_code: str = "SETTLEMENT_ERROR"


class OrderNotFoundError(NotFoundError):
    """Raised when an order, order item or transaction cannot be found."""

    default_error_code: str = "ORDER_NOT_FOUND"


class ProductNotFoundError(NotFoundError):
    """Raised when a checkout references an unknown product."""

    default_error_code: str = "PRODUCT_NOT_FOUND"


class OrderValidationError(ValidationError):
    """
    Raised when a checkout or fulfilment request is malformed.

    Details carry field-level messages, for example:
        {"items": ["Order must contain at least one item."]}
    """

    default_error_code: str = "ORDER_VALIDATION_ERROR"


class OfferInvalidError(ValidationError):
    """
    Raised when an offer cannot be applied to a checkout line.

    Use for:
    - Offer not found
    - Offer not ACCEPTED
    - Offer made for another product or by another buyer
    """

    default_error_code: str = "OFFER_INVALID"


class SellerNotPayableError(ValidationError):
    """Raised when a seller has no payout destination able to receive transfers."""

    default_error_code: str = "SELLER_NOT_PAYABLE"


class PaymentNotCompletedError(SettlementError):
    """
    Raised by direct confirmation when the gateway says the intent is not paid.

    The gateway status is kept in details["intent_status"].
    """

    default_error_code: str = "PAYMENT_NOT_COMPLETED"


# =============================================================================
# Conflict Exceptions
# =============================================================================


class ProductUnavailableError(ConflictError):
    """
    Raised when a product is not ACTIVE or is already held by a checkout.

    Retryable from the buyer's point of view: an abandoned checkout will
    be released by the reconciliation sweep.
    """

    default_error_code: str = "PRODUCT_UNAVAILABLE"
    is_retryable: bool = True


class ConcurrentCheckoutError(ConflictError):
    """
    Raised when another checkout won the compare-and-set on a product.

    Example:
        updated = Product.objects.filter(pk=pk, status=ACTIVE).update(...)
        if updated == 0:
            raise ConcurrentCheckoutError(...)
    """

    default_error_code: str = "CONCURRENT_CHECKOUT"
    is_retryable: bool = True


class OrderNotCancellableError(ConflictError):
    """Raised when an order has items that are already shipped or delivered."""

    default_error_code: str = "ORDER_NOT_CANCELLABLE"


class EscrowAlreadyTransferredError(ConflictError):
    """
    Raised when a refund targets an item whose funds were paid out.

    Refunding a TRANSFERRED item would need a seller-side clawback, which
    this engine does not implement.
    """

    default_error_code: str = "ESCROW_ALREADY_TRANSFERRED"


class TransferOutcomeUnknownError(ConflictError):
    """
    Raised when a refund targets an item whose last transfer attempt
    timed out or hit an unavailable gateway.

    The transfer may have landed; a retry under the same idempotency key
    settles the outcome before the buyer can be refunded.
    """

    default_error_code: str = "TRANSFER_OUTCOME_UNKNOWN"
    is_retryable: bool = True


class StaleRecordError(ConflictError):
    """
    Raised when optimistic locking detects concurrent modification.

    Attributes:
        details: Contains pk, expected_version, and current_version
    """

    default_error_code: str = "STALE_RECORD"
    is_retryable: bool = True


class LockAcquisitionError(ConflictError):
    """
    Raised when a distributed lock cannot be acquired.

    Attributes:
        details: Contains key and timeout information
    """

    default_error_code: str = "LOCK_ACQUISITION_FAILED"
    is_retryable: bool = True


class InvalidStateTransitionError(ConflictError):
    """
    Raised when a state machine transition is not allowed.

    Wraps django-fsm's TransitionNotAllowed with our standard error format.

    Attributes:
        details: Contains model, current_state and transition name
    """

    default_error_code: str = "INVALID_STATE_TRANSITION"


# =============================================================================
# Gateway Exceptions
# =============================================================================


class GatewayError(ExternalServiceError):
    """
    Base exception for payment gateway failures.

    Attributes:
        is_retryable: Whether the same call may succeed later
        gateway_code: Provider's internal error code
        decline_code: Card decline code (if applicable)

    Example:
        try:
            gateway.transfer(...)
        except GatewayError as e:
            if e.is_retryable:
                raise self.retry(exc=e)
            escalate(e)
    """

    default_error_code: str = "GATEWAY_ERROR"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        gateway_code: str | None = None,
        decline_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if gateway_code:
            details["gateway_code"] = gateway_code
        if decline_code:
            details["decline_code"] = decline_code
        super().__init__(message, error_code=error_code, details=details)
        self.gateway_code = gateway_code
        self.decline_code = decline_code


# -----------------------------------------------------------------------------
# Permanent Errors (do not retry)
# -----------------------------------------------------------------------------


class GatewayCardDeclinedError(GatewayError):
    """Card was declined by the issuing bank."""

    default_error_code: str = "CARD_DECLINED"
    is_retryable: bool = False


class GatewayInvalidAccountError(GatewayError):
    """
    The seller's payout destination cannot receive transfers.

    Requires manual intervention on the seller account.
    """

    default_error_code: str = "INVALID_PAYOUT_ACCOUNT"
    is_retryable: bool = False


class GatewayInvalidRequestError(GatewayError):
    """
    Invalid request parameters sent to the gateway.

    This usually indicates a bug in our code, not a user error.
    """

    default_error_code: str = "INVALID_GATEWAY_REQUEST"
    is_retryable: bool = False


# -----------------------------------------------------------------------------
# Transient Errors (safe to retry with backoff)
# -----------------------------------------------------------------------------


class GatewayRateLimitError(GatewayError):
    """Rate limited by the gateway API."""

    default_error_code: str = "GATEWAY_RATE_LIMITED"
    is_retryable: bool = True


class GatewayUnavailableError(GatewayError):
    """Gateway API is temporarily unavailable (network, 5xx)."""

    default_error_code: str = "GATEWAY_UNAVAILABLE"
    is_retryable: bool = True


class GatewayTimeoutError(GatewayError):
    """
    Gateway API call timed out.

    The operation may have succeeded on the provider's side. Retry with
    the same idempotency key so it is not duplicated.
    """

    default_error_code: str = "GATEWAY_TIMEOUT"
    is_retryable: bool = True


# =============================================================================
# Webhook & Reconciliation Exceptions
# =============================================================================


class InvalidSignatureError(SettlementError):
    """Webhook payload failed signature verification; nothing is mutated."""

    default_error_code: str = "INVALID_SIGNATURE"


class InconsistentStateError(SettlementError):
    """Reconciliation found a combination of states it cannot repair."""

    default_error_code: str = "INCONSISTENT_STATE"


class TransferEscalatedError(SettlementError):
    """A seller transfer exhausted its retries and needs manual review."""

    default_error_code: str = "TRANSFER_ESCALATED"


# =============================================================================
# Exports
# =============================================================================

TRANSIENT_GATEWAY_ERRORS = (
    GatewayRateLimitError,
    GatewayUnavailableError,
    GatewayTimeoutError,
)

# The request may have reached the gateway before the failure
AMBIGUOUS_GATEWAY_ERROR_CODES = frozenset(
    {
        GatewayUnavailableError.default_error_code,
        GatewayTimeoutError.default_error_code,
    }
)

__all__ = [
    # Settlement domain
    "SettlementError",
    "OrderNotFoundError",
    "ProductNotFoundError",
    "OrderValidationError",
    "OfferInvalidError",
    "SellerNotPayableError",
    "PaymentNotCompletedError",
    # Conflicts
    "ProductUnavailableError",
    "ConcurrentCheckoutError",
    "OrderNotCancellableError",
    "EscrowAlreadyTransferredError",
    "TransferOutcomeUnknownError",
    "StaleRecordError",
    "LockAcquisitionError",
    "InvalidStateTransitionError",
    # Gateway
    "GatewayError",
    "GatewayCardDeclinedError",
    "GatewayInvalidAccountError",
    "GatewayInvalidRequestError",
    "GatewayRateLimitError",
    "GatewayUnavailableError",
    "GatewayTimeoutError",
    "TRANSIENT_GATEWAY_ERRORS",
    "AMBIGUOUS_GATEWAY_ERROR_CODES",
    # Webhook & reconciliation
    "InvalidSignatureError",
    "InconsistentStateError",
    "TransferEscalatedError",
]
