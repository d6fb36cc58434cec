"""
Base exception classes for application-wide error handling.

Every domain error raised by the settlement engine derives from
BaseApplicationError so that callers get one consistent shape:
a human-readable message, a machine-readable error code and a
details dict with field-level or contextual information.

Exception Hierarchy:
    BaseApplicationError (base)
    ├── ValidationError - Malformed requests, field-level problems
    ├── NotFoundError - Referenced record does not exist
    ├── PermissionDeniedError - Caller does not own the resource
    ├── ConflictError - State conflicts (locks, races, invalid transitions)
    └── ExternalServiceError - Payment gateway and other third-party failures

Usage:
    from core.exceptions import ValidationError, NotFoundError

    raise ValidationError(
        "Order must contain at least one item",
        error_code="EMPTY_ORDER",
        details={"items": ["This list may not be empty."]},
    )

    try:
        ...
    except BaseApplicationError as e:
        return ServiceResult.failure(e.message, error_code=e.error_code)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


class BaseApplicationError(Exception):
    """
    Base exception for all application-specific errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable code for client-side handling
        details: Additional error context (field errors, identifiers, etc.)

    Example:
        try:
            OrderService.get_order(order_id)
        except NotFoundError as e:
            logger.warning("Order lookup failed", extra=e.to_dict())
    """

    default_error_code: str = "APPLICATION_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        """
        Initialize the exception.

        Args:
            message: Human-readable error description
            error_code: Machine-readable error code (defaults to class default)
            details: Additional error context
        """
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to a plain dict.

        Returns:
            Dict with error, error_code, and (when present) details keys

        Example:
            {
                "error": "Product is not available",
                "error_code": "PRODUCT_UNAVAILABLE",
                "details": {"product_id": "6f1c..."}
            }
        """
        result: dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        """Return string representation with error code."""
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        """Return detailed representation for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


class ValidationError(BaseApplicationError):
    """
    Raised when input validation fails.

    Use for:
    - Empty or malformed requests
    - Unknown references supplied by the caller
    - Business rule violations detected before any mutation

    Example:
        raise ValidationError(
            "Validation failed",
            details={"shipping_address_id": ["Unknown shipping address."]},
        )
    """

    default_error_code: str = "VALIDATION_ERROR"


class NotFoundError(BaseApplicationError):
    """
    Raised when a requested resource is not found.

    Example:
        order = Order.objects.filter(id=order_id).first()
        if not order:
            raise NotFoundError(
                f"Order {order_id} not found",
                error_code="ORDER_NOT_FOUND",
                details={"order_id": str(order_id)},
            )
    """

    default_error_code: str = "NOT_FOUND"


class PermissionDeniedError(BaseApplicationError):
    """
    Raised when the caller may not act on a resource.

    Use for:
    - Shipping address that belongs to another user
    - Offer made by another buyer
    - Seller-only or buyer-only actions invoked by the other party
    """

    default_error_code: str = "PERMISSION_DENIED"


class ConflictError(BaseApplicationError):
    """
    Raised when an operation conflicts with current resource state.

    Use for:
    - Lost compare-and-set races
    - Concurrent modification conflicts
    - Invalid state transitions
    - Optimistic locking failures

    Note:
        Conflicts are usually transient from the caller's point of view;
        subclasses set is_retryable to signal that a retry may succeed.
    """

    default_error_code: str = "CONFLICT"
    is_retryable: bool = False


class ExternalServiceError(BaseApplicationError):
    """
    Raised when an external service call fails.

    Use for:
    - Payment gateway failures
    - Network timeouts
    - Unexpected external service responses

    Note:
        Log the original error for debugging but don't expose
        internal details to end users.
    """

    default_error_code: str = "EXTERNAL_SERVICE_ERROR"
