"""
Base service layer patterns for business logic encapsulation.

This module provides foundational patterns for the service layer:
- ServiceResult: Standard result wrapper for consistent success/failure handling
- BaseService: Base class with common service utilities

Pattern Comparison:
    - ServiceResult: Use for expected failures (validation, lost races,
      gateway declines) that the caller should branch on
    - Exceptions: Use for unexpected failures (database errors, bugs);
      they propagate so the surrounding transaction rolls back

Usage:
    from core.services import BaseService, ServiceResult

    class OrderService(BaseService):
        @classmethod
        def cancel(cls, order_id) -> ServiceResult[Order]:
            order = Order.objects.filter(id=order_id).first()
            if order is None:
                return ServiceResult.failure("Order not found", "ORDER_NOT_FOUND")

            with cls.atomic():
                ...

            cls.get_logger().info("Cancelled order", extra={"order_id": str(order.id)})
            return ServiceResult.success(order)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

from django.db import transaction

if TYPE_CHECKING:
    from collections.abc import Generator

# Generic type for ServiceResult data
T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """
    Standard result wrapper for service operations.

    Attributes:
        success: Whether the operation succeeded
        data: Result data if successful (None if failed)
        error: Error message if failed (None if successful)
        error_code: Machine-readable error code for client handling
        errors: Field-level errors for validation failures

    Usage:
        result = OrderService.create_order(buyer, lines, address_id)
        if result.success:
            order = result.data.order
        else:
            print(f"Error: {result.error} ({result.error_code})")
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None
    errors: dict[str, list[str]] | None = field(default=None)

    @classmethod
    def success(cls, data: T) -> ServiceResult[T]:
        """
        Create a successful result.

        Args:
            data: The result data

        Returns:
            ServiceResult with success=True and data set
        """
        return cls(success=True, data=data)

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: str | None = None,
        errors: dict[str, list[str]] | None = None,
    ) -> ServiceResult[T]:
        """
        Create a failed result.

        Args:
            error: Human-readable error message
            error_code: Machine-readable error code for client handling
            errors: Field-level errors (for validation failures)

        Returns:
            ServiceResult with success=False and error details
        """
        return cls(
            success=False,
            error=error,
            error_code=error_code,
            errors=errors,
        )

    @classmethod
    def from_exception(cls, exc: Exception, error_code: str | None = None) -> ServiceResult[T]:
        """
        Create a failed result from an exception.

        Application errors keep their own error code and, when their details
        look like field errors, expose them as field-level errors.

        Args:
            exc: The caught exception
            error_code: Optional error code override

        Returns:
            ServiceResult with error details from exception
        """
        code = error_code or getattr(exc, "error_code", None) or exc.__class__.__name__.upper()
        message = getattr(exc, "message", None) or str(exc)
        details = getattr(exc, "details", None) or {}
        field_errors = {
            key: value
            for key, value in details.items()
            if isinstance(value, list)
        }
        return cls(
            success=False,
            error=message,
            error_code=code,
            errors=field_errors or None,
        )

    def __bool__(self) -> bool:
        """Allow using result in boolean context."""
        return self.success


class BaseService:
    """
    Base class for service layer classes.

    Provides common utilities for services:
    - Logging setup per service
    - Database transaction management
    - Required-field validation

    Design Notes:
        - Use @classmethod (no instance state); collaborators such as a
          payment gateway are passed in as keyword arguments
        - Use ServiceResult for expected failures
        - Raise exceptions for unexpected failures
    """

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """
        Get logger for this service.

        Returns a logger named after the service class for
        easy filtering in logs.
        """
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    @contextmanager
    def atomic(cls) -> Generator[None, None, None]:
        """
        Execute operations in a database transaction.

        Thin wrapper around django.db.transaction.atomic() that makes
        transaction boundaries explicit in service code.
        """
        with transaction.atomic():
            yield

    @classmethod
    def validate_required(cls, **kwargs) -> ServiceResult | None:
        """
        Validate that required fields are provided.

        Returns a failure result if any required field is None, empty or
        whitespace-only. Returns None if all fields are valid.

        Example:
            validation = cls.validate_required(tracking_number=tracking_number)
            if validation is not None:
                return validation
        """
        errors = {}
        for field_name, value in kwargs.items():
            if value is None:
                errors[field_name] = ["This field is required."]
            elif isinstance(value, str) and not value.strip():
                errors[field_name] = ["This field is required."]
            elif isinstance(value, (list, tuple)) and not value:
                errors[field_name] = ["This field is required."]

        if errors:
            return ServiceResult.failure(
                "Required fields missing",
                error_code="VALIDATION_ERROR",
                errors=errors,
            )
        return None
