"""
Order aggregation: checkout creation and seller fulfilment.

create_order validates every line before touching the database, then
locks all products, creates the order, its items and their transactions
in one transaction. Either everything is created or nothing is.

Usage:
    from settlement.services import OrderLineRequest, OrderService

    result = OrderService.create_order(
        buyer=request.user,
        items=[
            OrderLineRequest(product_id=product_a.id),
            OrderLineRequest(product_id=product_b.id, offer_id=offer.id),
        ],
        shipping_address_id=address.id,
    )
    if result.success:
        order = result.data.order
    elif result.error_code == "CONCURRENT_CHECKOUT":
        ...  # another buyer got there first
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from django.conf import settings
from django.utils import timezone

from core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from core.services import BaseService, ServiceResult

from settlement.exceptions import (
    InvalidStateTransitionError,
    OfferInvalidError,
    OrderValidationError,
    ProductNotFoundError,
    ProductUnavailableError,
    SellerNotPayableError,
)
from settlement.models import (
    Offer,
    Order,
    OrderItem,
    Product,
    ProductReservation,
    SellerAccount,
    ShippingAddress,
    StatusHistory,
    Transaction,
)
from settlement.reservations import ProductLockManager
from settlement.services.fee_service import FeeTierService
from settlement.state_machines import OfferStatus, OrderStatus, ProductStatus, ReservationState
from settlement.state_machines import transitions

if TYPE_CHECKING:
    from decimal import Decimal
    from uuid import UUID

    from django.contrib.auth.models import AbstractBaseUser


# =============================================================================
# Request & Result Types
# =============================================================================


@dataclass(frozen=True)
class OrderLineRequest:
    """One product the buyer wants, optionally at a negotiated price."""

    product_id: UUID
    offer_id: UUID | None = None


@dataclass
class _ValidatedLine:
    product: Product
    offer: Offer | None
    price: int
    fee_percentage: Decimal | None = None
    platform_fee: int = 0


@dataclass
class OrderCreationResult:
    order: Order
    items: list[OrderItem]


@dataclass
class ItemSummary:
    item_id: UUID
    product_id: UUID
    seller_id: int
    price: int
    platform_fee: int
    status: str
    escrow_status: str
    transaction_id: UUID | None
    transaction_status: str | None
    dispute_status: str | None


@dataclass
class OrderSummary:
    """
    Read-only snapshot of an order and its items.

    Returned by every inbound operation so callers see the state that
    resulted from it.
    """

    order_id: UUID
    status: str
    total_amount: int
    total_platform_fee: int
    total_shipping_fee: int
    currency: str
    payment_intent_ref: str | None
    items: list[ItemSummary] = field(default_factory=list)

    @classmethod
    def from_order(cls, order: Order) -> OrderSummary:
        items = []
        for item in order.items.select_related("transaction").order_by("created_at"):
            txn = getattr(item, "transaction", None)
            items.append(
                ItemSummary(
                    item_id=item.pk,
                    product_id=item.product_id,
                    seller_id=item.seller_id,
                    price=item.price,
                    platform_fee=item.platform_fee,
                    status=item.status,
                    escrow_status=item.escrow_status,
                    transaction_id=txn.pk if txn else None,
                    transaction_status=txn.status if txn else None,
                    dispute_status=txn.dispute_status if txn else None,
                )
            )
        return cls(
            order_id=order.pk,
            status=order.status,
            total_amount=order.total_amount,
            total_platform_fee=order.total_platform_fee,
            total_shipping_fee=order.total_shipping_fee,
            currency=order.currency,
            payment_intent_ref=order.payment_intent_ref,
            items=items,
        )


# =============================================================================
# Order Service
# =============================================================================


class OrderService(BaseService):
    """
    Builds orders from checkout requests and records seller shipments.

    Expected failures come back as ServiceResult failures carrying the
    error code of the typed exception (ORDER_VALIDATION_ERROR,
    PRODUCT_NOT_FOUND, PRODUCT_UNAVAILABLE, CONCURRENT_CHECKOUT,
    SELLER_NOT_PAYABLE, OFFER_INVALID, PERMISSION_DENIED).
    """

    @classmethod
    def create_order(
        cls,
        buyer: AbstractBaseUser,
        items: list[OrderLineRequest],
        shipping_address_id: UUID,
    ) -> ServiceResult[OrderCreationResult]:
        """
        Create a PENDING order and lock its products.

        No money moves here; the buyer pays later through
        PaymentService.create_payment_intent.

        Args:
            buyer: User checking out
            items: Requested lines, at most one per product
            shipping_address_id: Address owned by the buyer

        Returns:
            ServiceResult with OrderCreationResult(order, items)
        """
        logger = cls.get_logger()

        try:
            address = cls._validate_address(buyer, shipping_address_id)
            lines = cls._validate_lines(buyer, items)
        except (ValidationError, NotFoundError, PermissionDeniedError, ConflictError) as e:
            logger.info(
                "Checkout rejected",
                extra={"buyer_id": buyer.pk, "error_code": e.error_code},
            )
            return ServiceResult.from_exception(e)

        # Fees are resolved per seller group; shipping is charged once per seller.
        groups: OrderedDict[int, list[_ValidatedLine]] = OrderedDict()
        for line in lines:
            groups.setdefault(line.product.seller_id, []).append(line)

        for seller_lines in groups.values():
            for line in seller_lines:
                breakdown = FeeTierService.calculate(line.product.seller, line.price)
                line.fee_percentage = breakdown.fee_percentage
                line.platform_fee = breakdown.platform_fee

        shipping_fee = settings.SETTLEMENT_SHIPPING_FEE_PER_SELLER * len(groups)
        items_total = sum(line.price for line in lines)
        now = timezone.now()

        try:
            with cls.atomic():
                order = Order.objects.create(
                    buyer=buyer,
                    shipping_address=address,
                    total_amount=items_total + shipping_fee,
                    total_platform_fee=sum(line.platform_fee for line in lines),
                    total_shipping_fee=shipping_fee,
                    currency=settings.SETTLEMENT_CURRENCY,
                )

                # Lock in a stable order so concurrent multi-item checkouts
                # cannot deadlock on each other's products.
                for line in sorted(lines, key=lambda validated: validated.product.pk):
                    ProductLockManager.acquire(line.product, order, now=now)

                created_items = []
                for line in lines:
                    item = OrderItem.objects.create(
                        order=order,
                        product=line.product,
                        seller_id=line.product.seller_id,
                        offer=line.offer,
                        price=line.price,
                        platform_fee=line.platform_fee,
                        fee_percentage=line.fee_percentage,
                    )
                    Transaction.objects.create(
                        order_item=item,
                        buyer=buyer,
                        seller_id=line.product.seller_id,
                        amount=line.price,
                        platform_fee=line.platform_fee,
                        fee_percentage=line.fee_percentage,
                    )
                    created_items.append(item)

                transitions.record(
                    order.pk,
                    StatusHistory.ORDER_STATUS,
                    "",
                    OrderStatus.PENDING,
                    actor=f"buyer:{buyer.pk}",
                    note="created",
                )
        except ConflictError as e:
            logger.warning(
                "Checkout lost product race",
                extra={"buyer_id": buyer.pk, "details": e.details},
            )
            return ServiceResult.from_exception(e)

        logger.info(
            "Order created",
            extra={
                "order_id": str(order.pk),
                "buyer_id": buyer.pk,
                "item_count": len(created_items),
                "seller_count": len(groups),
                "total_amount": order.total_amount,
            },
        )
        return ServiceResult.success(OrderCreationResult(order=order, items=created_items))

    # =========================================================================
    # Validation
    # =========================================================================

    @staticmethod
    def _validate_address(buyer: AbstractBaseUser, shipping_address_id: UUID) -> ShippingAddress:
        if shipping_address_id is None:
            raise OrderValidationError(
                "Shipping address is required",
                details={"shipping_address_id": ["This field is required."]},
            )
        address = ShippingAddress.objects.filter(pk=shipping_address_id).first()
        if address is None:
            raise OrderValidationError(
                "Shipping address not found",
                details={"shipping_address_id": ["Unknown shipping address."]},
            )
        if address.user_id != buyer.pk:
            raise PermissionDeniedError(
                "Shipping address belongs to another user",
                details={"shipping_address_id": str(shipping_address_id)},
            )
        return address

    @classmethod
    def _validate_lines(cls, buyer: AbstractBaseUser, items: list[OrderLineRequest]) -> list[_ValidatedLine]:
        if not items:
            raise OrderValidationError(
                "Order must contain at least one item",
                details={"items": ["Order must contain at least one item."]},
            )

        product_ids = [line.product_id for line in items]
        if len(set(product_ids)) != len(product_ids):
            raise OrderValidationError(
                "Each product may appear only once per order",
                details={"items": ["Duplicate product in order."]},
            )

        return [cls._validate_line(buyer, line) for line in items]

    @staticmethod
    def _validate_line(buyer: AbstractBaseUser, line: OrderLineRequest) -> _ValidatedLine:
        product = Product.objects.select_related("seller").filter(pk=line.product_id).first()
        if product is None:
            raise ProductNotFoundError(
                f"Product {line.product_id} not found",
                details={"product_id": str(line.product_id)},
            )

        reserved = ProductReservation.objects.filter(
            product=product, state=ReservationState.ACTIVE
        ).exists()
        if product.status != ProductStatus.ACTIVE or reserved:
            raise ProductUnavailableError(
                f"Product {product.pk} is not available",
                details={"product_id": str(product.pk), "status": product.status},
            )

        if product.seller_id == buyer.pk:
            raise OrderValidationError(
                "You cannot buy your own product",
                details={"items": [f"Product {product.pk} is your own listing."]},
            )

        if product.currency != settings.SETTLEMENT_CURRENCY:
            raise OrderValidationError(
                "Product is priced in an unsupported currency",
                details={"items": [f"Product {product.pk} is priced in {product.currency}."]},
            )

        account = SellerAccount.objects.filter(user_id=product.seller_id).first()
        if account is None or not account.is_payable:
            raise SellerNotPayableError(
                "Seller cannot receive payouts yet",
                details={"product_id": str(product.pk), "seller_id": product.seller_id},
            )

        offer = None
        price = product.price
        if line.offer_id is not None:
            offer = Offer.objects.filter(pk=line.offer_id).first()
            if (
                offer is None
                or offer.status != OfferStatus.ACCEPTED
                or offer.product_id != product.pk
                or offer.buyer_id != buyer.pk
            ):
                raise OfferInvalidError(
                    "Offer is not valid for this purchase",
                    details={"offer_id": str(line.offer_id), "product_id": str(product.pk)},
                )
            price = offer.amount

        return _ValidatedLine(product=product, offer=offer, price=price)

    # =========================================================================
    # Queries
    # =========================================================================

    @classmethod
    def get_order_summary(cls, order_id: UUID) -> ServiceResult[OrderSummary]:
        order = Order.objects.filter(pk=order_id).first()
        if order is None:
            return ServiceResult.failure(f"Order {order_id} not found", "ORDER_NOT_FOUND")
        return ServiceResult.success(OrderSummary.from_order(order))

    # =========================================================================
    # Fulfilment
    # =========================================================================

    @classmethod
    def mark_item_shipped(
        cls,
        order_item_id: UUID,
        seller: AbstractBaseUser,
        tracking_number: str,
        tracking_url: str | None = None,
    ) -> ServiceResult[OrderSummary]:
        """
        Record that a seller shipped their item.

        Item PROCESSING -> SHIPPED, transaction PAID -> SHIPPED, then the
        order rolls up (SHIPPED once any item ships).
        """
        validation = cls.validate_required(tracking_number=tracking_number)
        if validation is not None:
            return validation

        item = OrderItem.objects.filter(pk=order_item_id).first()
        if item is None:
            return ServiceResult.failure(f"Order item {order_item_id} not found", "ORDER_NOT_FOUND")
        if item.seller_id != seller.pk:
            return ServiceResult.failure(
                "Only the item's seller can mark it shipped",
                "PERMISSION_DENIED",
            )

        actor = f"seller:{seller.pk}"
        try:
            with cls.atomic():
                order = Order.objects.select_for_update().get(pk=item.order_id)
                item = OrderItem.objects.get(pk=order_item_id)
                txn = Transaction.objects.select_for_update().get(order_item=item)
                transitions.ship_item(item, txn, tracking_number.strip(), tracking_url or "", actor=actor)
                transitions.rollup_order_status(order, actor)
        except InvalidStateTransitionError as e:
            cls.get_logger().info(
                "Ship rejected",
                extra={"order_item_id": str(order_item_id), "details": e.details},
            )
            return ServiceResult.from_exception(e)

        cls.get_logger().info(
            "Item shipped",
            extra={"order_id": str(order.pk), "order_item_id": str(item.pk), "tracking_number": tracking_number},
        )
        return ServiceResult.success(OrderSummary.from_order(order))
