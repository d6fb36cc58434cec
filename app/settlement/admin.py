"""
Settlement admin configuration.

Read-mostly: order, escrow and product lock states are changed through the
service layer, never by editing rows here. Fee tiers and seller accounts
are the operator-editable configuration.
"""

from django.contrib import admin

from settlement.models import (
    EscrowRelease,
    FeeTier,
    Order,
    OrderItem,
    Product,
    ProductReservation,
    ReconciliationRun,
    SellerAccount,
    StatusHistory,
    Transaction,
    WebhookEvent,
)


class AuditTrailAdmin(admin.ModelAdmin):
    """Rows that are part of the money trail: no add, no delete."""

    def has_add_permission(self, request, obj=None) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


# =============================================================================
# Configuration
# =============================================================================


@admin.register(FeeTier)
class FeeTierAdmin(admin.ModelAdmin):
    list_display = ["trust_tier", "min_price", "max_price", "fee_percentage", "is_active"]
    list_filter = ["trust_tier", "is_active"]
    ordering = ["trust_tier", "min_price"]


@admin.register(SellerAccount)
class SellerAccountAdmin(admin.ModelAdmin):
    list_display = ["user", "gateway_account_ref", "payouts_enabled", "trust_tier", "created_at"]
    list_filter = ["payouts_enabled", "trust_tier"]
    search_fields = ["user__username", "user__email", "gateway_account_ref"]
    readonly_fields = ["id", "created_at", "updated_at"]


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    """
    Product status is owned by the lock manager; it is read-only here so
    an operator cannot put a product back on sale mid-checkout.
    """

    list_display = ["title", "seller", "price", "currency", "status", "sold_at", "updated_at"]
    list_filter = ["status", "currency"]
    search_fields = ["id", "title", "seller__username"]
    readonly_fields = ["id", "status", "sold_at", "created_at", "updated_at"]


# =============================================================================
# Orders & Escrow
# =============================================================================


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    can_delete = False
    readonly_fields = [
        "id",
        "product",
        "seller",
        "price",
        "platform_fee",
        "fee_percentage",
        "status",
        "escrow_status",
    ]

    def has_add_permission(self, request, obj=None) -> bool:
        return False


class StatusHistoryInline(admin.TabularInline):
    model = StatusHistory
    extra = 0
    can_delete = False
    readonly_fields = ["created_at", "field", "from_status", "to_status", "actor", "order_item", "note"]

    def has_add_permission(self, request, obj=None) -> bool:
        return False


@admin.register(Order)
class OrderAdmin(AuditTrailAdmin):
    list_display = ["id", "buyer", "total_amount", "currency", "status", "paid_at", "created_at"]
    list_filter = ["status", "currency", "created_at"]
    search_fields = ["id", "payment_intent_ref", "buyer__username", "buyer__email"]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]
    inlines = [OrderItemInline, StatusHistoryInline]
    readonly_fields = [
        "id",
        "buyer",
        "shipping_address",
        "status",
        "total_amount",
        "total_platform_fee",
        "total_shipping_fee",
        "currency",
        "payment_intent_ref",
        "paid_at",
        "shipped_at",
        "delivered_at",
        "cancelled_at",
        "expired_at",
        "refunded_at",
        "cancellation_reason",
        "metadata",
        "version",
        "created_at",
        "updated_at",
    ]

    fieldsets = (
        (None, {"fields": ("id", "buyer", "shipping_address", "status")}),
        (
            "Amounts",
            {"fields": ("total_amount", "total_platform_fee", "total_shipping_fee", "currency")},
        ),
        ("Payment", {"fields": ("payment_intent_ref",)}),
        (
            "State Timestamps",
            {
                "fields": (
                    "paid_at",
                    "shipped_at",
                    "delivered_at",
                    "cancelled_at",
                    "expired_at",
                    "refunded_at",
                    "cancellation_reason",
                ),
                "classes": ("collapse",),
            },
        ),
        ("Metadata", {"fields": ("metadata", "version"), "classes": ("collapse",)}),
        ("Timestamps", {"fields": ("created_at", "updated_at")}),
    )


class EscrowReleaseInline(admin.TabularInline):
    model = EscrowRelease
    extra = 0
    can_delete = False
    readonly_fields = ["kind", "amount", "status", "gateway_ref", "reason", "completed_at", "created_at"]

    def has_add_permission(self, request, obj=None) -> bool:
        return False


@admin.register(Transaction)
class TransactionAdmin(AuditTrailAdmin):
    list_display = [
        "id",
        "order_item",
        "seller",
        "amount",
        "platform_fee",
        "status",
        "escrow_status",
        "dispute_status",
        "transfer_attempts",
        "is_escalated",
    ]
    list_filter = ["status", "escrow_status", "dispute_status"]
    search_fields = ["id", "transfer_ref", "refund_ref", "tracking_number"]
    inlines = [EscrowReleaseInline]
    readonly_fields = [
        "id",
        "order_item",
        "buyer",
        "seller",
        "amount",
        "platform_fee",
        "fee_percentage",
        "status",
        "escrow_status",
        "tracking_number",
        "tracking_url",
        "delivery_evidence",
        "paid_at",
        "shipped_at",
        "delivered_at",
        "released_at",
        "transfer_ref",
        "refund_ref",
        "transfer_attempts",
        "last_transfer_error",
        "last_transfer_error_code",
        "escalated_at",
        "version",
        "created_at",
        "updated_at",
    ]

    @admin.display(description="Escalated", boolean=True)
    def is_escalated(self, obj: Transaction) -> bool:
        return obj.escalated_at is not None


@admin.register(ProductReservation)
class ProductReservationAdmin(AuditTrailAdmin):
    list_display = ["product", "order", "state", "expires_at", "released_at", "release_reason"]
    list_filter = ["state"]
    search_fields = ["product__id", "order__id"]
    readonly_fields = ["id", "product", "order", "state", "expires_at", "released_at", "release_reason", "created_at"]


# =============================================================================
# Operations
# =============================================================================


@admin.register(WebhookEvent)
class WebhookEventAdmin(AuditTrailAdmin):
    list_display = ["gateway_event_id", "event_type", "status", "retry_count", "processed_at", "created_at"]
    list_filter = ["status", "event_type"]
    search_fields = ["gateway_event_id"]
    readonly_fields = [
        "id",
        "gateway_event_id",
        "event_type",
        "payload",
        "status",
        "processed_at",
        "error_message",
        "retry_count",
        "created_at",
        "updated_at",
    ]


@admin.register(ReconciliationRun)
class ReconciliationRunAdmin(AuditTrailAdmin):
    list_display = [
        "started_at",
        "status",
        "products_scanned",
        "products_finalized",
        "products_released",
        "orders_verified",
        "transfers_requeued",
        "error_count",
    ]
    list_filter = ["status"]
    ordering = ["-started_at"]
    readonly_fields = [
        "id",
        "status",
        "started_at",
        "completed_at",
        "products_scanned",
        "products_finalized",
        "products_released",
        "orders_verified",
        "transfers_requeued",
        "errors",
    ]

    @admin.display(description="Errors")
    def error_count(self, obj: ReconciliationRun) -> int:
        return len(obj.errors or [])
