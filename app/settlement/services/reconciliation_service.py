"""
Reconciliation sweep for checkouts and transfers left half-finished.

Webhooks get lost, buyers close the tab, workers crash between a gateway
call and the database write. The sweep finds the state those leave
behind and repairs it through the same transition primitives the live
paths use.

Stale product sweep (products PENDING_PAYMENT longer than the checkout
timeout):
    paid transaction exists       -> product SOLD, reservation CONSUMED
    pending transaction + intent  -> ask the gateway; succeeded means the
                                     webhook was lost, so apply the payment
    pending transaction otherwise -> abandon the order (escrow closed as
                                     REFUNDED, products back to ACTIVE)
    no transaction                -> product back to ACTIVE

Stuck release sweep:
    escrow RELEASED with no transfer_ref for too long -> re-queue the transfer

Usage:
    from settlement.services import ReconciliationService

    result = ReconciliationService.run()
    if result.data.skipped:
        ...  # another sweep holds the lock
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.utils import timezone

from core.services import BaseService, ServiceResult

from settlement.adapters import INTENT_SUCCEEDED, get_payment_gateway
from settlement.exceptions import GatewayError, InconsistentStateError, LockAcquisitionError, StaleRecordError
from settlement.locks import DistributedLock, check_version
from settlement.models import Order, Product, ReconciliationRun, Transaction
from settlement.reservations import ProductLockManager
from settlement.services.escrow_service import EscrowService
from settlement.services.payment_service import PaymentService
from settlement.state_machines import OrderStatus, ProductStatus, ReservationState, TransactionStatus
from settlement.state_machines import transitions

if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID

    from settlement.adapters import PaymentGateway


# =============================================================================
# Constants
# =============================================================================

RECONCILIATION_LOCK_KEY = "reconciliation:sweep"

# Longer than any realistic sweep; a crashed sweep frees the lock on its own
RECONCILIATION_LOCK_TTL = 600

# Product outcomes
FINALIZED = "finalized"
RELEASED = "released"
VERIFIED_PAID = "verified_paid"
ABANDONED = "abandoned"
SKIPPED = "skipped"

_PAID_TRANSACTION_STATUSES = (
    TransactionStatus.PAID,
    TransactionStatus.SHIPPED,
    TransactionStatus.DELIVERED,
)


@dataclass
class ReconciliationReport:
    """Counters from one sweep; skipped=True when another sweep was running."""

    skipped: bool = False
    run_id: UUID | None = None
    status: str | None = None
    products_scanned: int = 0
    products_finalized: int = 0
    products_released: int = 0
    orders_verified: int = 0
    transfers_requeued: int = 0
    errors: list[dict] = field(default_factory=list)

    @classmethod
    def from_run(cls, run: ReconciliationRun) -> ReconciliationReport:
        return cls(
            run_id=run.pk,
            status=run.status,
            products_scanned=run.products_scanned,
            products_finalized=run.products_finalized,
            products_released=run.products_released,
            orders_verified=run.orders_verified,
            transfers_requeued=run.transfers_requeued,
            errors=list(run.errors),
        )


class ReconciliationService(BaseService):
    """Periodic repair of settlement state."""

    @classmethod
    def run(
        cls,
        now: datetime | None = None,
        gateway: PaymentGateway | None = None,
    ) -> ServiceResult[ReconciliationReport]:
        """
        Run one sweep under the global reconciliation lock.

        A failure on one product is recorded on the run and the sweep
        moves on. Only an error outside the per-product handling marks
        the run FAILED (and is re-raised).
        """
        logger = cls.get_logger()
        now = now or timezone.now()

        lock = DistributedLock(RECONCILIATION_LOCK_KEY, ttl=RECONCILIATION_LOCK_TTL, blocking=False)
        try:
            lock.acquire()
        except LockAcquisitionError:
            logger.info("Reconciliation already running; skipping this run")
            return ServiceResult.success(ReconciliationReport(skipped=True))

        try:
            gateway = gateway or get_payment_gateway()
            run = ReconciliationRun.objects.create(started_at=now)
            logger.info("Reconciliation started", extra={"run_id": str(run.pk)})

            try:
                cls._sweep_stale_products(run, now, gateway, lock)
                cls._sweep_stuck_releases(run, now)
            except Exception as e:
                run.fail(str(e))
                run.save()
                logger.exception("Reconciliation run failed", extra={"run_id": str(run.pk)})
                raise

            run.complete()
            run.save()
        finally:
            lock.release()

        report = ReconciliationReport.from_run(run)
        logger.info(
            "Reconciliation completed",
            extra={
                "run_id": str(run.pk),
                "products_scanned": report.products_scanned,
                "products_finalized": report.products_finalized,
                "products_released": report.products_released,
                "orders_verified": report.orders_verified,
                "transfers_requeued": report.transfers_requeued,
                "error_count": len(report.errors),
            },
        )
        return ServiceResult.success(report)

    # =========================================================================
    # Stale Product Sweep
    # =========================================================================

    @staticmethod
    def stale_cutoff(now: datetime) -> datetime:
        return now - timedelta(minutes=settings.SETTLEMENT_CHECKOUT_TIMEOUT_MINUTES)

    @classmethod
    def _sweep_stale_products(
        cls,
        run: ReconciliationRun,
        now: datetime,
        gateway: PaymentGateway,
        lock: DistributedLock,
    ) -> None:
        logger = cls.get_logger()
        product_ids = list(
            Product.objects.filter(
                status=ProductStatus.PENDING_PAYMENT,
                updated_at__lt=cls.stale_cutoff(now),
            )
            .order_by("updated_at")
            .values_list("pk", flat=True)
        )

        for product_id in product_ids:
            # Each product may wait on the gateway; keep the sweep lock alive
            if not lock.extend():
                logger.warning(
                    "Reconciliation lock lost; stopping product sweep",
                    extra={"run_id": str(run.pk), "remaining": len(product_ids) - run.products_scanned},
                )
                break
            run.products_scanned += 1
            try:
                action, count = cls.reconcile_product(product_id, now, gateway)
            except Exception as e:
                logger.exception(
                    "Failed to reconcile product",
                    extra={"run_id": str(run.pk), "product_id": str(product_id)},
                )
                run.record_error(product_id, f"{type(e).__name__}: {e}")
                continue

            if action == FINALIZED:
                run.products_finalized += count
            elif action in (RELEASED, ABANDONED):
                run.products_released += count
            elif action == VERIFIED_PAID:
                run.orders_verified += 1
                run.products_finalized += count

        run.save()

    @classmethod
    def reconcile_product(
        cls,
        product_id: UUID,
        now: datetime,
        gateway: PaymentGateway,
    ) -> tuple[str, int]:
        """
        Repair one product stuck in PENDING_PAYMENT.

        Returns:
            (action, products affected)

        Raises:
            InconsistentStateError: The gateway says paid but the payment
                could not be applied
        """
        logger = cls.get_logger()

        with cls.atomic():
            product = Product.objects.select_for_update().filter(pk=product_id).first()
            if (
                product is None
                or product.status != ProductStatus.PENDING_PAYMENT
                or product.updated_at >= cls.stale_cutoff(now)
            ):
                return SKIPPED, 0

            transactions = Transaction.objects.filter(order_item__product=product)
            if transactions.filter(status__in=_PAID_TRANSACTION_STATUSES).exists():
                ProductLockManager.consume_for_product(product.pk, now=now)
                logger.info("Stale lock finalized as sold", extra={"product_id": str(product.pk)})
                return FINALIZED, 1

            pending = (
                transactions.filter(status=TransactionStatus.PENDING)
                .select_related("order_item__order")
                .order_by("-created_at")
                .first()
            )
            if pending is None:
                moved = ProductLockManager.release_product(product.pk, "no transaction", now=now)
                logger.info("Orphaned lock released", extra={"product_id": str(product.pk)})
                return RELEASED, int(moved)

            order = pending.order_item.order
            intent_id = order.payment_intent_ref
            order_version = order.version

        # Ask the gateway before giving up on the checkout (outside the row lock).
        if intent_id:
            try:
                status = gateway.confirm_intent(intent_id)
            except GatewayError as e:
                logger.warning(
                    "Could not verify payment; retrying next run",
                    extra={"order_id": str(order.pk), "intent_id": intent_id, "error_code": e.error_code},
                )
                return SKIPPED, 0

            if status == INTENT_SUCCEEDED:
                result = PaymentService.apply_payment_succeeded(
                    intent_id, source="reconciliation", gateway=gateway
                )
                if not result.success:
                    raise InconsistentStateError(
                        f"Gateway reports intent {intent_id} paid but it could not be applied: {result.error}",
                        details={"order_id": str(order.pk), "error_code": result.error_code},
                    )
                logger.warning(
                    "Recovered payment with missing webhook",
                    extra={"order_id": str(order.pk), "intent_id": intent_id},
                )
                return VERIFIED_PAID, order.items.count()

        with cls.atomic():
            try:
                order = check_version(Order, order.pk, expected_version=order_version)
            except StaleRecordError:
                logger.info(
                    "Order changed while verifying payment; retrying next run",
                    extra={"order_id": str(order.pk), "intent_id": intent_id},
                )
                return SKIPPED, 0
            if order.status != OrderStatus.PENDING:
                return SKIPPED, 0
            held = order.reservations.filter(
                state=ReservationState.ACTIVE, product__status=ProductStatus.PENDING_PAYMENT
            ).count()
            transitions.abandon_order(order, reason="checkout abandoned", actor="reconciliation")

        logger.info(
            "Abandoned checkout closed",
            extra={"order_id": str(order.pk), "products_released": held},
        )
        return ABANDONED, held

    # =========================================================================
    # Stuck Release Sweep
    # =========================================================================

    @classmethod
    def _sweep_stuck_releases(cls, run: ReconciliationRun, now: datetime) -> None:
        from settlement.workers.escrow_worker import release_single_escrow

        for item_id in EscrowService.find_stuck_releases(now).values_list("pk", flat=True):
            release_single_escrow.delay(str(item_id))
            run.transfers_requeued += 1
            cls.get_logger().warning(
                "Re-queued stuck escrow release",
                extra={"run_id": str(run.pk), "order_item_id": str(item_id)},
            )
        run.save()
