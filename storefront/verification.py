"""Payment confirmation workflow.

signature check -> order lookup (idempotency guard) -> stock reservation ->
final status write. Authentication and lookup failures leave no trace;
a stock shortage ends with the order cleanly cancelled.
"""

import structlog

from storefront.exceptions import (
    AuthenticationFailure, InsufficientStock, OrderNotFound, ReservationInProgress,
)
from storefront.lifecycle import OrderLifecycleManager
from storefront.models import OrderStatus
from storefront.orders import OrderStore
from storefront.reservation import ReservationCoordinator
from storefront.schemas import PaymentConfirmation, VerificationResult
from storefront.signature import verify_signature

logger = structlog.get_logger(__name__)


class PaymentVerificationService:
    def __init__(self, secret: str, orders: OrderStore,
                 reservations: ReservationCoordinator, lifecycle: OrderLifecycleManager):
        self.secret = secret
        self.orders = orders
        self.reservations = reservations
        self.lifecycle = lifecycle

    async def verify(self, confirmation: PaymentConfirmation) -> VerificationResult:
        order_id = confirmation.internal_order_id
        log = logger.bind(order_id=order_id, gateway_order_id=confirmation.gateway_order_id)

        if not verify_signature(self.secret, confirmation.gateway_order_id,
                                confirmation.gateway_payment_id, confirmation.signature):
            log.warning("Payment confirmation rejected: invalid signature")
            raise AuthenticationFailure("Payment verification failed: invalid signature")

        order = await self.orders.find_by_references(order_id, confirmation.gateway_order_id)
        if order is None:
            log.error("Verified payment has no matching order, reconciliation required",
                      gateway_payment_id=confirmation.gateway_payment_id)
            raise OrderNotFound(order_id, confirmation.gateway_order_id)

        if order.order_status != OrderStatus.PENDING:
            log.info("Duplicate confirmation ignored", order_status=order.order_status.value)
            return self._already_processed(order_id, order.order_status)

        try:
            saga_id = await self.reservations.reserve(order)
        except ReservationInProgress:
            current = await self.orders.get(order_id)
            if current is not None and current.order_status != OrderStatus.PENDING:
                log.info("Confirmation raced another delivery, ignored", order_status=current.order_status.value)
                return self._already_processed(order_id, current.order_status)
            # Still pending: the gateway must keep redelivering
            log.warning("Reservation held by another delivery, asking the gateway to retry")
            raise
        except InsufficientStock as e:
            message = (
                f"Payment received, but {e.product_name} is no longer available in the requested "
                f"quantity. Your order has been cancelled."
            )
            await self.lifecycle.mark_reservation_failed(
                order, confirmation.gateway_payment_id, confirmation.signature, message
            )
            log.warning("Order cancelled for insufficient stock", product_id=e.product_id)
            return VerificationResult(
                success=False,
                message=message,
                order_id=order_id,
                order_status=OrderStatus.CANCELLED,
            )

        if not await self.lifecycle.mark_paid(order, confirmation.gateway_payment_id, confirmation.signature):
            # The order left pending while we reserved (e.g. cancelled by an admin)
            log.warning("Order changed during reservation, releasing stock", saga_id=saga_id)
            await self.reservations.release(saga_id)
            current = await self.orders.get(order_id)
            return self._already_processed(order_id, current.order_status if current else None)

        await self.reservations.complete(saga_id)
        log.info("Payment verified and stock reserved", saga_id=saga_id)
        return VerificationResult(
            success=True,
            message="Payment verified, order updated, and stock reserved.",
            order_id=order_id,
            order_status=OrderStatus.PROCESSING,
        )

    @staticmethod
    def _already_processed(order_id: str, order_status) -> VerificationResult:
        return VerificationResult(
            success=True,
            message="Payment already confirmed.",
            order_id=order_id,
            already_processed=True,
            order_status=order_status,
        )
