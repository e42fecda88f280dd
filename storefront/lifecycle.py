from typing import Awaitable, Callable, Dict, FrozenSet, Optional

import structlog

from storefront.exceptions import InvalidTransition, OrderNotFound
from storefront.messaging import notify_status_change
from storefront.models import Order, OrderStatus, PaymentStatus
from storefront.orders import OrderStore
from storefront.reservation import ReservationCoordinator

logger = structlog.get_logger(__name__)

StatusNotifier = Callable[[str, str, OrderStatus, Optional[str]], Awaitable[None]]

# Full state machine; delivered and cancelled are terminal
TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# pending -> processing only happens through payment verification
ADMIN_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    **TRANSITIONS,
    OrderStatus.PENDING: frozenset({OrderStatus.CANCELLED}),
}


class OrderLifecycleManager:
    """Applies verified payment outcomes and admin transitions to orders.

    Every accepted transition is announced through ``notify``; a failing
    notifier never undoes the transition.
    """

    def __init__(self, orders: OrderStore, reservations: ReservationCoordinator,
                 notify: StatusNotifier = notify_status_change):
        self.orders = orders
        self.reservations = reservations
        self.notify = notify

    async def mark_paid(self, order: Order, gateway_payment_id: str, signature: str) -> bool:
        """pending -> processing with payment paid. False if the order already moved."""
        applied = await self.orders.update_status(
            order.id,
            PaymentStatus.PAID,
            OrderStatus.PROCESSING,
            expected_status=OrderStatus.PENDING,
            gateway_payment_id=gateway_payment_id,
            gateway_signature=signature,
            status_message=None,
        )
        if applied:
            await self._emit(order, OrderStatus.PROCESSING)
        return bool(applied)

    async def mark_reservation_failed(self, order: Order, gateway_payment_id: str,
                                      signature: str, message: str) -> bool:
        """pending -> cancelled with payment failed, keeping the message for the customer."""
        applied = await self.orders.update_status(
            order.id,
            PaymentStatus.FAILED,
            OrderStatus.CANCELLED,
            expected_status=OrderStatus.PENDING,
            gateway_payment_id=gateway_payment_id,
            gateway_signature=signature,
            status_message=message,
        )
        if applied:
            await self._emit(order, OrderStatus.CANCELLED)
        return bool(applied)

    async def transition(self, order_id: str, new_status: OrderStatus,
                         tracking_number: Optional[str] = None) -> Order:
        """Admin-driven move: processing -> shipped -> delivered, or cancellation.

        Cancelling a processing order puts its reserved stock back. Payment
        status is left alone; refunds are issued at the gateway.
        """
        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)

        current = order.order_status
        if new_status not in ADMIN_TRANSITIONS[current]:
            raise InvalidTransition(order_id, current.value, new_status.value)
        if new_status == OrderStatus.SHIPPED and not tracking_number:
            raise InvalidTransition(order_id, current.value, new_status.value,
                                    "a tracking reference is required")

        extra = {}
        if new_status == OrderStatus.SHIPPED:
            extra["tracking_number"] = tracking_number
        elif new_status == OrderStatus.CANCELLED:
            extra["status_message"] = "Order cancelled by the store"

        applied = await self.orders.update_status(
            order_id, order.payment_status, new_status, expected_status=current, **extra
        )
        if not applied:
            raise InvalidTransition(order_id, current.value, new_status.value,
                                    "the order changed while updating")

        await self._emit(order, new_status, tracking_number if new_status == OrderStatus.SHIPPED else None)

        if new_status == OrderStatus.CANCELLED and current == OrderStatus.PROCESSING:
            await self.reservations.release_for_order(order_id)

        return await self.orders.get(order_id)

    async def _emit(self, order: Order, new_status: OrderStatus, tracking_number: Optional[str] = None):
        try:
            await self.notify(order.customer_email, order.id, new_status, tracking_number)
        except Exception as e:
            logger.error("Status notification failed", order_id=order.id,
                         new_status=new_status.value, error=str(e))
