"""Error kinds raised by the payment confirmation workflow."""

from typing import Optional


class CheckoutError(Exception):
    """Base class for every failure the workflow reports to its caller."""


class AuthenticationFailure(CheckoutError):
    """The confirmation signature did not match. Nothing was mutated."""


class OrderNotFound(CheckoutError):
    """A verified confirmation references an order we do not have.

    The gateway believes a charge happened, so this needs manual reconciliation.
    """

    def __init__(self, order_id: str, gateway_order_id: Optional[str] = None):
        self.order_id = order_id
        self.gateway_order_id = gateway_order_id
        if gateway_order_id:
            super().__init__(f"Order {order_id} with gateway reference {gateway_order_id} not found")
        else:
            super().__init__(f"Order {order_id} not found")


class ReservationInProgress(CheckoutError):
    """Another delivery holds the reservation claim while the order is still pending.

    The gateway should redeliver; a claim abandoned by a crash or a failed
    compensation is resolved once it is older than the recovery grace period.
    """

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Reservation for order {order_id} is still in progress")


class InsufficientStock(CheckoutError):
    def __init__(self, product_id: str, product_name: Optional[str] = None):
        self.product_id = product_id
        self.product_name = product_name or product_id
        super().__init__(f"Insufficient stock for {self.product_name}")


class StorageFailure(CheckoutError):
    """A lookup or conditional write failed at the storage layer."""


class CompensationFailure(CheckoutError):
    """A compensating increment could not be applied; stock is short until an operator intervenes."""

    def __init__(self, saga_id: str, product_id: str, quantity: int):
        self.saga_id = saga_id
        self.product_id = product_id
        self.quantity = quantity
        super().__init__(
            f"Could not restore {quantity} unit(s) of {product_id} for saga {saga_id}"
        )


class InvalidTransition(CheckoutError):
    def __init__(self, order_id: str, current: str, requested: str, reason: Optional[str] = None):
        self.order_id = order_id
        self.current = current
        self.requested = requested
        message = f"Order {order_id} cannot move from {current} to {requested}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
