from contextlib import asynccontextmanager
from typing import List, Optional

import structlog
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import async_sessionmaker

from storefront import config, messaging
from storefront.database import engine_of, get_session_factory, init_db
from storefront.exceptions import (
    AuthenticationFailure, CompensationFailure, InvalidTransition, OrderNotFound, ReservationInProgress,
    StorageFailure,
)
from storefront.inventory import InventoryStore
from storefront.lifecycle import OrderLifecycleManager, StatusNotifier
from storefront.models import OrderStatus
from storefront.orders import OrderStore
from storefront.recovery import run_recovery
from storefront.reservation import ReservationCoordinator
from storefront.schemas import (
    OrderCreate, OrderRead, PaymentConfirmation, StatusUpdate, StatusUpdateResult, VerificationResult,
)
from storefront.utils.logging import configure_logging
from storefront.verification import PaymentVerificationService

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    if not config.PAYMENT_GATEWAY_SECRET:
        logger.error("PAYMENT_GATEWAY_SECRET is not configured, every payment confirmation will be rejected")
    session_factory = get_session_factory()
    await init_db(engine_of(session_factory))
    await messaging.setup_rabbitmq()
    await run_recovery(session_factory)
    yield
    await messaging.close_rabbitmq()
    await engine_of(session_factory).dispose()


app = FastAPI(title="Storefront Checkout Service", lifespan=lifespan)


# --- Dependencies ---

def get_notifier() -> StatusNotifier:
    return messaging.notify_status_change


def get_gateway_secret() -> str:
    return config.PAYMENT_GATEWAY_SECRET


def get_order_store(session_factory: async_sessionmaker = Depends(get_session_factory)) -> OrderStore:
    return OrderStore(session_factory)


def get_lifecycle(session_factory: async_sessionmaker = Depends(get_session_factory),
                  notify: StatusNotifier = Depends(get_notifier)) -> OrderLifecycleManager:
    coordinator = ReservationCoordinator(session_factory, InventoryStore(session_factory))
    return OrderLifecycleManager(OrderStore(session_factory), coordinator, notify)


def get_verification_service(lifecycle: OrderLifecycleManager = Depends(get_lifecycle),
                             secret: str = Depends(get_gateway_secret)) -> PaymentVerificationService:
    return PaymentVerificationService(secret, lifecycle.orders, lifecycle.reservations, lifecycle)


# --- Error mapping ---

@app.exception_handler(AuthenticationFailure)
async def authentication_failure_handler(request: Request, exc: AuthenticationFailure):
    return JSONResponse(status_code=401, content={"success": False, "verified": False, "message": str(exc)})


@app.exception_handler(OrderNotFound)
async def order_not_found_handler(request: Request, exc: OrderNotFound):
    message = str(exc)
    if exc.gateway_order_id:
        message = "Payment verified, but the order was not found. Please contact support."
    return JSONResponse(status_code=404, content={"success": False, "order_id": exc.order_id, "message": message})


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    return JSONResponse(status_code=409, content={"success": False, "message": str(exc)})


@app.exception_handler(ReservationInProgress)
async def reservation_in_progress_handler(request: Request, exc: ReservationInProgress):
    return JSONResponse(status_code=409, content={
        "success": False,
        "order_id": exc.order_id,
        "message": "Payment is still being processed for this order, please retry.",
    })


@app.exception_handler(StorageFailure)
async def storage_failure_handler(request: Request, exc: StorageFailure):
    return JSONResponse(status_code=503, content={"success": False, "message": "Storage unavailable, please retry."})


@app.exception_handler(CompensationFailure)
async def compensation_failure_handler(request: Request, exc: CompensationFailure):
    logger.critical("Compensation failure escalated to caller", saga_id=exc.saga_id, product_id=exc.product_id)
    return JSONResponse(status_code=500, content={"success": False, "message": "Order needs operator attention."})


# --- Routes ---

@app.post("/api/payments/verify", response_model=VerificationResult)
async def verify_payment(confirmation: PaymentConfirmation,
                         service: PaymentVerificationService = Depends(get_verification_service)):
    return await service.verify(confirmation)


@app.post("/api/orders", response_model=OrderRead, status_code=201)
async def create_order(order_data: OrderCreate, orders: OrderStore = Depends(get_order_store)):
    try:
        new_order = await orders.create_order(order_data)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return OrderRead.model_validate(new_order)


@app.get("/api/orders", response_model=List[OrderRead])
async def get_orders(status: Optional[OrderStatus] = None, orders: OrderStore = Depends(get_order_store)):
    return [OrderRead.model_validate(order) for order in await orders.list_orders(status)]


@app.get("/api/orders/{order_id}", response_model=OrderRead)
async def get_order(order_id: str, orders: OrderStore = Depends(get_order_store)):
    order = await orders.get(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return OrderRead.model_validate(order)


@app.patch("/api/orders/{order_id}/status", response_model=StatusUpdateResult)
async def update_order_status(order_id: str, update: StatusUpdate,
                              lifecycle: OrderLifecycleManager = Depends(get_lifecycle)):
    order = await lifecycle.transition(order_id, update.new_status, update.tracking_number)
    return StatusUpdateResult(
        success=True,
        message=f"Order status successfully updated to {update.new_status.value}.",
        order=OrderRead.model_validate(order),
    )


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
