from sqlalchemy import (
    Column, String, Integer, Numeric, DateTime, Enum, JSON, ForeignKey,
    CheckConstraint, Index, text,
)
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone
import enum

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_column(enum_cls):
    # Store the lowercase values, not the member names
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=20,
    )


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class SagaState(str, enum.Enum):
    RESERVING = "reserving"
    RESERVED = "reserved"
    COMPLETED = "completed"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"
    RELEASED = "released"
    ABORTED = "aborted"


class StepState(str, enum.Enum):
    COMMITTED = "committed"
    COMPENSATED = "compensated"


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, index=True)
    gateway_order_id = Column(String, unique=True, index=True, nullable=False)
    customer_id = Column(String, index=True, nullable=True)
    customer_email = Column(String, nullable=False)
    customer_name = Column(String, nullable=True)
    items = Column(JSON, nullable=False)  # line item snapshots, immutable after creation
    total_amount = Column(Numeric(12, 2), nullable=False)
    payment_status = Column(_enum_column(PaymentStatus), default=PaymentStatus.PENDING, nullable=False)
    order_status = Column(_enum_column(OrderStatus), default=OrderStatus.PENDING, nullable=False)
    status_message = Column(String, nullable=True)
    tracking_number = Column(String, nullable=True)
    gateway_payment_id = Column(String, nullable=True)
    gateway_signature = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),)

    id = Column(String, primary_key=True, index=True)
    name = Column(String, nullable=False)
    stock = Column(Integer, nullable=False, default=0)


class ReservationSaga(Base):
    __tablename__ = "reservation_sagas"
    __table_args__ = (
        # One live saga per order; the insert is the processing claim
        Index(
            "uq_reservation_sagas_live_order",
            "order_id",
            unique=True,
            sqlite_where=text("state != 'aborted'"),
            postgresql_where=text("state != 'aborted'"),
        ),
    )

    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    state = Column(_enum_column(SagaState), default=SagaState.RESERVING, nullable=False)
    items = Column(JSON, nullable=False)  # intent: [{"product_id", "quantity"}]
    failed_product_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class ReservationStep(Base):
    __tablename__ = "reservation_steps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    saga_id = Column(String, ForeignKey("reservation_sagas.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    product_id = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    state = Column(_enum_column(StepState), default=StepState.COMMITTED, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
