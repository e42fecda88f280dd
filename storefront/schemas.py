from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
from datetime import datetime
from decimal import Decimal
from storefront.models import OrderStatus, PaymentStatus


class LineItem(BaseModel):
    product_id: str = Field(..., min_length=1, examples=["prod-A"])
    name: str = Field(..., min_length=1)
    image: Optional[str] = None
    price: Decimal = Field(..., ge=0)
    quantity: int = Field(..., gt=0, examples=[2])


class OrderCreate(BaseModel):
    gateway_order_id: str = Field(..., min_length=1, examples=["order_GW123"])
    customer_email: str = Field(..., min_length=3, examples=["jane@example.com"])
    customer_name: Optional[str] = None
    customer_id: Optional[str] = None
    items: List[LineItem] = Field(..., min_length=1)


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    gateway_order_id: str
    customer_id: Optional[str] = None
    customer_email: str
    customer_name: Optional[str] = None
    items: List[LineItem]
    total_amount: Decimal
    payment_status: PaymentStatus
    order_status: OrderStatus
    status_message: Optional[str] = None
    tracking_number: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PaymentConfirmation(BaseModel):
    """Callback payload posted after the customer pays at the gateway."""

    model_config = ConfigDict(populate_by_name=True)

    gateway_order_id: str = Field(..., alias="gatewayOrderId", min_length=1)
    gateway_payment_id: str = Field(..., alias="gatewayPaymentId", min_length=1)
    signature: str = Field(..., pattern=r"^[0-9a-f]{64}$")
    internal_order_id: str = Field(..., alias="internalOrderId", min_length=1)


class VerificationResult(BaseModel):
    success: bool
    message: str
    order_id: str
    verified: bool = True
    already_processed: bool = False
    order_status: Optional[OrderStatus] = None


class StatusUpdate(BaseModel):
    new_status: OrderStatus
    tracking_number: Optional[str] = Field(None, min_length=1)


class StatusUpdateResult(BaseModel):
    success: bool
    message: str
    order: OrderRead
