import datetime as dt
from typing import Any, Optional

from pydantic import BaseModel, Field, StrictInt, StrictStr

from .reservations import MAX_QUANTITY


class CheckoutItem(BaseModel):
    sku: StrictStr = Field(..., min_length=1)
    quantity: StrictInt = Field(..., ge=1, le=MAX_QUANTITY)


class CheckoutRequest(BaseModel):
    items: list[CheckoutItem] = Field(..., min_length=1)
    success_url: StrictStr
    cancel_url: StrictStr


class CheckoutResponse(BaseModel):
    url: str


class ApiProduct(BaseModel):
    """Public catalog entry. `stock` is left out for unlimited products."""

    sku: str
    name: str
    description: str
    unit_price: int
    price_formatted: str
    currency: str
    stock: Optional[int] = None
    in_stock: bool


class ProductOut(BaseModel):
    id: int
    sku: str
    name: str
    description: str
    unit_price: int
    stock: int
    unlimited: bool
    available_stock: Optional[int] = None
    sold: int
    active: bool
    created: dt.datetime


class ReservationOut(BaseModel):
    id: int
    product_id: int
    quantity: int
    status: str
    created: dt.datetime

    model_config = {"from_attributes": True}


class OrderSummary(BaseModel):
    id: str
    status: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    customer_email: Optional[str] = None
    created: str = ""
    url: Optional[str] = None


class OrderList(BaseModel):
    orders: list[OrderSummary]
    has_more: bool
    next_cursor: Optional[str] = None


class OrderDetail(OrderSummary):
    line_items: list[dict[str, Any]] = []
    metadata: dict[str, str] = {}
    customer_name: Optional[str] = None
    payment_reference: Optional[str] = None
    dashboard_url: Optional[str] = None
    provider_type: Optional[str] = None
    reservations: list[ReservationOut] = []


class RefundResponse(BaseModel):
    session_id: str
    refunded: bool
    restocked: int


class WebhookSetupResponse(BaseModel):
    success: bool
    endpoint_id: Optional[str] = None
    secret: Optional[str] = None
    error: Optional[str] = None


class SweepResponse(BaseModel):
    expired: int


class ActivityOut(BaseModel):
    id: int
    created: dt.datetime
    message: str

    model_config = {"from_attributes": True}
