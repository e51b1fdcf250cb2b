from uuid import UUID
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from storefront.models import OrderStatus


class CheckoutIn(BaseModel):
    cart_id: UUID
    # contact address; required (and used as the order owner) when no X-User-Id is sent
    email: Optional[str] = Field(None, max_length=255)
    idempotency_key: Optional[str] = Field(None, max_length=64)
    tax_cents: int = Field(0, ge=0)
    shipping_cents: int = Field(0, ge=0)
    discount_cents: int = Field(0, ge=0)
    shipping_address: Optional[Dict[str, Any]] = None
    billing_address: Optional[Dict[str, Any]] = None


class PayIn(BaseModel):
    return_url: str = ""
    cancel_url: str = ""


class RefundIn(BaseModel):
    # 0 refunds everything that is left
    amount_cents: int = Field(0, ge=0)
    reason: str = Field("", max_length=255)


class OrderItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    variant_id: UUID
    product_name: str
    sku: str
    unit_price_cents: int
    quantity: int
    line_total_cents: int
    currency: str


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: Optional[UUID] = None
    guest_email: Optional[str] = None
    status: OrderStatus
    currency: str
    subtotal_cents: int
    shipping_cents: int
    tax_cents: int
    discount_cents: int
    total_cents: int
    refunded_cents: int


class OrderDetail(OrderOut):
    paid_at: datetime | None = None
    refunded_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    shipping_address: Optional[Dict[str, Any]] = None
    billing_address: Optional[Dict[str, Any]] = None
    items: List[OrderItemOut] = []


class OrderEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    actor_user_id: Optional[str] = None
    action: str
    from_status: str
    to_status: str
    note: Optional[str] = None
    created_at: datetime


class LedgerEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    event: Literal["payment_succeeded", "refund_succeeded", "refund_failed"]
    amount_cents: int
    currency: str
    ref_type: Literal["payment", "refund"]
    ref_id: UUID


class LedgerSummaryOut(BaseModel):
    order_id: UUID
    inflow_cents: int
    outflow_cents: int
    net_cents: int
    entries: int


# --- service results ---

class CreateOrderResult(BaseModel):
    order_id: UUID
    status: OrderStatus
    total_cents: int
    currency: str
    idempotent: bool = False


class PayOrderResult(BaseModel):
    order_id: UUID
    payment_id: UUID
    status: Literal["initiated", "succeeded", "failed"]
    idempotent: bool = False
    redirect_url: Optional[str] = None


class RefundOrderResult(BaseModel):
    order_id: UUID
    refund_id: UUID
    status: Literal["initiated", "succeeded", "failed"]
    amount_cents: int
    idempotent: bool = False
