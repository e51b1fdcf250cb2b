# storefront/models.py
from datetime import datetime, timezone
import enum
from uuid import uuid4

from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, Enum, ForeignKey, Integer,
    String, CHAR, JSON, Text, UniqueConstraint, Uuid, Index
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class OrderStatus(str, enum.Enum):
    CREATED = "created"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"


class PaymentStatus(str, enum.Enum):
    INITIATED = "initiated"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def now_utc():
    return datetime.now(timezone.utc)


def _enum(cls, name):
    # store the lowercase values, not the member names
    return Enum(cls, name=name, native_enum=False, length=32,
                values_callable=lambda e: [m.value for m in e])


class Product(Base):
    __tablename__ = "products"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    variants = relationship("ProductVariant", back_populates="product")


class ProductVariant(Base):
    __tablename__ = "product_variants"

    id = Column(Uuid, primary_key=True, default=uuid4)
    product_id = Column(Uuid, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    sku = Column(String(64), nullable=False, unique=True)
    price_cents = Column(Integer, nullable=False)
    currency = Column(CHAR(3), nullable=False)
    stock = Column(Integer, nullable=False, default=0)

    product = relationship("Product", back_populates="variants")

    __table_args__ = (
        CheckConstraint("stock >= 0", name="variants_stock_nonneg"),
        CheckConstraint("price_cents >= 0", name="variants_price_nonneg"),
    )


class Cart(Base):
    __tablename__ = "carts"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    items = relationship("CartItem", back_populates="cart")


class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Uuid, primary_key=True, default=uuid4)
    cart_id = Column(Uuid, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False)
    # no FK: a deleted variant must surface as ProductUnavailable at checkout
    variant_id = Column(Uuid, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)

    cart = relationship("Cart", back_populates="items")

    __table_args__ = (
        UniqueConstraint("cart_id", "variant_id", name="cart_items_cart_variant_unique"),
    )


class Order(Base):
    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, nullable=True, index=True)
    guest_email = Column(String(255), nullable=True)
    status = Column(_enum(OrderStatus, "order_status"), nullable=False, default=OrderStatus.CREATED)
    currency = Column(CHAR(3), nullable=False)

    subtotal_cents = Column(Integer, nullable=False)
    shipping_cents = Column(Integer, nullable=False, default=0)
    tax_cents = Column(Integer, nullable=False, default=0)
    discount_cents = Column(Integer, nullable=False, default=0)
    total_cents = Column(Integer, nullable=False)
    refunded_cents = Column(Integer, nullable=False, default=0)

    shipping_address = Column(JSON, nullable=True)
    billing_address = Column(JSON, nullable=True)

    idempotency_key = Column(String(64), nullable=True)
    cart_fingerprint = Column(Text, nullable=True)

    paid_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.sku")

    __table_args__ = (
        CheckConstraint("(user_id IS NULL) <> (guest_email IS NULL)", name="orders_owner_exactly_one"),
        CheckConstraint("refunded_cents >= 0 AND refunded_cents <= total_cents", name="orders_refund_bounds"),
        CheckConstraint(
            "total_cents = subtotal_cents + shipping_cents + tax_cents - discount_cents",
            name="orders_total_consistent",
        ),
        CheckConstraint("total_cents >= 0", name="orders_total_nonneg"),
        UniqueConstraint("user_id", "idempotency_key", name="orders_user_idem_unique"),
        UniqueConstraint("guest_email", "idempotency_key", name="orders_guest_idem_unique"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    variant_id = Column(Uuid, nullable=False)
    # frozen at purchase time
    product_name = Column(String(255), nullable=False)
    sku = Column(String(64), nullable=False)
    unit_price_cents = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False)
    line_total_cents = Column(Integer, nullable=False)
    currency = Column(CHAR(3), nullable=False)

    order = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="order_items_qty_positive"),
        CheckConstraint("line_total_cents = unit_price_cents * quantity", name="order_items_line_total"),
    )


class OrderEvent(Base):
    __tablename__ = "order_events"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    actor_user_id = Column(String(64), nullable=True)
    action = Column(String(32), nullable=False)
    from_status = Column(String(32), nullable=False)
    to_status = Column(String(32), nullable=False)
    note = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)


class FinancialEntry(Base):
    __tablename__ = "financial_entries"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    event = Column(String(64), nullable=False)  # payment_succeeded | refund_succeeded | refund_failed
    amount_cents = Column(Integer, nullable=False)  # + in, - out, 0 informational
    currency = Column(CHAR(3), nullable=False)
    ref_type = Column(String(32), nullable=False)  # 'payment' or 'refund'
    ref_id = Column(Uuid, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        UniqueConstraint("ref_type", "ref_id", "event", name="financial_entries_ref_event_unique"),
        CheckConstraint("ref_type IN ('payment','refund')", name="financial_entries_ref_type_valid"),
    )


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(64), nullable=False)
    provider_ref = Column(String(128), nullable=True)
    status = Column(_enum(PaymentStatus, "payment_status"), nullable=False, default=PaymentStatus.INITIATED)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(CHAR(3), nullable=False)
    idempotency_key = Column(String(64), nullable=False)
    error_message = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        UniqueConstraint("order_id", "idempotency_key", name="payments_order_idem_unique"),
        Index("ix_payments_provider_ref", "provider", "provider_ref"),
    )


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    payment_id = Column(Uuid, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(64), nullable=False)
    provider_ref = Column(String(128), nullable=True)
    status = Column(_enum(PaymentStatus, "refund_status"), nullable=False, default=PaymentStatus.INITIATED)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(CHAR(3), nullable=False)
    idempotency_key = Column(String(64), nullable=False)
    reason = Column(String(255), nullable=True)
    error_message = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        UniqueConstraint("payment_id", "idempotency_key", name="refunds_payment_idem_unique"),
        CheckConstraint("amount_cents > 0", name="refunds_amount_positive"),
        Index("ix_refunds_provider_ref", "provider", "provider_ref"),
    )


class ProviderEvent(Base):
    __tablename__ = "provider_events"

    id = Column(Uuid, primary_key=True, default=uuid4)
    provider = Column(String(64), nullable=False)
    event_id = Column(String(128), nullable=False)
    event_type = Column(String(64), nullable=False)
    payload = Column(Text, nullable=False)
    received_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    process_error = Column(String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="provider_events_provider_event_unique"),
    )


class EmailOutbox(Base):
    __tablename__ = "email_outbox"

    id = Column(Uuid, primary_key=True, default=uuid4)
    to_address = Column(String(255), nullable=False)
    subject = Column(String(255), nullable=False)
    text_body = Column(Text, nullable=False)
    html_body = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
