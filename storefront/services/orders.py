# storefront/services/orders.py
import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.config import settings
from storefront.db import is_unique_violation, run_in_transaction
from storefront.errors import (
    CartEmpty, CurrencyMismatch, IdempotencyConflict, InvalidTransition,
    NotActionable, OrderNotFound, ProductUnavailable,
)
from storefront.metrics import idempotency_conflicts, idempotency_hits, orders_created
from storefront.models import (
    Cart, CartItem, Order, OrderEvent, OrderItem, OrderStatus, Product,
    ProductVariant, now_utc,
)
from storefront.schemas import CreateOrderResult
from storefront.services.stock import StockLine, deduct_stock_in_tx

log = logging.getLogger(__name__)


def lock_order(db: Session, order_id: UUID) -> Order:
    """SELECT ... FOR UPDATE on the order row. Must run inside a transaction."""
    order = db.execute(
        select(Order).where(Order.id == order_id).with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if not order:
        raise OrderNotFound()
    return order


def get_order(db: Session, order_id: UUID) -> Optional[Order]:
    return db.execute(
        select(Order).where(Order.id == order_id)
    ).scalar_one_or_none()


def order_events(db: Session, order_id: UUID) -> List[OrderEvent]:
    return db.execute(
        select(OrderEvent)
        .where(OrderEvent.order_id == order_id)
        .order_by(OrderEvent.created_at, OrderEvent.id)
    ).scalars().all()


def record_event(db: Session, order_id: UUID, actor_user_id: Optional[str], action: str,
                 from_status: OrderStatus, to_status: OrderStatus, note: Optional[str] = None) -> None:
    note = (note or "").strip() or None
    db.add(OrderEvent(
        order_id=order_id,
        actor_user_id=actor_user_id,
        action=action,
        from_status=OrderStatus(from_status).value,
        to_status=OrderStatus(to_status).value,
        note=note[:255] if note else None,
    ))


# --- state machine -----------------------------------------------------------

# action -> (from, to). Refund-driven partial/full transitions are not here:
# the refund service derives those from the refunded amount.
TRANSITIONS = {
    "cancel": (OrderStatus.CREATED, OrderStatus.CANCELLED),
    "ship": (OrderStatus.PAID, OrderStatus.SHIPPED),
    "deliver": (OrderStatus.SHIPPED, OrderStatus.DELIVERED),
    "refund": (OrderStatus.PAID, OrderStatus.REFUNDED),
}


def next_status(from_status: OrderStatus, action: str) -> OrderStatus:
    edge = TRANSITIONS.get(action)
    if edge is None or edge[0] != from_status:
        raise InvalidTransition(f"cannot {action} an order in status {OrderStatus(from_status).value}")
    return edge[1]


def transition(db: Session, order_id: UUID, actor_user_id: str, action: str,
               note: Optional[str] = None) -> OrderStatus:
    """
    Apply an administrative action to an order:
      - lock the order row
      - resolve the target status from TRANSITIONS
      - UPDATE ... WHERE status = <from> (a lost race updates nothing)
      - append an OrderEvent
    Raises InvalidTransition when the action is not allowed from the current
    status or the guarded update matched no row.
    """
    if not order_id or not actor_user_id or not action:
        raise NotActionable()

    with db.begin():
        order = lock_order(db, order_id)
        from_status = order.status
        to_status = next_status(from_status, action)

        now = now_utc()
        values = {"status": to_status, "updated_at": now}
        if to_status == OrderStatus.REFUNDED and order.refunded_at is None:
            values["refunded_at"] = now

        res = db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == from_status)  # optimistic guard
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise InvalidTransition("order status changed concurrently")

        record_event(db, order.id, actor_user_id, action, from_status, to_status, note)

    log.info("order %s %s: %s -> %s by %s", order_id, action, from_status.value, to_status.value, actor_user_id)
    return to_status


# --- order creation ----------------------------------------------------------

def _cart_fingerprint(items: List[CartItem]) -> str:
    return ",".join(sorted(f"{it.variant_id}:{it.quantity}" for it in items))


def _find_existing(db: Session, user_id: Optional[UUID], guest_email: Optional[str], key: str) -> Optional[Order]:
    q = select(Order).where(Order.idempotency_key == key)
    if user_id is not None:
        q = q.where(Order.user_id == user_id)
    else:
        q = q.where(Order.guest_email == guest_email)
    return db.execute(q).scalar_one_or_none()


def _result(order: Order, idempotent: bool) -> CreateOrderResult:
    return CreateOrderResult(
        order_id=order.id, status=order.status, total_cents=order.total_cents,
        currency=order.currency, idempotent=idempotent,
    )


def create_from_cart(
    db: Session,
    cart_id: UUID,
    user_id: Optional[UUID] = None,
    guest_email: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    tax_cents: int = 0,
    shipping_cents: int = 0,
    discount_cents: int = 0,
    shipping_address: Optional[Dict[str, Any]] = None,
    billing_address: Optional[Dict[str, Any]] = None,
) -> CreateOrderResult:
    """
    Turn a cart into an order in one transaction: deduct stock, snapshot
    prices into order items, insert the order in status `created` and empty
    the cart. Nothing is written if any step fails. The transaction is retried
    on deadlock/lock timeout.

    With an idempotency key (scoped to the user, or to the guest email) a
    repeat returns the existing order as long as the cart is unchanged or
    already converted; a different cart under the same key is a conflict.
    """
    if (user_id is None) == (not guest_email):
        raise ValueError("exactly one of user_id or guest_email is required")
    if min(tax_cents, shipping_cents, discount_cents) < 0:
        raise ValueError("amounts must not be negative")
    if guest_email:
        guest_email = guest_email.strip().lower()
    key = (idempotency_key or "").strip() or None

    def _tx(tx: Session) -> CreateOrderResult:
        # Locking the cart serializes double submits of the same checkout.
        cart = tx.execute(
            select(Cart).where(Cart.id == cart_id).with_for_update()
        ).scalar_one_or_none()
        items = []
        if cart is not None:
            items = tx.execute(
                select(CartItem).where(CartItem.cart_id == cart_id)
            ).scalars().all()
        fingerprint = _cart_fingerprint(items)

        if key:
            existing = _find_existing(tx, user_id, guest_email, key)
            if existing is not None:
                if items and existing.cart_fingerprint != fingerprint:
                    idempotency_conflicts.labels("checkout").inc()
                    raise IdempotencyConflict()
                idempotency_hits.labels("checkout").inc()
                return _result(existing, True)

        if not items:
            raise CartEmpty()

        variant_ids = [it.variant_id for it in items]
        rows = tx.execute(
            select(ProductVariant, Product)
            .join(Product, Product.id == ProductVariant.product_id)
            .where(ProductVariant.id.in_(variant_ids))
        ).all()
        variants = {v.id: (v, p) for v, p in rows}
        for vid in variant_ids:
            if vid not in variants or not variants[vid][1].is_active:
                raise ProductUnavailable()

        currencies = {variants[vid][0].currency for vid in variant_ids}
        if len(currencies) != 1:
            raise CurrencyMismatch()
        currency = currencies.pop()

        deduct_stock_in_tx(tx, [StockLine(it.variant_id, it.quantity) for it in items])

        order_items = []
        subtotal = 0
        for it in items:
            v, p = variants[it.variant_id]
            qty = max(it.quantity, 1)
            line_total = v.price_cents * qty
            subtotal += line_total
            order_items.append(OrderItem(
                variant_id=v.id, product_name=p.name, sku=v.sku,
                unit_price_cents=v.price_cents, quantity=qty,
                line_total_cents=line_total, currency=currency,
            ))

        total = subtotal + shipping_cents + tax_cents - discount_cents
        if total < 0:
            raise ValueError("discount exceeds order amount")

        order = Order(
            user_id=user_id,
            guest_email=guest_email if user_id is None else None,
            status=OrderStatus.CREATED,
            currency=currency,
            subtotal_cents=subtotal,
            shipping_cents=shipping_cents,
            tax_cents=tax_cents,
            discount_cents=discount_cents,
            total_cents=total,
            refunded_cents=0,
            shipping_address=shipping_address,
            billing_address=billing_address,
            idempotency_key=key,
            cart_fingerprint=fingerprint,
            items=order_items,
        )
        tx.add(order)
        tx.flush()

        tx.execute(delete(CartItem).where(CartItem.cart_id == cart_id))
        return _result(order, False)

    try:
        result = run_in_transaction(
            db, _tx,
            attempts=settings.stock_retry_attempts,
            backoff_ms=settings.stock_retry_backoff_ms,
        )
    except IntegrityError as e:
        # Lost a race on the same idempotency key to a concurrent checkout.
        if not (key and is_unique_violation(e)):
            raise
        with db.begin():
            existing = _find_existing(db, user_id, guest_email, key)
            if existing is None:
                raise
        idempotency_hits.labels("checkout").inc()
        return _result(existing, True)

    if not result.idempotent:
        orders_created.inc()
        log.info("order %s created from cart %s total=%d %s",
                 result.order_id, cart_id, result.total_cents, result.currency)
    return result
