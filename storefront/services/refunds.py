# storefront/services/refunds.py
import logging
from time import perf_counter
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront import providers
from storefront.db import is_unique_violation
from storefront.errors import (
    InvalidTransition, NoSucceededPayment, NotActionable, NotRefundable, StorefrontError,
)
from storefront.metrics import idempotency_hits, refund_errors, refund_latency, refunds_total
from storefront.models import Order, OrderStatus, Payment, PaymentStatus, Refund, now_utc
from storefront.providers import PaymentProvider, ProviderError, RefundRequest
from storefront.schemas import RefundOrderResult
from storefront.services.ledger import REFUND_FAILED, REFUND_SUCCEEDED, ensure_financial_entry
from storefront.services.orders import get_order, lock_order, record_event

log = logging.getLogger(__name__)

REFUNDABLE = (OrderStatus.PAID, OrderStatus.PARTIALLY_REFUNDED)


def _latest_succeeded_payment(db: Session, order_id: UUID) -> Optional[Payment]:
    return db.execute(
        select(Payment)
        .where(Payment.order_id == order_id, Payment.status == PaymentStatus.SUCCEEDED)
        .order_by(Payment.updated_at.desc(), Payment.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()


def _find_by_key(db: Session, payment_id: UUID, idem_key: str) -> Optional[Refund]:
    return db.execute(
        select(Refund).where(Refund.payment_id == payment_id, Refund.idempotency_key == idem_key)
    ).scalar_one_or_none()


def _in_flight_cents(db: Session, order_id: UUID) -> int:
    total = db.execute(
        select(func.coalesce(func.sum(Refund.amount_cents), 0))
        .where(Refund.order_id == order_id, Refund.status == PaymentStatus.INITIATED)
    ).scalar_one()
    return int(total or 0)


def refundable_cents(db: Session, order_id: UUID) -> int:
    """What is still refundable: total minus refunded minus refunds awaiting the provider."""
    order = get_order(db, order_id)
    if order is None:
        return 0
    return max(order.total_cents - order.refunded_cents - _in_flight_cents(db, order_id), 0)


def _existing_result(refund: Refund) -> RefundOrderResult:
    idempotency_hits.labels("refund").inc()
    return RefundOrderResult(
        order_id=refund.order_id, refund_id=refund.id, status=refund.status.value,
        amount_cents=refund.amount_cents, idempotent=True,
    )


def apply_refund_success(db: Session, order: Order, refund: Refund,
                         actor_user_id: Optional[str] = None,
                         provider_ref: Optional[str] = None) -> bool:
    """
    Finalize a refund as succeeded. Caller holds the order and refund locks.
    Adds the amount to refunded_cents (never past the total), books the
    amount actually applied as a negative ledger entry at most once and moves
    the order to partially_refunded or refunded. A refund that lands after
    the balance was already returned some other way (e.g. a late
    refund.succeeded for a refund recorded as failed) is capped, so the
    ledger keeps matching paid minus refunded_cents. Returns False if already
    succeeded.
    """
    if refund.status == PaymentStatus.SUCCEEDED:
        return False

    now = now_utc()
    refund.status = PaymentStatus.SUCCEEDED
    refund.error_message = None
    refund.updated_at = now
    if provider_ref:
        refund.provider_ref = provider_ref
    db.flush()

    from_status = order.status
    old_refunded = order.refunded_cents
    new_refunded = min(old_refunded + refund.amount_cents, order.total_cents)
    applied = new_refunded - old_refunded

    note = f"refunded {applied} {refund.currency}"
    if applied < refund.amount_cents:
        log.warning("refund %s of %d %s capped to %d on order %s (refunded %d of %d)",
                    refund.id, refund.amount_cents, refund.currency, applied,
                    order.id, old_refunded, order.total_cents)
        note += f" (capped from {refund.amount_cents})"

    ensure_financial_entry(
        db, order.id, REFUND_SUCCEEDED, -applied, refund.currency,
        ref_type="refund", ref_id=refund.id,
    )

    values = {"refunded_cents": new_refunded, "updated_at": now}
    if new_refunded >= order.total_cents:
        values["status"] = OrderStatus.REFUNDED
        if order.refunded_at is None:
            values["refunded_at"] = now
    else:
        values["status"] = OrderStatus.PARTIALLY_REFUNDED

    res = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.refunded_cents == old_refunded)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise InvalidTransition("order refunded amount changed concurrently")

    record_event(db, order.id, actor_user_id, "refund", from_status, values["status"], note=note)
    return True


def mark_refund_failed(db: Session, order: Order, refund: Refund, message: str,
                       actor_user_id: Optional[str] = None) -> bool:
    """Failed refunds leave the order alone but are kept in the ledger (amount 0) and the audit trail."""
    if refund.status == PaymentStatus.FAILED:
        return False

    refund.status = PaymentStatus.FAILED
    refund.error_message = message[:255]
    refund.updated_at = now_utc()
    db.flush()

    ensure_financial_entry(
        db, order.id, REFUND_FAILED, 0, refund.currency,
        ref_type="refund", ref_id=refund.id,
    )
    record_event(db, order.id, actor_user_id, "refund", order.status, order.status,
                 note=f"refund failed: {message}")
    return True


def refund_order(
    db: Session,
    order_id: UUID,
    actor_user_id: str,
    idem_key: str,
    amount_cents: int = 0,
    reason: str = "",
    provider: Optional[PaymentProvider] = None,
) -> RefundOrderResult:
    """
    Three-phase refund, mirroring pay_order:
      1. (tx) lock order, return the existing refund for (payment, key) if
         any, else require paid/partially_refunded and a succeeded payment,
         clamp the amount to what is left (0 means everything left) and insert
         a refund in `initiated`. Refunds still awaiting the provider count
         as already spent, so racing refunds cannot exceed the total.
      2. (no tx) call the provider
      3. (tx) lock order + refund and record the outcome
    """
    provider = provider or providers.get_provider()
    start = perf_counter()
    idem_key = (idem_key or "").strip()
    reason = (reason or "").strip()

    try:
        if not order_id or not actor_user_id or not idem_key:
            raise NotActionable()

        # Phase 1
        try:
            with db.begin():
                order = lock_order(db, order_id)
                payment = _latest_succeeded_payment(db, order.id)

                if payment is not None:
                    existing = _find_by_key(db, payment.id, idem_key)
                    if existing is not None:
                        return _existing_result(existing)

                if order.status not in REFUNDABLE:
                    raise NotRefundable(f"order is {order.status.value}")
                if payment is None:
                    raise NoSucceededPayment()

                remaining = order.total_cents - order.refunded_cents - _in_flight_cents(db, order.id)
                if remaining <= 0:
                    raise NotRefundable("nothing left to refund")

                amount = remaining if amount_cents <= 0 else min(amount_cents, remaining)

                refund = Refund(
                    order_id=order.id,
                    payment_id=payment.id,
                    provider=provider.name,
                    status=PaymentStatus.INITIATED,
                    amount_cents=amount,
                    currency=order.currency,
                    idempotency_key=idem_key,
                    reason=reason[:255] or None,
                )
                db.add(refund)
                db.flush()
                refund_id = refund.id
                payment_id, payment_ref = payment.id, payment.provider_ref or ""
                currency = refund.currency
        except IntegrityError as e:
            if not is_unique_violation(e):
                raise
            with db.begin():
                payment = _latest_succeeded_payment(db, order_id)
                existing = _find_by_key(db, payment.id, idem_key) if payment else None
                if existing is None:
                    raise
            return _existing_result(existing)

        # Phase 2: outside any transaction
        resp, perr = None, None
        try:
            resp = provider.refund_payment(RefundRequest(
                order_id=str(order_id),
                payment_id=str(payment_id),
                payment_ref=payment_ref,
                amount_cents=amount,
                currency=currency,
                idempotency_key=idem_key,
                reason=reason,
            ))
        except ProviderError as e:
            perr = e
            log.warning("provider refund_payment failed for order %s: %s", order_id, e)

        # Phase 3
        with db.begin():
            order = lock_order(db, order_id)
            refund = db.execute(
                select(Refund).where(Refund.id == refund_id).with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one()

            if refund.status != PaymentStatus.INITIATED:
                log.info("refund %s already %s before finalize", refund.id, refund.status.value)
            elif perr is not None:
                mark_refund_failed(db, order, refund, str(perr), actor_user_id)
            elif resp.status == providers.INITIATED:
                if resp.provider_ref:
                    refund.provider_ref = resp.provider_ref
                refund.updated_at = now_utc()
            elif resp.status == providers.SUCCEEDED:
                apply_refund_success(db, order, refund, actor_user_id, resp.provider_ref)
            else:
                if resp.provider_ref:
                    refund.provider_ref = resp.provider_ref
                mark_refund_failed(db, order, refund, f"provider status: {resp.status}", actor_user_id)
            final_status = refund.status

        refunds_total.labels(final_status.value).inc()
        log.info("refund %s (%d %s) for order %s: %s", refund_id, amount, currency, order_id, final_status.value)
        return RefundOrderResult(
            order_id=order_id,
            refund_id=refund_id,
            status=final_status.value,
            amount_cents=amount,
            idempotent=False,
        )

    except StorefrontError as e:
        refund_errors.labels(e.code).inc()
        raise
    finally:
        refund_latency.observe(perf_counter() - start)
