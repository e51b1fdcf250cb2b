# storefront/services/payments.py
import logging
from time import perf_counter
from typing import Optional, Union
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront import providers
from storefront.db import is_unique_violation
from storefront.errors import Forbidden, OrderNotPayable, StorefrontError
from storefront.metrics import idempotency_hits, payment_errors, payment_latency, payments_total
from storefront.models import Order, OrderStatus, Payment, PaymentStatus, now_utc
from storefront.providers import CreatePaymentRequest, PaymentProvider, ProviderError
from storefront.schemas import PayOrderResult
from storefront.services.ledger import PAYMENT_SUCCEEDED, ensure_financial_entry
from storefront.services.orders import lock_order

log = logging.getLogger(__name__)


def authorize_actor(order: Order, actor_user_id: Optional[Union[str, UUID]]) -> None:
    """A user-owned order may only be acted on by that user; guest orders by anyone holding the id."""
    if order.user_id is None:
        return
    if actor_user_id is None or str(actor_user_id) != str(order.user_id):
        raise Forbidden()


def _find_by_key(db: Session, order_id: UUID, idem_key: str) -> Optional[Payment]:
    return db.execute(
        select(Payment).where(Payment.order_id == order_id, Payment.idempotency_key == idem_key)
    ).scalar_one_or_none()


def _existing_result(payment: Payment) -> PayOrderResult:
    idempotency_hits.labels("pay").inc()
    return PayOrderResult(
        order_id=payment.order_id, payment_id=payment.id,
        status=payment.status.value, idempotent=True,
    )


def mark_payment_succeeded(db: Session, order: Order, payment: Payment, provider_ref: Optional[str] = None) -> bool:
    """
    Finalize a payment as succeeded. Caller holds the order and payment locks.
    Books the ledger entry at most once and flips the order created -> paid
    (a no-op if something else already moved it). Returns False if the payment
    was already succeeded.
    """
    if payment.status == PaymentStatus.SUCCEEDED:
        return False

    now = now_utc()
    payment.status = PaymentStatus.SUCCEEDED
    payment.error_message = None
    payment.updated_at = now
    if provider_ref:
        payment.provider_ref = provider_ref
    db.flush()

    ensure_financial_entry(
        db, order.id, PAYMENT_SUCCEEDED, payment.amount_cents, payment.currency,
        ref_type="payment", ref_id=payment.id,
    )

    res = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == OrderStatus.CREATED)
        .values(status=OrderStatus.PAID, paid_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        log.info("payment %s succeeded but order %s was already %s", payment.id, order.id, order.status.value)
    return True


def mark_payment_failed(payment: Payment, message: str) -> bool:
    if payment.status == PaymentStatus.FAILED:
        return False
    payment.status = PaymentStatus.FAILED
    payment.error_message = message[:255]
    payment.updated_at = now_utc()
    return True


def pay_order(
    db: Session,
    order_id: UUID,
    idem_key: str,
    actor_user_id: Optional[Union[str, UUID]] = None,
    return_url: str = "",
    cancel_url: str = "",
    provider: Optional[PaymentProvider] = None,
) -> PayOrderResult:
    """
    Three-phase payment:
      1. (tx) lock order, authorize actor, return the existing payment for
         (order, key) if any, else require status `created` and insert a
         payment in `initiated`
      2. (no tx) call the provider
      3. (tx) lock order + payment and record the provider's answer:
         transport error / failure -> failed; async -> stays initiated for the
         webhook; success -> succeeded + ledger entry + order paid
    Session must be idle on entry; no transaction is open during phase 2.
    """
    provider = provider or providers.get_provider()
    start = perf_counter()
    idem_key = (idem_key or "").strip()

    try:
        if not idem_key:
            raise OrderNotPayable("missing idempotency key")

        # Phase 1
        try:
            with db.begin():
                order = lock_order(db, order_id)
                authorize_actor(order, actor_user_id)

                existing = _find_by_key(db, order.id, idem_key)
                if existing is not None:
                    return _existing_result(existing)

                if order.status != OrderStatus.CREATED:
                    raise OrderNotPayable(f"order is {order.status.value}")

                payment = Payment(
                    order_id=order.id,
                    provider=provider.name,
                    status=PaymentStatus.INITIATED,
                    amount_cents=order.total_cents,
                    currency=order.currency,
                    idempotency_key=idem_key,
                )
                db.add(payment)
                db.flush()
                payment_id = payment.id
                amount, currency = payment.amount_cents, payment.currency
        except IntegrityError as e:
            if not is_unique_violation(e):
                raise
            with db.begin():
                existing = _find_by_key(db, order_id, idem_key)
                if existing is None:
                    raise
            return _existing_result(existing)

        # Phase 2: outside any transaction
        resp, perr = None, None
        try:
            resp = provider.create_payment(CreatePaymentRequest(
                order_id=str(order_id),
                amount_cents=amount,
                currency=currency,
                idempotency_key=idem_key,
                return_url=return_url,
                cancel_url=cancel_url,
            ))
        except ProviderError as e:
            perr = e
            log.warning("provider create_payment failed for order %s: %s", order_id, e)

        # Phase 3
        with db.begin():
            order = lock_order(db, order_id)
            payment = db.execute(
                select(Payment).where(Payment.id == payment_id).with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one()

            if payment.status != PaymentStatus.INITIATED:
                # the webhook got here first
                log.info("payment %s already %s before finalize", payment.id, payment.status.value)
            elif perr is not None:
                mark_payment_failed(payment, str(perr))
            elif resp.status in (providers.INITIATED, providers.REQUIRES_REDIRECT):
                if resp.provider_ref:
                    payment.provider_ref = resp.provider_ref
                payment.updated_at = now_utc()
            elif resp.status == providers.SUCCEEDED:
                mark_payment_succeeded(db, order, payment, resp.provider_ref)
            else:
                if resp.provider_ref:
                    payment.provider_ref = resp.provider_ref
                mark_payment_failed(payment, f"provider status: {resp.status}")
            final_status = payment.status

        payments_total.labels(final_status.value).inc()
        log.info("payment %s for order %s: %s", payment_id, order_id, final_status.value)
        return PayOrderResult(
            order_id=order_id,
            payment_id=payment_id,
            status=final_status.value,
            idempotent=False,
            redirect_url=resp.redirect_url if resp is not None and final_status == PaymentStatus.INITIATED else None,
        )

    except StorefrontError as e:
        payment_errors.labels(e.code).inc()
        raise
    finally:
        payment_latency.observe(perf_counter() - start)
