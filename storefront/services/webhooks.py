# storefront/services/webhooks.py
import logging
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.db import is_unique_violation
from storefront.errors import StorefrontError, WebhookApplyError
from storefront.metrics import webhook_events
from storefront.models import Order, Payment, PaymentStatus, ProviderEvent, Refund, now_utc
from storefront.providers import WebhookEvent
from storefront.services.orders import lock_order
from storefront.services.payments import mark_payment_failed, mark_payment_succeeded
from storefront.services.refunds import apply_refund_success, mark_refund_failed

log = logging.getLogger(__name__)


def _lock_payment(db: Session, provider: str, ref: str) -> Tuple[Order, Payment]:
    if not ref:
        raise WebhookApplyError("missing payment_ref")
    p = db.execute(
        select(Payment).where(Payment.provider == provider, Payment.provider_ref == ref)
    ).scalar_one_or_none()
    if p is None:
        # most likely the synchronous flow has not committed the ref yet
        raise WebhookApplyError(f"payment not found: {ref}")
    # order first, then payment: same lock order as the payment service
    order = lock_order(db, p.order_id)
    p = db.execute(
        select(Payment).where(Payment.id == p.id).with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one()
    return order, p


def _lock_refund(db: Session, provider: str, ref: str) -> Tuple[Order, Refund]:
    if not ref:
        raise WebhookApplyError("missing refund_ref")
    r = db.execute(
        select(Refund).where(Refund.provider == provider, Refund.provider_ref == ref)
    ).scalar_one_or_none()
    if r is None:
        raise WebhookApplyError(f"refund not found: {ref}")
    order = lock_order(db, r.order_id)
    r = db.execute(
        select(Refund).where(Refund.id == r.id).with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one()
    return order, r


def apply_payment_succeeded(db: Session, provider: str, ev: WebhookEvent) -> None:
    order, p = _lock_payment(db, provider, ev.payment_ref)
    if p.status == PaymentStatus.SUCCEEDED:
        return
    mark_payment_succeeded(db, order, p)


def apply_payment_failed(db: Session, provider: str, ev: WebhookEvent) -> None:
    _, p = _lock_payment(db, provider, ev.payment_ref)
    if p.status == PaymentStatus.SUCCEEDED:
        # a late failure never undoes captured money
        log.warning("ignoring payment.failed for succeeded payment %s", p.id)
        return
    mark_payment_failed(p, "provider webhook: failed")


def apply_refund_succeeded(db: Session, provider: str, ev: WebhookEvent) -> None:
    order, r = _lock_refund(db, provider, ev.refund_ref)
    if r.status == PaymentStatus.SUCCEEDED:
        return
    apply_refund_success(db, order, r)


def apply_refund_failed(db: Session, provider: str, ev: WebhookEvent) -> None:
    order, r = _lock_refund(db, provider, ev.refund_ref)
    if r.status == PaymentStatus.SUCCEEDED:
        log.warning("ignoring refund.failed for succeeded refund %s", r.id)
        return
    mark_refund_failed(db, order, r, "provider webhook: failed")


APPLIERS: Dict[str, Callable[[Session, str, WebhookEvent], None]] = {
    "payment.succeeded": apply_payment_succeeded,
    "payment.failed": apply_payment_failed,
    "refund.succeeded": apply_refund_succeeded,
    "refund.failed": apply_refund_failed,
}


def _claim_event(db: Session, provider: str, ev: WebhookEvent, payload: str) -> Optional[ProviderEvent]:
    """
    Insert the provider_events row. Returns None when (provider, event_id) was
    already processed; returns the existing row when an earlier delivery
    failed to apply, so it is applied again.
    """
    try:
        with db.begin_nested():
            pe = ProviderEvent(provider=provider, event_id=ev.event_id, event_type=ev.type, payload=payload)
            db.add(pe)
            db.flush()
        return pe
    except IntegrityError as e:
        if not is_unique_violation(e):
            raise

    pe = db.execute(
        select(ProviderEvent)
        .where(ProviderEvent.provider == provider, ProviderEvent.event_id == ev.event_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one()
    if pe.processed_at is not None:
        return None
    return pe


def handle(db: Session, provider: str, ev: WebhookEvent, raw_body: bytes) -> bool:
    """
    Record and apply one provider event.
      - duplicate of a processed event -> no side effects
      - first delivery (or redelivery of a failed one) -> run the applier in
        a savepoint; on success stamp processed_at
      - applier error -> savepoint rolled back, error stored on the event
        row, WebhookApplyError raised so the provider retries
    Returns False for duplicates, True when the event was applied.
    """
    payload = raw_body.decode("utf-8", errors="replace")
    apply_error = None

    with db.begin():
        pe = _claim_event(db, provider, ev, payload)
        if pe is None:
            log.info("webhook event deduplicated provider=%s event_id=%s type=%s", provider, ev.event_id, ev.type)
            webhook_events.labels(ev.type, "duplicate").inc()
            return False

        try:
            with db.begin_nested():
                applier = APPLIERS.get(ev.type)
                if applier is None:
                    raise WebhookApplyError(f"unknown webhook event type: {ev.type}")
                applier(db, provider, ev)
        except (StorefrontError, SQLAlchemyError) as e:
            apply_error = e
            pe.process_error = str(e)[:250]
            pe.processed_at = None
        else:
            pe.processed_at = now_utc()
            pe.process_error = None

    if apply_error is not None:
        log.error("webhook event apply failed provider=%s event_id=%s type=%s error=%s",
                  provider, ev.event_id, ev.type, apply_error)
        webhook_events.labels(ev.type, "error").inc()
        if isinstance(apply_error, WebhookApplyError):
            raise apply_error
        raise WebhookApplyError(str(apply_error)) from apply_error

    log.info("webhook event processed provider=%s event_id=%s type=%s", provider, ev.event_id, ev.type)
    webhook_events.labels(ev.type, "applied").inc()
    return True
