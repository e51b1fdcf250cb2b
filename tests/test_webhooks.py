# tests/test_webhooks.py
import json

import pytest
from sqlalchemy import select

from storefront.db import SessionLocal
from storefront.errors import WebhookApplyError
from storefront.models import FinancialEntry, OrderStatus, Payment, PaymentStatus, ProviderEvent, Refund
from storefront.providers import WebhookEvent
from storefront.services import webhooks
from storefront.services.ledger import net_settled_cents
from storefront.services.orders import order_events
from storefront.services.payments import pay_order
from storefront.services.refunds import refund_order


def _body(event_id, type_, **data):
    return json.dumps({"id": event_id, "type": type_, "data": data}).encode()


def _post(client, provider, body):
    return client.post(
        "/webhooks/mock",
        content=body,
        headers={"X-Mock-Signature": provider.sign_webhook(body), "Content-Type": "application/json"},
    )


def _payment(order_id):
    with SessionLocal() as s:
        return s.execute(select(Payment).where(Payment.order_id == order_id)).scalar_one()


def _entries(order_id, event):
    with SessionLocal() as s:
        return s.execute(
            select(FinancialEntry).where(FinancialEntry.order_id == order_id, FinancialEntry.event == event)
        ).scalars().all()


def _provider_event(event_id):
    with SessionLocal() as s:
        return s.execute(select(ProviderEvent).where(ProviderEvent.event_id == event_id)).scalar_one()


@pytest.fixture
def redirect_payment(make_order, provider, db):
    """An order whose payment is waiting on the provider; returns (order_id, provider_ref)."""
    def _make(total_cents=10000):
        order_id, user = make_order(total_cents=total_cents)
        provider.payment_outcome = "requires_redirect"
        res = pay_order(db, order_id, "k1", actor_user_id=user, provider=provider)
        assert res.status == "initiated"
        provider.payment_outcome = "succeeded"
        return order_id, _payment(order_id).provider_ref
    return _make


def test_payment_succeeded_webhook_marks_order_paid(client, provider, redirect_payment, load_order):
    order_id, ref = redirect_payment(total_cents=2500)

    r = _post(client, provider, _body("evt_1", "payment.succeeded", payment_ref=ref, amount_cents=2500))

    assert r.status_code == 200 and r.json() == {"ok": True}
    order = load_order(order_id)
    assert order.status == OrderStatus.PAID and order.paid_at is not None
    assert _payment(order_id).status == PaymentStatus.SUCCEEDED
    assert [e.amount_cents for e in _entries(order_id, "payment_succeeded")] == [2500]
    assert _provider_event("evt_1").processed_at is not None


def test_redelivered_event_is_applied_once(client, provider, redirect_payment):
    order_id, ref = redirect_payment()
    body = _body("evt_dup", "payment.succeeded", payment_ref=ref)

    for _ in range(3):
        assert _post(client, provider, body).status_code == 200

    assert len(_entries(order_id, "payment_succeeded")) == 1
    with SessionLocal() as s:
        assert len(s.execute(select(ProviderEvent)).all()) == 1


def test_second_event_for_same_payment_is_noop(client, provider, redirect_payment):
    order_id, ref = redirect_payment()
    assert _post(client, provider, _body("evt_a", "payment.succeeded", payment_ref=ref)).status_code == 200
    assert _post(client, provider, _body("evt_b", "payment.succeeded", payment_ref=ref)).status_code == 200
    assert len(_entries(order_id, "payment_succeeded")) == 1


def test_sync_success_then_webhook_books_once(client, provider, make_paid_order):
    order_id, _ = make_paid_order(total_cents=4000)
    ref = _payment(order_id).provider_ref

    assert _post(client, provider, _body("evt_s", "payment.succeeded", payment_ref=ref)).status_code == 200

    assert len(_entries(order_id, "payment_succeeded")) == 1


def test_payment_failed_webhook(client, provider, redirect_payment, load_order):
    order_id, ref = redirect_payment()

    assert _post(client, provider, _body("evt_f", "payment.failed", payment_ref=ref)).status_code == 200

    payment = _payment(order_id)
    assert payment.status == PaymentStatus.FAILED
    assert payment.error_message
    assert load_order(order_id).status == OrderStatus.CREATED


def test_late_failure_never_downgrades_success(client, provider, make_paid_order, load_order):
    order_id, _ = make_paid_order()
    ref = _payment(order_id).provider_ref

    assert _post(client, provider, _body("evt_late", "payment.failed", payment_ref=ref)).status_code == 200

    assert _payment(order_id).status == PaymentStatus.SUCCEEDED
    assert load_order(order_id).status == OrderStatus.PAID


def test_event_for_unknown_ref_fails_then_succeeds_on_redelivery(client, provider, redirect_payment, load_order):
    order_id, _ = redirect_payment(total_cents=3000)
    body = _body("evt_early", "payment.succeeded", payment_ref="pay_not_yet_stored")

    r = _post(client, provider, body)
    assert r.status_code == 500 and r.json() == {"ok": False}
    pe = _provider_event("evt_early")
    assert pe.processed_at is None
    assert "payment not found" in pe.process_error
    assert load_order(order_id).status == OrderStatus.CREATED

    # the synchronous flow commits the provider ref afterwards
    with SessionLocal() as s, s.begin():
        s.execute(select(Payment).where(Payment.order_id == order_id)).scalar_one().provider_ref = "pay_not_yet_stored"

    assert _post(client, provider, body).status_code == 200
    assert load_order(order_id).status == OrderStatus.PAID
    pe = _provider_event("evt_early")
    assert pe.processed_at is not None and pe.process_error is None


def test_unknown_event_type_is_an_apply_error(provider, db):
    ev = WebhookEvent(event_id="evt_x", type="charge.disputed")
    with pytest.raises(WebhookApplyError):
        webhooks.handle(db, provider.name, ev, b"{}")
    assert "unknown webhook event type" in _provider_event("evt_x").process_error


def test_handle_reports_duplicates(redirect_payment, provider, db):
    _, ref = redirect_payment()
    ev = WebhookEvent(event_id="evt_h", type="payment.succeeded", payment_ref=ref)
    assert webhooks.handle(db, provider.name, ev, b"{}") is True
    assert webhooks.handle(db, provider.name, ev, b"{}") is False


def test_refund_webhooks(client, provider, make_paid_order, load_order, db):
    order_id, _ = make_paid_order(total_cents=10000)
    provider.refund_outcome = "initiated"
    refund_order(db, order_id, "admin-1", "r1", amount_cents=3000, provider=provider)
    refund_order(db, order_id, "admin-1", "r2", amount_cents=2000, provider=provider)
    with SessionLocal() as s:
        refs = dict(s.execute(select(Refund.amount_cents, Refund.provider_ref)).all())

    assert _post(client, provider, _body("evt_r1", "refund.succeeded", refund_ref=refs[3000])).status_code == 200
    assert _post(client, provider, _body("evt_r2", "refund.failed", refund_ref=refs[2000])).status_code == 200
    # redelivery under a fresh id changes nothing
    assert _post(client, provider, _body("evt_r3", "refund.succeeded", refund_ref=refs[3000])).status_code == 200

    order = load_order(order_id)
    assert order.status == OrderStatus.PARTIALLY_REFUNDED
    assert order.refunded_cents == 3000
    assert [e.amount_cents for e in _entries(order_id, "refund_succeeded")] == [-3000]
    assert [e.amount_cents for e in _entries(order_id, "refund_failed")] == [0]
    with SessionLocal() as s:
        statuses = dict(s.execute(select(Refund.amount_cents, Refund.status)).all())
    assert statuses == {3000: PaymentStatus.SUCCEEDED, 2000: PaymentStatus.FAILED}


def test_late_success_for_failed_refund_is_capped(client, provider, make_paid_order, load_order, db):
    order_id, _ = make_paid_order(total_cents=10000)
    provider.refund_outcome = "failed"
    failed = refund_order(db, order_id, "admin-1", "r-a", provider=provider)
    assert failed.status == "failed"
    provider.refund_outcome = "succeeded"
    assert refund_order(db, order_id, "admin-1", "r-b", provider=provider).amount_cents == 10000
    with SessionLocal() as s:
        ref = s.get(Refund, failed.refund_id).provider_ref

    # the provider later reports the "failed" refund as having gone through after all
    r = _post(client, provider, _body("evt_late_refund", "refund.succeeded", refund_ref=ref))

    assert r.status_code == 200
    order = load_order(order_id)
    assert order.refunded_cents == order.total_cents == 10000
    assert order.status == OrderStatus.REFUNDED
    with SessionLocal() as s:
        assert net_settled_cents(s, order_id) == 10000 - order.refunded_cents
        assert s.get(Refund, failed.refund_id).status == PaymentStatus.SUCCEEDED
        notes = [e.note for e in order_events(s, order_id)]
    assert any("capped from 10000" in (n or "") for n in notes)
    assert sorted(e.amount_cents for e in _entries(order_id, "refund_succeeded")) == [-10000, 0]


def test_bad_signature_is_rejected_without_side_effects(client, provider, redirect_payment):
    order_id, ref = redirect_payment()
    body = _body("evt_bad", "payment.succeeded", payment_ref=ref)

    r = client.post("/webhooks/mock", content=body, headers={"X-Mock-Signature": "t=1,v1=deadbeef"})

    assert r.status_code == 400
    assert r.json()["ok"] is False
    with SessionLocal() as s:
        assert s.execute(select(ProviderEvent)).first() is None
    assert _payment(order_id).status == PaymentStatus.INITIATED


def test_unknown_provider_is_404(client):
    assert client.post("/webhooks/acme", content=b"{}").status_code == 404
