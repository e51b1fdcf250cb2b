# tests/test_api.py
from uuid import uuid4

from sqlalchemy import select

from storefront import main
from storefront.db import SessionLocal
from storefront.models import EmailOutbox, OrderStatus


def _checkout(client, cart_id, email="shopper@example.com", key=None, user_id=None, **extra):
    body = {"cart_id": str(cart_id), "email": email, **extra}
    if key:
        body["idempotency_key"] = key
    headers = {"X-User-Id": str(user_id)} if user_id else {}
    return client.post("/checkout", json=body, headers=headers)


def _as(user_id):
    return {"X-User-Id": str(user_id)}


def _action(client, order_id, action, admin="admin-1", **form):
    return client.post(
        f"/admin/orders/{order_id}/actions/{action}",
        data=form,
        headers={"X-User-Id": admin},
        follow_redirects=False,
    )


def test_healthz(client):
    assert client.get("/healthz").json() == {"ok": True, "db": "up"}


def test_guest_checkout_creates_order_and_queues_confirmation(client, make_variant, make_cart):
    v = make_variant(price_cents=1500, name="Lamp")
    cart = make_cart([(v, 2)])

    r = _checkout(client, cart, email="Guest@Example.com", key="chk-1", shipping_cents=500)

    assert r.status_code == 201
    data = r.json()
    assert data["status"] == "created"
    assert data["total_cents"] == 3500
    assert data["idempotent"] is False

    detail = client.get(f"/orders/{data['order_id']}").json()
    assert detail["guest_email"] == "guest@example.com"
    assert [(it["product_name"], it["quantity"]) for it in detail["items"]] == [("Lamp", 2)]

    with SessionLocal() as s:
        (mail,) = s.execute(select(EmailOutbox)).scalars().all()
    assert mail.to_address == "Guest@Example.com"
    assert "Lamp" in mail.text_body


def test_checkout_replay_and_key_conflict(client, make_variant, make_cart):
    v = make_variant(stock=10)
    first = _checkout(client, make_cart([(v, 1)]), key="chk-1")
    again = _checkout(client, make_cart([(v, 1)]), key="chk-1")
    clash = _checkout(client, make_cart([(v, 3)]), key="chk-1")

    assert first.status_code == 201
    assert again.status_code == 200
    assert again.json()["order_id"] == first.json()["order_id"]
    assert again.json()["idempotent"] is True
    assert clash.status_code == 409
    assert clash.json()["code"] == "idempotency_conflict"


def test_guest_checkout_requires_email(client, make_variant, make_cart):
    r = _checkout(client, make_cart([(make_variant(), 1)]), email=None)
    assert r.status_code == 400


def test_out_of_stock_reports_items(client, make_variant, make_cart):
    v = make_variant(stock=1)
    r = _checkout(client, make_cart([(v, 4)]))

    assert r.status_code == 409
    body = r.json()
    assert body["code"] == "out_of_stock"
    assert body["items"] == [{"variant_id": str(v), "requested": 4, "available": 1}]


def test_checkout_survives_notification_failure(client, make_variant, make_cart, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("smtp down")

    monkeypatch.setattr(main.notifier, "enqueue", boom)
    r = _checkout(client, make_cart([(make_variant(), 1)]))

    assert r.status_code == 201


def test_user_order_is_hidden_from_other_users(client, make_order):
    order_id, user = make_order()

    assert client.get(f"/orders/{order_id}", headers={"X-User-Id": str(user)}).status_code == 200
    other = client.get(f"/orders/{order_id}", headers={"X-User-Id": str(uuid4())})
    assert other.status_code == 404
    assert other.json()["code"] == "not_found"
    assert client.get(f"/orders/{order_id}", headers={"X-User-Id": "not-a-uuid"}).status_code == 400


def test_pay_requires_idempotency_key(client, make_order):
    order_id, user = make_order()
    r = client.post(f"/orders/{order_id}/pay", headers={"X-User-Id": str(user)})
    assert r.status_code == 400


def test_pay_and_read_ledger(client, make_order):
    order_id, user = make_order(total_cents=4200)
    headers = {"X-User-Id": str(user), "Idempotency-Key": "pay-1"}

    r1 = client.post(f"/orders/{order_id}/pay", headers=headers)
    r2 = client.post(f"/orders/{order_id}/pay", headers=headers)

    assert r1.status_code == 200 and r1.json()["status"] == "succeeded"
    assert r2.json()["payment_id"] == r1.json()["payment_id"]
    assert r2.json()["idempotent"] is True

    ledger = client.get(f"/orders/{order_id}/ledger", headers=_as(user)).json()
    assert [(e["event"], e["amount_cents"]) for e in ledger] == [("payment_succeeded", 4200)]
    summary = client.get(f"/orders/{order_id}/ledger/summary", headers=_as(user)).json()
    assert summary["net_cents"] == 4200 and summary["entries"] == 1

    # a new key against a paid order
    r3 = client.post(f"/orders/{order_id}/pay", headers={"X-User-Id": str(user), "Idempotency-Key": "pay-2"})
    assert r3.status_code == 409


def test_ledger_of_unknown_order_is_404(client):
    assert client.get(f"/orders/{uuid4()}/ledger").status_code == 404
    assert client.get(f"/orders/{uuid4()}/ledger/summary").status_code == 404


def test_admin_refund_endpoint(client, make_paid_order, load_order):
    order_id, _ = make_paid_order(total_cents=8000)
    headers = {"X-User-Id": "admin-1", "Idempotency-Key": "rf-1"}

    r = client.post(f"/admin/orders/{order_id}/refund", json={"amount_cents": 3000, "reason": "scratch"},
                    headers=headers)

    assert r.status_code == 200
    assert r.json()["amount_cents"] == 3000
    assert load_order(order_id).status == OrderStatus.PARTIALLY_REFUNDED
    assert client.post(f"/admin/orders/{order_id}/refund", headers={"Idempotency-Key": "rf-2"}).status_code == 403
    assert client.post(f"/admin/orders/{order_id}/refund", headers={"X-User-Id": "admin-1"}).status_code == 400


def test_refund_of_unpaid_order_is_conflict(client, make_order):
    order_id, _ = make_order()
    r = client.post(f"/admin/orders/{order_id}/refund", headers={"X-User-Id": "admin-1", "Idempotency-Key": "rf"})
    assert r.status_code == 409
    assert r.json()["code"] == "not_refundable"


def test_unconfirmed_action_changes_nothing(client, make_paid_order, load_order):
    order_id, user = make_paid_order()

    r = _action(client, order_id, "ship", note="DHL")

    assert r.status_code == 303
    assert load_order(order_id).status == OrderStatus.PAID
    assert client.get(f"/orders/{order_id}/events", headers=_as(user)).json() == []


def test_confirmed_ship_action(client, make_paid_order, load_order):
    order_id, user = make_paid_order()

    r = _action(client, order_id, "ship", confirm="1", note="DHL 42")

    assert r.status_code == 303
    assert r.headers["location"] == f"/admin/orders/{order_id}"
    assert load_order(order_id).status == OrderStatus.SHIPPED
    (event,) = client.get(f"/orders/{order_id}/events", headers=_as(user)).json()
    assert (event["action"], event["from_status"], event["to_status"]) == ("ship", "paid", "shipped")
    assert event["note"] == "DHL 42"


def test_invalid_action_transition_is_409(client, make_order):
    order_id, _ = make_order()
    r = _action(client, order_id, "ship", confirm="1")
    assert r.status_code == 409
    assert r.json()["code"] == "invalid_transition"


def test_unknown_action_is_400(client, make_order):
    order_id, _ = make_order()
    r = _action(client, order_id, "teleport", confirm="1")
    assert r.status_code == 400


def test_refund_action_goes_through_refunds(client, make_paid_order, load_order):
    order_id, user = make_paid_order(total_cents=6000)

    r = _action(client, order_id, "refund", confirm="1", idempotency_key="act-1", amount_cents="2500")
    again = _action(client, order_id, "refund", confirm="1", idempotency_key="act-1", amount_cents="2500")

    assert r.status_code == again.status_code == 303
    order = load_order(order_id)
    assert order.refunded_cents == 2500
    assert order.status == OrderStatus.PARTIALLY_REFUNDED
    ledger = client.get(f"/orders/{order_id}/ledger", headers=_as(user)).json()
    assert sorted(e["amount_cents"] for e in ledger) == [-2500, 6000]


def test_actions_require_login(client, make_paid_order):
    order_id, _ = make_paid_order()
    r = client.post(f"/admin/orders/{order_id}/actions/ship", data={"confirm": "1"}, follow_redirects=False)
    assert r.status_code == 403


def test_order_history_and_ledger_are_hidden_from_other_users(client, make_paid_order):
    order_id, user = make_paid_order()
    stranger = _as(uuid4())

    for path in ("", "/events", "/ledger", "/ledger/summary"):
        assert client.get(f"/orders/{order_id}{path}", headers=_as(user)).status_code == 200
        r = client.get(f"/orders/{order_id}{path}", headers=stranger)
        assert r.status_code == 404, path
        assert r.json()["code"] == "not_found"
        assert client.get(f"/orders/{order_id}{path}").status_code == 404


def test_committed_order_survives_message_rendering_failure(client, make_variant, make_cart, make_order,
                                                            load_order, monkeypatch):
    def boom(order):
        raise RuntimeError("template error")

    monkeypatch.setattr(main, "order_confirmation_message", boom)
    monkeypatch.setattr(main, "payment_received_message", boom)

    assert _checkout(client, make_cart([(make_variant(), 1)])).status_code == 201

    order_id, user = make_order()
    r = client.post(f"/orders/{order_id}/pay", headers={**_as(user), "Idempotency-Key": "pay-1"})
    assert r.status_code == 200 and r.json()["status"] == "succeeded"
    assert load_order(order_id).status == OrderStatus.PAID
    with SessionLocal() as s:
        assert s.execute(select(EmailOutbox)).first() is None


def test_overlong_idempotency_key_is_400(client, make_order, make_paid_order):
    key = "k" * 65
    order_id, user = make_order()
    assert client.post(f"/orders/{order_id}/pay",
                       headers={**_as(user), "Idempotency-Key": key}).status_code == 400

    paid_id, _ = make_paid_order()
    r = client.post(f"/admin/orders/{paid_id}/refund", headers={"X-User-Id": "admin-1", "Idempotency-Key": key})
    assert r.status_code == 400
    assert _action(client, paid_id, "refund", confirm="1", idempotency_key=key).status_code == 400

    ok = client.post(f"/orders/{order_id}/pay", headers={**_as(user), "Idempotency-Key": "k" * 64})
    assert ok.status_code == 200


def test_malformed_refund_amount_does_not_refund_everything(client, make_paid_order, load_order):
    order_id, user = make_paid_order(total_cents=6000)

    for bad in ("12.50", "-5", "0", "abc"):
        r = _action(client, order_id, "refund", confirm="1", idempotency_key=f"bad-{bad}", amount_cents=bad)
        assert r.status_code == 400, bad

    order = load_order(order_id)
    assert order.status == OrderStatus.PAID and order.refunded_cents == 0
    assert client.get(f"/orders/{order_id}/ledger", headers=_as(user)).json()[0]["amount_cents"] == 6000

    # a blank amount still means everything that is left
    assert _action(client, order_id, "refund", confirm="1", idempotency_key="all").status_code == 303
    assert load_order(order_id).refunded_cents == 6000
