import logging
from contextlib import asynccontextmanager
from typing import List, Optional
from uuid import UUID, uuid4

from fastapi import Body, FastAPI, Form, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from storefront import providers
from storefront.config import settings
from storefront.db import SessionLocal, engine, ping_db
from storefront.errors import Internal, NotActionable, StorefrontError, WebhookVerificationError
from storefront.logging_setup import configure_logging
from storefront.metrics import metrics_asgi_app
from storefront.models import Base, Order
from storefront.schemas import (
    CheckoutIn, CreateOrderResult, LedgerEntryOut, LedgerSummaryOut, OrderDetail,
    OrderEventOut, PayIn, PayOrderResult, RefundIn, RefundOrderResult,
)
from storefront.services import webhooks
from storefront.services.ledger import entries_for_order, ledger_summary
from storefront.services.notifications import (
    OutboxNotifier, notify_order_safely, order_confirmation_message, payment_received_message,
)
from storefront.services.orders import create_from_cart, get_order, order_events, transition
from storefront.services.payments import authorize_actor, pay_order
from storefront.services.refunds import refund_order

log = logging.getLogger(__name__)

ADMIN_ACTIONS = {"ship", "deliver", "cancel", "refund"}
IDEMPOTENCY_KEY_MAX = 64

notifier = OutboxNotifier(SessionLocal)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # runs once at startup
    configure_logging(settings.log_level)
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(title="Storefront Orders", lifespan=lifespan)

app.mount("/metrics", metrics_asgi_app)


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    body = {"detail": exc.detail, "code": exc.code}
    items = getattr(exc, "items", None)
    if items:
        body["items"] = [it.model_dump() for it in items]
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(SQLAlchemyError)
async def db_error_handler(request: Request, exc: SQLAlchemyError):
    log.exception("database error on %s %s", request.method, request.url.path)
    err = Internal()
    return JSONResponse(status_code=err.status_code, content={"detail": err.detail, "code": err.code})


def _actor(x_user_id: Optional[str]) -> Optional[UUID]:
    if not x_user_id:
        return None
    try:
        return UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid X-User-Id header")


def _idempotency_key(raw: Optional[str], required: bool = True) -> str:
    key = (raw or "").strip()
    if required and not key:
        raise HTTPException(status_code=400, detail="Missing Idempotency-Key header")
    # payments.idempotency_key / refunds.idempotency_key are String(64)
    if len(key) > IDEMPOTENCY_KEY_MAX:
        raise HTTPException(status_code=400, detail=f"Idempotency-Key longer than {IDEMPOTENCY_KEY_MAX} characters")
    return key


def _owned_order(db, order_id: UUID, x_user_id: Optional[str]) -> Order:
    """The order, if the caller may see it; 404 otherwise."""
    order = get_order(db, order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    authorize_actor(order, _actor(x_user_id))
    return order


@app.get("/")
def root():
    return {"service": "storefront", "docs": "/docs"}


@app.get("/healthz")
def healthz():
    try:
        ping_db()
        return {"ok": True, "db": "up"}
    except SQLAlchemyError:
        return {"ok": False, "db": "down"}


@app.post("/checkout", response_model=CreateOrderResult, status_code=201, tags=["checkout"])
def checkout(payload: CheckoutIn, response: Response,
             x_user_id: Optional[str] = Header(None, alias="X-User-Id")):
    user_id = _actor(x_user_id)
    email = (payload.email or "").strip()
    if user_id is None and not email:
        raise HTTPException(status_code=400, detail="email is required for guest checkout")

    with SessionLocal() as db:
        try:
            result = create_from_cart(
                db,
                cart_id=payload.cart_id,
                user_id=user_id,
                guest_email=email if user_id is None else None,
                idempotency_key=payload.idempotency_key,
                tax_cents=payload.tax_cents,
                shipping_cents=payload.shipping_cents,
                discount_cents=payload.discount_cents,
                shipping_address=payload.shipping_address,
                billing_address=payload.billing_address,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    if result.idempotent:
        response.status_code = 200
        return result

    # order is committed; mail problems never fail the request
    notify_order_safely(notifier, SessionLocal, result.order_id, order_confirmation_message, to=email)
    return result


@app.get("/orders/{order_id}", response_model=OrderDetail, tags=["orders"])
def read_order(order_id: UUID, x_user_id: Optional[str] = Header(None, alias="X-User-Id")):
    with SessionLocal() as db:
        return OrderDetail.model_validate(_owned_order(db, order_id, x_user_id))


@app.get("/orders/{order_id}/events", response_model=List[OrderEventOut], tags=["orders"])
def read_order_events(order_id: UUID, x_user_id: Optional[str] = Header(None, alias="X-User-Id")):
    with SessionLocal() as db:
        _owned_order(db, order_id, x_user_id)
        return [OrderEventOut.model_validate(e) for e in order_events(db, order_id)]


@app.post("/orders/{order_id}/pay", response_model=PayOrderResult, tags=["orders"])
def pay(order_id: UUID,
        payload: Optional[PayIn] = Body(None),
        Idempotency_Key: Optional[str] = Header(None, alias="Idempotency-Key"),
        x_user_id: Optional[str] = Header(None, alias="X-User-Id")):
    key = _idempotency_key(Idempotency_Key)
    payload = payload or PayIn()
    order_url = f"{settings.base_url}/orders/{order_id}"

    with SessionLocal() as db:
        result = pay_order(
            db, order_id, key,
            actor_user_id=_actor(x_user_id),
            return_url=payload.return_url or order_url,
            cancel_url=payload.cancel_url or order_url,
        )
    if result.idempotent or result.status != "succeeded":
        return result

    notify_order_safely(notifier, SessionLocal, order_id, payment_received_message)
    return result


@app.get("/orders/{order_id}/ledger", response_model=List[LedgerEntryOut], tags=["ledger"])
def get_order_ledger(order_id: UUID, x_user_id: Optional[str] = Header(None, alias="X-User-Id")):
    with SessionLocal() as db:
        _owned_order(db, order_id, x_user_id)
        return [LedgerEntryOut.model_validate(e) for e in entries_for_order(db, order_id)]


@app.get("/orders/{order_id}/ledger/summary", response_model=LedgerSummaryOut, tags=["ledger"])
def get_order_ledger_summary(order_id: UUID, x_user_id: Optional[str] = Header(None, alias="X-User-Id")):
    with SessionLocal() as db:
        _owned_order(db, order_id, x_user_id)
        return ledger_summary(db, order_id)


@app.post("/admin/orders/{order_id}/refund", response_model=RefundOrderResult, tags=["admin"])
def admin_refund(order_id: UUID,
                 payload: Optional[RefundIn] = Body(None),
                 Idempotency_Key: Optional[str] = Header(None, alias="Idempotency-Key"),
                 x_user_id: Optional[str] = Header(None, alias="X-User-Id")):
    if not x_user_id:
        raise HTTPException(status_code=403, detail="Login required")
    key = _idempotency_key(Idempotency_Key)
    payload = payload or RefundIn()
    with SessionLocal() as db:
        return refund_order(db, order_id, x_user_id, key,
                            amount_cents=payload.amount_cents, reason=payload.reason)


def _form_amount(raw: str) -> int:
    """Blank means "everything left"; anything else must be a positive whole number of cents."""
    raw = raw.strip()
    if not raw:
        return 0
    try:
        n = int(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="amount_cents must be a whole number of cents")
    if n <= 0:
        raise HTTPException(status_code=400, detail="amount_cents must be positive")
    return n


@app.post("/admin/orders/{order_id}/actions/{action}", tags=["admin"])
def admin_order_action(order_id: UUID, action: str,
                       confirm: str = Form(""),
                       note: str = Form(""),
                       idempotency_key: str = Form(""),
                       amount_cents: str = Form(""),
                       x_user_id: Optional[str] = Header(None, alias="X-User-Id")):
    if not x_user_id:
        raise HTTPException(status_code=403, detail="Login required")

    back = RedirectResponse(url=f"/admin/orders/{order_id}", status_code=303)
    if confirm != "1":
        # unconfirmed actions do nothing
        return back
    if action not in ADMIN_ACTIONS:
        raise NotActionable(f"unknown action: {action}")

    with SessionLocal() as db:
        if action == "refund":
            amount = _form_amount(amount_cents)
            key = _idempotency_key(idempotency_key, required=False) or uuid4().hex
            res = refund_order(db, order_id, x_user_id, key, amount_cents=amount, reason=note)
            log.info("admin %s refund on order %s: %s%s", x_user_id, order_id, res.status,
                     " (idempotent)" if res.idempotent else "")
        else:
            transition(db, order_id, x_user_id, action, note)
    return back


def _apply_webhook(provider: providers.PaymentProvider, headers, body: bytes) -> None:
    ev = provider.verify_and_parse_webhook(headers, body)
    with SessionLocal() as db:
        webhooks.handle(db, provider.name, ev, body)


@app.post("/webhooks/{provider_name}", tags=["webhooks"])
async def provider_webhook(provider_name: str, request: Request):
    try:
        provider = providers.get_provider(provider_name)
    except KeyError:
        raise HTTPException(status_code=404, detail="Unknown provider")

    body = await request.body()
    try:
        await run_in_threadpool(_apply_webhook, provider, dict(request.headers), body)
    except WebhookVerificationError:
        return JSONResponse(status_code=400, content={"ok": False, "error": "invalid signature or payload"})
    except StorefrontError as e:
        # 500 so the provider retries later
        log.error("webhook apply failed provider=%s: %s", provider_name, e)
        return JSONResponse(status_code=500, content={"ok": False})
    return {"ok": True}
