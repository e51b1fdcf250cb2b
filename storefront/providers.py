# storefront/providers.py
import abc
import hashlib
import hmac
import itertools
import json
import logging
import time
from typing import Mapping, Optional
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from storefront.config import settings
from storefront.errors import WebhookVerificationError

log = logging.getLogger(__name__)

# Provider-reported statuses
INITIATED = "initiated"
SUCCEEDED = "succeeded"
FAILED = "failed"
REQUIRES_REDIRECT = "requires_redirect"


class ProviderError(Exception):
    """Transport-level failure talking to the provider (timeout, 5xx, refused)."""


class CreatePaymentRequest(BaseModel):
    order_id: str
    amount_cents: int
    currency: str
    idempotency_key: str
    return_url: str = ""
    cancel_url: str = ""


class CreatePaymentResponse(BaseModel):
    provider_ref: str = ""
    status: str  # initiated | succeeded | failed | requires_redirect
    redirect_url: Optional[str] = None


class RefundRequest(BaseModel):
    order_id: str
    payment_id: str
    payment_ref: str = ""
    amount_cents: int
    currency: str
    idempotency_key: str
    reason: str = ""


class RefundResponse(BaseModel):
    provider_ref: str = ""
    status: str  # initiated | succeeded | failed


class WebhookEvent(BaseModel):
    event_id: str
    type: str  # payment.succeeded | payment.failed | refund.succeeded | refund.failed
    payment_ref: str = ""
    refund_ref: str = ""
    amount_cents: int = 0
    currency: str = ""


class PaymentProvider(abc.ABC):
    @property
    @abc.abstractmethod
    def name(self) -> str:
        ...

    @abc.abstractmethod
    def create_payment(self, req: CreatePaymentRequest) -> CreatePaymentResponse:
        ...

    @abc.abstractmethod
    def refund_payment(self, req: RefundRequest) -> RefundResponse:
        ...

    @abc.abstractmethod
    def verify_and_parse_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        """Raise WebhookVerificationError on a bad signature or malformed body."""


# --- mock provider -----------------------------------------------------------

SIGNATURE_HEADER = "X-Mock-Signature"


def compute_signature(secret: str, timestamp: int, body: bytes) -> str:
    m = hmac.new(secret.encode(), digestmod=hashlib.sha256)
    m.update(str(timestamp).encode())
    m.update(b".")
    m.update(body)
    return m.hexdigest()


class _MockWebhookData(BaseModel):
    payment_ref: str = ""
    refund_ref: str = ""
    amount_cents: int = 0
    currency: str = ""


class _MockWebhookPayload(BaseModel):
    id: str
    type: str
    data: _MockWebhookData = _MockWebhookData()


class MockProvider(PaymentProvider):
    """
    In-process provider for local runs and tests.

    Outcomes are configurable per instance: "succeeded", "initiated",
    "requires_redirect", "failed", or "error" (raises ProviderError, i.e. a
    transport failure). Webhooks are signed as
    X-Mock-Signature: t=<unix>,v1=<hex hmac_sha256(secret, "<t>.<body>")>.
    """

    def __init__(self, secret: Optional[str] = None,
                 payment_outcome: Optional[str] = None,
                 refund_outcome: Optional[str] = None,
                 tolerance_secs: Optional[int] = None):
        self.secret = secret if secret is not None else settings.mock_webhook_secret
        self.payment_outcome = payment_outcome or settings.mock_payment_outcome
        self.refund_outcome = refund_outcome or settings.mock_refund_outcome
        self.tolerance_secs = tolerance_secs if tolerance_secs is not None else settings.webhook_tolerance_secs
        self.payment_calls = 0
        self.refund_calls = 0
        self._seq = itertools.count(1)

    @property
    def name(self) -> str:
        return "mock"

    def _ref(self, prefix: str) -> str:
        return f"{prefix}_{next(self._seq)}_{uuid4().hex[:12]}"

    def create_payment(self, req: CreatePaymentRequest) -> CreatePaymentResponse:
        self.payment_calls += 1
        outcome = self.payment_outcome
        log.info("mock create_payment order=%s amount=%d %s -> %s",
                 req.order_id, req.amount_cents, req.currency, outcome)
        if outcome == "error":
            raise ProviderError("mock provider unavailable")
        ref = self._ref("pay")
        if outcome == REQUIRES_REDIRECT:
            return CreatePaymentResponse(
                provider_ref=ref, status=REQUIRES_REDIRECT,
                redirect_url=f"https://mock.pay/checkout/{ref}?return={req.return_url}",
            )
        return CreatePaymentResponse(provider_ref=ref, status=outcome)

    def refund_payment(self, req: RefundRequest) -> RefundResponse:
        self.refund_calls += 1
        outcome = self.refund_outcome
        log.info("mock refund_payment payment=%s amount=%d %s -> %s",
                 req.payment_ref, req.amount_cents, req.currency, outcome)
        if outcome == "error":
            raise ProviderError("mock provider unavailable")
        return RefundResponse(provider_ref=self._ref("re"), status=outcome)

    def sign_webhook(self, body: bytes, timestamp: Optional[int] = None) -> str:
        t = int(time.time()) if timestamp is None else timestamp
        return f"t={t},v1={compute_signature(self.secret, t, body)}"

    def verify_and_parse_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        sig_header = None
        for k, v in headers.items():
            if k.lower() == SIGNATURE_HEADER.lower():
                sig_header = v
                break
        if not sig_header:
            raise WebhookVerificationError("missing signature header")

        parts = dict(p.split("=", 1) for p in sig_header.split(",") if "=" in p)
        try:
            t = int(parts.get("t", ""))
        except ValueError:
            raise WebhookVerificationError("bad signature timestamp")
        sig = parts.get("v1", "")

        if self.tolerance_secs > 0 and abs(time.time() - t) > self.tolerance_secs:
            raise WebhookVerificationError("signature timestamp outside tolerance")
        if not hmac.compare_digest(sig, compute_signature(self.secret, t, body)):
            raise WebhookVerificationError("signature mismatch")

        try:
            payload = _MockWebhookPayload.model_validate(json.loads(body))
        except (ValueError, ValidationError):
            raise WebhookVerificationError("malformed webhook body")
        if not payload.id or not payload.type:
            raise WebhookVerificationError("malformed webhook body")

        return WebhookEvent(
            event_id=payload.id,
            type=payload.type,
            payment_ref=payload.data.payment_ref,
            refund_ref=payload.data.refund_ref,
            amount_cents=payload.data.amount_cents,
            currency=payload.data.currency,
        )


_providers = {}


def get_provider(name: Optional[str] = None) -> PaymentProvider:
    """Return the (process-wide) provider registered under name."""
    name = name or settings.payment_provider
    if name not in _providers:
        if name != "mock":
            raise KeyError(f"unknown payment provider: {name}")
        _providers[name] = MockProvider()
    return _providers[name]


def register_provider(provider: PaymentProvider) -> None:
    _providers[provider.name] = provider
