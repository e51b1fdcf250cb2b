# storefront/services/notifications.py
import abc
import html
import logging
from typing import Callable, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from storefront.models import EmailOutbox, Order

log = logging.getLogger(__name__)


class Notifier(abc.ABC):
    @abc.abstractmethod
    def enqueue(self, to: str, subject: str, text_body: str, html_body: str) -> None:
        ...


class OutboxNotifier(Notifier):
    """Queues mail in the email_outbox table, in a session of its own."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def enqueue(self, to: str, subject: str, text_body: str, html_body: str) -> None:
        with self.session_factory() as db:
            with db.begin():
                db.add(EmailOutbox(to_address=to, subject=subject, text_body=text_body, html_body=html_body))


def notify_safely(notifier: Optional[Notifier], to: Optional[str], subject: str,
                  text_body: str, html_body: str) -> bool:
    """
    Fire-and-forget: the order or payment this mail belongs to is already
    committed, so a failure here is logged and otherwise ignored.
    """
    if notifier is None or not to:
        return False
    try:
        notifier.enqueue(to, subject, text_body, html_body)
        return True
    except Exception:
        log.exception("failed to enqueue notification to %s (%s)", to, subject)
        return False


def notify_order_safely(notifier: Optional[Notifier], session_factory: Callable[[], Session], order_id: UUID,
                        build: Callable[[Order], Tuple[str, str, str]], to: Optional[str] = None) -> bool:
    """
    Load a committed order, render a message for it and queue it. Reading and
    rendering are guarded like the send itself. Without `to` the order's
    guest address is used.
    """
    if notifier is None:
        return False
    try:
        with session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                return False
            to = to or order.guest_email
            subject, text_body, html_body = build(order)
    except Exception:
        log.exception("failed to render notification for order %s", order_id)
        return False
    return notify_safely(notifier, to, subject, text_body, html_body)


def _money(cents: int, currency: str) -> str:
    sign = "-" if cents < 0 else ""
    cents = abs(cents)
    return f"{sign}{cents // 100}.{cents % 100:02d} {currency}"


def order_confirmation_message(order: Order) -> Tuple[str, str, str]:
    subject = f"Order confirmation #{order.id}"
    lines = [f"Your order #{order.id} has been received.", ""]
    for it in order.items:
        lines.append(f"{it.quantity} x {it.product_name} ({it.sku})  {_money(it.line_total_cents, it.currency)}")
    lines += ["", f"Total: {_money(order.total_cents, order.currency)}", "", "Thank you!"]
    text_body = "\n".join(lines)
    html_body = "<html><body>" + "".join(
        f"<p>{html.escape(ln)}</p>" for ln in lines if ln
    ) + "</body></html>"
    return subject, text_body, html_body


def payment_received_message(order: Order) -> Tuple[str, str, str]:
    subject = f"Payment received for order #{order.id}"
    text_body = f"We received your payment of {_money(order.total_cents, order.currency)} for order #{order.id}."
    return subject, text_body, f"<html><body><p>{html.escape(text_body)}</p></body></html>"
