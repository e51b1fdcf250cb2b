# storefront/services/ledger.py
import logging
from uuid import UUID

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from storefront.models import FinancialEntry

log = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "payment_succeeded"
REFUND_SUCCEEDED = "refund_succeeded"
REFUND_FAILED = "refund_failed"


def ensure_financial_entry(
    db: Session,
    order_id: UUID,
    event: str,
    amount_cents: int,
    currency: str,
    ref_type: str,
    ref_id: UUID,
) -> bool:
    """
    Append a ledger row unless (ref_type, ref_id, event) is already booked.
    The caller must hold the lock on the referenced payment/refund or its order;
    the unique constraint backs this up. Returns True if a row was written.
    """
    exists = db.execute(
        select(func.count()).select_from(FinancialEntry).where(
            FinancialEntry.ref_type == ref_type,
            FinancialEntry.ref_id == ref_id,
            FinancialEntry.event == event,
        )
    ).scalar_one()
    if exists:
        log.info("ledger entry %s for %s %s already booked", event, ref_type, ref_id)
        return False

    db.add(FinancialEntry(
        order_id=order_id, event=event, amount_cents=amount_cents,
        currency=currency, ref_type=ref_type, ref_id=ref_id,
    ))
    db.flush()
    return True


def entries_for_order(db: Session, order_id: UUID):
    return db.execute(
        select(FinancialEntry)
        .where(FinancialEntry.order_id == order_id)
        .order_by(FinancialEntry.created_at, FinancialEntry.id)
    ).scalars().all()


def net_settled_cents(db: Session, order_id: UUID) -> int:
    """Sum of all entries: paid amount minus refunded amount."""
    total = db.execute(
        select(func.coalesce(func.sum(FinancialEntry.amount_cents), 0))
        .where(FinancialEntry.order_id == order_id)
    ).scalar_one()
    return int(total or 0)


def ledger_summary(db: Session, order_id: UUID) -> dict:
    row = db.execute(
        select(
            func.coalesce(
                func.sum(case((FinancialEntry.amount_cents > 0, FinancialEntry.amount_cents), else_=0)), 0
            ).label("inflow"),
            func.coalesce(
                func.sum(case((FinancialEntry.amount_cents < 0, FinancialEntry.amount_cents), else_=0)), 0
            ).label("outflow"),
            func.count(FinancialEntry.id).label("entries"),
        ).where(FinancialEntry.order_id == order_id)
    ).one()
    inflow = int(row.inflow or 0)
    outflow = int(row.outflow or 0)
    return {
        "order_id": order_id,
        "inflow_cents": inflow,
        "outflow_cents": outflow,
        "net_cents": inflow + outflow,
        "entries": int(row.entries or 0),
    }
