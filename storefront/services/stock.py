# storefront/services/stock.py
import logging
from typing import Dict, Iterable, List, NamedTuple
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from storefront.config import settings
from storefront.db import run_in_transaction
from storefront.errors import OutOfStockError, OutOfStockItem
from storefront.metrics import out_of_stock
from storefront.models import ProductVariant

log = logging.getLogger(__name__)


class StockLine(NamedTuple):
    variant_id: UUID
    qty: int


def _merge(lines: Iterable[StockLine]) -> Dict[UUID, int]:
    want: Dict[UUID, int] = {}
    for ln in lines:
        want[ln.variant_id] = want.get(ln.variant_id, 0) + max(ln.qty, 1)
    return want


def deduct_stock_in_tx(db: Session, lines: List[StockLine]) -> None:
    """
    Decrement stock for every line inside the caller's transaction.

    Lines are merged per variant and processed in variant-id order so that
    concurrent checkouts always take row locks in the same order. Either every
    variant is decremented or OutOfStockError (listing every shortfall) is
    raised and nothing is.
    """
    if not lines:
        return

    want = _merge(lines)
    ids = sorted(want)

    rows = db.execute(
        select(ProductVariant.id, ProductVariant.stock)
        .where(ProductVariant.id.in_(ids))
        .order_by(ProductVariant.id)
        .with_for_update()
    ).all()
    avail = {r.id: r.stock for r in rows}

    shortfalls = [
        OutOfStockItem(variant_id=str(vid), requested=want[vid], available=avail.get(vid, 0))
        for vid in ids
        if avail.get(vid, 0) < want[vid]
    ]
    if shortfalls:
        out_of_stock.inc()
        raise OutOfStockError(shortfalls)

    # The conditional update is the source of truth; the read above only
    # serves to report all shortfalls at once.
    for vid in ids:
        req = want[vid]
        res = db.execute(
            update(ProductVariant)
            .where(ProductVariant.id == vid, ProductVariant.stock >= req)
            .values(stock=ProductVariant.stock - req)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            log.warning("stock changed under lock for variant %s (wanted %d)", vid, req)
            out_of_stock.inc()
            raise OutOfStockError([OutOfStockItem(variant_id=str(vid), requested=req, available=0)])


def deduct_stock(db: Session, lines: List[StockLine]) -> None:
    """Standalone deduction in its own transaction, retried on deadlock/lock timeout."""
    run_in_transaction(
        db,
        lambda tx: deduct_stock_in_tx(tx, lines),
        attempts=settings.stock_retry_attempts,
        backoff_ms=settings.stock_retry_backoff_ms,
    )
