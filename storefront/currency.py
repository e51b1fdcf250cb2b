# storefront/currency.py
from decimal import ROUND_HALF_UP, Decimal


def convert(amount_cents: int, rate) -> int:
    """
    Convert a minor-unit amount for display. Rounds half away from zero, the
    same way for negative amounts (refunds) as for positive ones.
    """
    if rate == 1:
        return amount_cents
    val = Decimal(amount_cents) * Decimal(str(rate))
    return int(val.quantize(Decimal(1), rounding=ROUND_HALF_UP))
