"""Line pricing for the checkout engine.

A cart line's tax and total are derived from four inputs only (unit
price, quantity, discount and tax percentage) so the same inputs always
price the same way.  Amounts are carried as :class:`~decimal.Decimal`
and only the tax amount is rounded here; everything else is rounded with
:func:`round2` when it is persisted or reported.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from .errors import InvalidDiscount, InvalidPrice, InvalidQuantity, InvalidTaxRate

CENT = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")


def round2(value: Decimal) -> Decimal:
    """Round a currency amount to cents, half-up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(value: object, field: str, error: type = InvalidPrice) -> Decimal:
    """Strictly coerce ``value`` to a finite Decimal.

    Floats go through ``str`` so ``0.1`` stays ``0.1``.  Booleans, None,
    NaN/inf and unparsable strings raise ``error`` rather than defaulting
    to zero.
    """
    if isinstance(value, bool) or value is None:
        raise error(f"{field} must be a number, got {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        if not math.isfinite(value):
            raise error(f"{field} must be finite, got {value!r}")
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise error(f"{field} is not a number: {value!r}") from None
    else:
        raise error(f"{field} must be a number, got {type(value).__name__}")
    if not result.is_finite():
        raise error(f"{field} must be finite, got {value!r}")
    return result


@dataclass(frozen=True)
class LinePrice:
    base: Decimal
    discount: Decimal
    tax_amount: Decimal
    line_total: Decimal

    @property
    def net(self) -> Decimal:
        return self.base - self.discount


def price_line(
    unit_price: Decimal,
    quantity: Decimal,
    discount: Decimal = ZERO,
    tax_rate: Optional[Decimal] = None,
) -> LinePrice:
    """Compute tax and total for one line.

    A discount larger than ``unit_price * quantity`` is clamped to that
    base so a line never goes negative.  ``tax_rate`` of None means the
    item is untaxed.
    """
    unit_price = to_decimal(unit_price, "unit_price", InvalidPrice)
    quantity = to_decimal(quantity, "quantity", InvalidQuantity)
    discount = to_decimal(discount, "discount", InvalidDiscount)
    if unit_price < ZERO:
        raise InvalidPrice(f"unit_price must be >= 0, got {unit_price}")
    if quantity == ZERO:
        raise InvalidQuantity("quantity must be non-zero")
    if discount < ZERO:
        raise InvalidDiscount(f"discount must be >= 0, got {discount}")

    rate = ZERO
    if tax_rate is not None:
        rate = to_decimal(tax_rate, "tax_rate", InvalidTaxRate)
        if rate < ZERO or rate > HUNDRED:
            raise InvalidTaxRate(f"tax_rate must be within 0..100, got {rate}")

    base = unit_price * quantity
    discount = min(discount, max(base, ZERO))
    net = base - discount
    tax_amount = round2(net * rate / HUNDRED)
    return LinePrice(
        base=base,
        discount=discount,
        tax_amount=tax_amount,
        line_total=net + tax_amount,
    )
