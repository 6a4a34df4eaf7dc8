"""Cart aggregate: ordered, priced lines plus totals derived on demand."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, UTC
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from .errors import CartNotOpen, InvalidDiscount, InvalidQuantity, LineNotFound
from .pricing import HUNDRED, ZERO, price_line, round2, to_decimal
from .tenders import TenderLedger


@dataclass(frozen=True)
class TaxRate:
    id: int
    name: str
    rate: Decimal


@dataclass(frozen=True)
class Item:
    """Catalog snapshot of an item at the moment it was scanned."""
    id: int
    name: str
    mrp: Decimal
    tax_rate_id: Optional[int] = None
    tax_rate: Optional[Decimal] = None
    barcode: Optional[str] = None


@dataclass
class CartLine:
    item_id: int
    name: str
    quantity: Decimal
    unit_price: Decimal
    discount: Decimal
    tax_rate_id: Optional[int]
    tax_rate: Optional[Decimal]
    tax_amount: Decimal
    line_total: Decimal

    @property
    def base(self) -> Decimal:
        return self.unit_price * self.quantity

    @classmethod
    def priced(
        cls,
        item_id: int,
        name: str,
        quantity: Decimal,
        unit_price: Decimal,
        discount: Decimal,
        tax_rate_id: Optional[int],
        tax_rate: Optional[Decimal],
    ) -> "CartLine":
        price = price_line(unit_price, quantity, discount, tax_rate)
        return cls(
            item_id=item_id,
            name=name,
            quantity=to_decimal(quantity, "quantity", InvalidQuantity),
            unit_price=to_decimal(unit_price, "unit_price"),
            discount=price.discount,
            tax_rate_id=tax_rate_id,
            tax_rate=tax_rate,
            tax_amount=price.tax_amount,
            line_total=price.line_total,
        )

    def repriced(self, **changes) -> "CartLine":
        line = replace(self, **changes)
        return CartLine.priced(
            line.item_id,
            line.name,
            line.quantity,
            line.unit_price,
            line.discount,
            line.tax_rate_id,
            line.tax_rate,
        )


class CartState(str, Enum):
    OPEN = "OPEN"
    SETTLING = "SETTLING"
    SETTLED = "SETTLED"
    DISCARDED = "DISCARDED"


@dataclass(frozen=True)
class CartTotals:
    subtotal: Decimal
    total_discount: Decimal
    total_tax: Decimal
    grand_total: Decimal
    paid: Decimal
    due: Decimal
    change: Decimal


@dataclass
class Cart:
    id: str
    lines: List[CartLine] = field(default_factory=list)
    state: CartState = CartState.OPEN
    ledger: TenderLedger = field(default_factory=TenderLedger)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    touched_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    # ---- derived totals (never stored) ----

    @property
    def subtotal(self) -> Decimal:
        return sum((ln.base for ln in self.lines), ZERO)

    @property
    def total_discount(self) -> Decimal:
        return sum((ln.discount for ln in self.lines), ZERO)

    @property
    def total_tax(self) -> Decimal:
        return sum((ln.tax_amount for ln in self.lines), ZERO)

    @property
    def grand_total(self) -> Decimal:
        return sum((ln.line_total for ln in self.lines), ZERO)

    @property
    def payable(self) -> Decimal:
        """Amount the customer owes: the sum of the cent-rounded line totals.

        Equal to what the persisted receipt lines add up to, which can
        differ from ``round2(grand_total)`` by a cent when quantities are
        fractional.
        """
        return sum((round2(ln.line_total) for ln in self.lines), ZERO)

    def totals(self) -> CartTotals:
        """Rounded view of the totals, as reported to callers.

        Every figure is a sum of per-line rounded values taken from one
        snapshot of the lines.
        """
        lines = list(self.lines)
        grand = sum((round2(ln.line_total) for ln in lines), ZERO)
        return CartTotals(
            subtotal=sum((round2(ln.base) for ln in lines), ZERO),
            total_discount=sum((round2(ln.discount) for ln in lines), ZERO),
            total_tax=sum((ln.tax_amount for ln in lines), ZERO),
            grand_total=grand,
            paid=self.ledger.paid,
            due=self.ledger.due(grand),
            change=self.ledger.change(grand),
        )

    # ---- mutations ----

    def require_open(self) -> None:
        if self.state is not CartState.OPEN:
            raise CartNotOpen(self.id, self.state.value)

    def _touch(self) -> None:
        self.touched_at = datetime.now(UTC)

    def _line_index(self, index: object) -> int:
        if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index < len(self.lines):
            raise LineNotFound(index, len(self.lines))
        return index

    def add_line(self, item: Item, quantity: object = 1) -> CartLine:
        """Append a new line for ``item``; repeated scans are not merged."""
        self.require_open()
        qty = to_decimal(quantity, "quantity", InvalidQuantity)
        if qty <= ZERO:
            raise InvalidQuantity(f"quantity must be positive, got {qty}")
        line = CartLine.priced(
            item_id=item.id,
            name=item.name,
            quantity=qty,
            unit_price=item.mrp,
            discount=ZERO,
            tax_rate_id=item.tax_rate_id,
            tax_rate=item.tax_rate,
        )
        self.lines.append(line)
        self._touch()
        return line

    def update_line(
        self,
        index: int,
        quantity: object = None,
        unit_price: object = None,
        discount: object = None,
    ) -> Optional[CartLine]:
        """Patch a line and re-price it with its own tax snapshot.

        Returns the new line, or None when the quantity dropped to zero or
        below and the line was deleted.
        """
        self.require_open()
        idx = self._line_index(index)
        changes = {}
        if quantity is not None:
            qty = to_decimal(quantity, "quantity", InvalidQuantity)
            if qty <= ZERO:
                del self.lines[idx]
                self._touch()
                return None
            changes["quantity"] = qty
        if unit_price is not None:
            changes["unit_price"] = to_decimal(unit_price, "unit_price")
        if discount is not None:
            changes["discount"] = to_decimal(discount, "discount", InvalidDiscount)
        line = self.lines[idx].repriced(**changes)
        self.lines[idx] = line
        self._touch()
        return line

    def remove_line(self, index: int) -> CartLine:
        self.require_open()
        idx = self._line_index(index)
        self._touch()
        return self.lines.pop(idx)

    def apply_cart_discount(self, percent: object) -> None:
        """Set every line's discount to ``percent`` of its pre-tax base.

        Overwrites any manual line discount.  Applying the same percent
        twice gives the same result as applying it once.
        """
        self.require_open()
        pct = to_decimal(percent, "percent", InvalidDiscount)
        if pct < ZERO or pct > HUNDRED:
            raise InvalidDiscount(f"Discount percent must be within 0..100, got {pct}")
        self.lines = [
            ln.repriced(discount=round2(ln.base * pct / HUNDRED)) for ln in self.lines
        ]
        self._touch()
