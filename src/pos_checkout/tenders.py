"""Tender ledger: the payments collected against a cart before settlement."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import FrozenSet, Iterable, List, Optional

from .errors import InvalidTender, TenderNotFound
from .pricing import ZERO, round2, to_decimal


class TenderMethod(str, Enum):
    CASH = "CASH"
    CARD = "CARD"
    UPI = "UPI"
    WALLET = "WALLET"
    GIFT_CARD = "GIFT_CARD"
    STORE_CREDIT = "STORE_CREDIT"

    @classmethod
    def parse(cls, code: object) -> "TenderMethod":
        if isinstance(code, cls):
            return code
        if not isinstance(code, str):
            raise InvalidTender(f"Tender method must be a string, got {code!r}")
        try:
            return cls(code.strip().upper())
        except ValueError:
            raise InvalidTender(f"Unknown tender method: {code!r}") from None


ALL_METHODS: FrozenSet[TenderMethod] = frozenset(TenderMethod)


@dataclass(frozen=True)
class Tender:
    method: TenderMethod
    amount: Decimal
    reference: Optional[str] = None


class TenderLedger:
    """Append-only list of tenders for one cart.

    Tenders may be removed by index until the cart settles.  The ledger
    does not cap overpayment; the settlement policy decides that.
    """

    def __init__(self, accepted_methods: Optional[Iterable[TenderMethod]] = None) -> None:
        self.accepted_methods: FrozenSet[TenderMethod] = (
            frozenset(accepted_methods) if accepted_methods is not None else ALL_METHODS
        )
        self._tenders: List[Tender] = []

    def __len__(self) -> int:
        return len(self._tenders)

    @property
    def tenders(self) -> List[Tender]:
        return list(self._tenders)

    def add_tender(self, method: object, amount: object, reference: Optional[str] = None) -> Tender:
        tm = TenderMethod.parse(method)
        if tm not in self.accepted_methods:
            raise InvalidTender(f"Tender method {tm.value} is not accepted")
        value = to_decimal(amount, "amount", InvalidTender)
        if value <= ZERO:
            raise InvalidTender(f"Tender amount must be positive, got {value}")
        if value != round2(value):
            raise InvalidTender(f"Tender amount must be in whole cents, got {value}")
        if reference is not None:
            reference = str(reference).strip() or None
        tender = Tender(method=tm, amount=round2(value), reference=reference)
        self._tenders.append(tender)
        return tender

    def remove_tender(self, index: int) -> Tender:
        if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index < len(self._tenders):
            raise TenderNotFound(index, len(self._tenders))
        return self._tenders.pop(index)

    @property
    def paid(self) -> Decimal:
        return sum((t.amount for t in self._tenders), ZERO)

    def due(self, grand_total: Decimal) -> Decimal:
        return max(ZERO, round2(grand_total) - self.paid)

    def change(self, grand_total: Decimal) -> Decimal:
        return max(ZERO, self.paid - round2(grand_total))
