"""Settlement: the atomic conversion of an open cart into a receipt.

A cart moves ``OPEN -> SETTLING -> SETTLED`` while its registry lock is
held, so no other caller can observe the intermediate state.  Validation
happens before any write; the receipt, its lines, payments and stock
postings are then written in a single sqlite transaction.  On a write
failure the transaction is rolled back, the cart goes back to ``OPEN``
and :class:`SettlementPersistenceFailed` is raised.  Nothing retries.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, UTC
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from .cart import Cart, CartState
from .dao import Receipt, ReceiptDAO, ReceiptLine, ReceiptPayment, StockLedgerEntry
from .errors import (
    CheckoutError,
    EmptyCart,
    ExcessChange,
    InsufficientPayment,
    NoPayment,
    ReceiptNotFound,
    ReturnNotAllowed,
    SettlementPersistenceFailed,
)
from .metrics import SETTLEMENT_DURATION_SECONDS, SETTLEMENT_ERROR_TOTAL, TENDER_AMOUNT_TOTAL
from .pricing import ZERO, round2
from .registry import CartRegistry

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def split_gst(total_tax: Decimal) -> Tuple[Decimal, Decimal, Decimal]:
    """Intra-state split: CGST and SGST halves, no IGST.

    CGST takes the odd cent and SGST the remainder, so the halves add back up.
    """
    cgst = round2(total_tax / 2)
    return cgst, total_tax - cgst, ZERO


def _neg(value: Decimal) -> Decimal:
    # ZERO - x never yields Decimal("-0")
    return ZERO - value


class ReceiptNumberGenerator:
    """Allocates ``<prefix><YYYYMMDD>-<seq>`` receipt numbers.

    The sequence restarts each day from the highest number already in the
    database, and allocation is guarded by a lock so concurrent
    settlements never share a number.  The UNIQUE constraint on
    ``Receipt.receipt_number`` catches collisions across processes.
    """

    def __init__(self, receipt_dao: ReceiptDAO, prefix: str = "R", clock: Clock = _utcnow) -> None:
        self._dao = receipt_dao
        self.prefix = prefix
        self._clock = clock
        self._lock = threading.Lock()
        self._day: Optional[str] = None
        self._seq = 0

    def next(self) -> str:
        with self._lock:
            day = self._clock().strftime("%Y%m%d")
            stem = f"{self.prefix}{day}-"
            if day != self._day:
                self._day = day
                self._seq = self._dao.max_sequence(stem)
            self._seq += 1
            return f"{stem}{self._seq:06d}"


class SettlementEngine:

    def __init__(
        self,
        registry: CartRegistry,
        receipt_dao: Optional[ReceiptDAO] = None,
        numbers: Optional[ReceiptNumberGenerator] = None,
        max_change: Optional[Decimal] = None,
        clock: Clock = _utcnow,
    ) -> None:
        self.registry = registry
        self.receipt_dao = receipt_dao or ReceiptDAO()
        self.numbers = numbers or ReceiptNumberGenerator(self.receipt_dao, clock=clock)
        self.max_change = max_change
        self._clock = clock
        self._return_lock = threading.Lock()

    # ---- sale ----

    def validate(self, cart: Cart) -> None:
        """Check settlement preconditions in order, stopping at the first failure."""
        cart.require_open()
        if not cart.lines:
            raise EmptyCart(cart.id)
        if not len(cart.ledger):
            raise NoPayment(cart.id)
        grand_total = cart.payable
        due = cart.ledger.due(grand_total)
        if due > ZERO:
            raise InsufficientPayment(cart.id, due)
        change = cart.ledger.change(grand_total)
        if self.max_change is not None and change > self.max_change:
            raise ExcessChange(cart.id, change, self.max_change)

    def settle(self, cart_id: str) -> Receipt:
        start = time.perf_counter()
        outcome = "error"
        try:
            with self.registry.locked(cart_id) as cart:
                self.validate(cart)
                receipt, entries = self._build_sale(cart)
                cart.state = CartState.SETTLING

                def reopen() -> None:
                    cart.state = CartState.OPEN

                self._persist(cart.id, receipt, entries, on_failure=reopen)
                cart.state = CartState.SETTLED
                self.registry.dispose(cart.id)
            outcome = "success"
        except CheckoutError as exc:
            SETTLEMENT_ERROR_TOTAL.inc(kind=exc.kind)
            logger.warning(
                "Settlement rejected",
                extra={"request_id": cart_id, "extra": {"kind": exc.kind, "detail": str(exc)}},
            )
            raise
        finally:
            SETTLEMENT_DURATION_SECONDS.observe(time.perf_counter() - start, outcome=outcome)

        for payment in receipt.payments:
            TENDER_AMOUNT_TOTAL.inc(float(payment.amount), method=payment.method)
        logger.info(
            "Cart settled",
            extra={
                "request_id": receipt.receipt_number,
                "extra": {
                    "cart_id": cart_id,
                    "grand_total": receipt.grand_total,
                    "paid": receipt.paid,
                    "change": receipt.change,
                    "lines": len(receipt.lines),
                },
            },
        )
        return receipt

    def _build_sale(self, cart: Cart) -> Tuple[Receipt, List[StockLedgerEntry]]:
        receipt_number = self.numbers.next()
        created_at = self._clock().isoformat()
        lines = tuple(
            ReceiptLine(
                line_no=i,
                item_id=ln.item_id,
                name=ln.name,
                quantity=ln.quantity,
                unit_price=round2(ln.unit_price),
                discount=round2(ln.discount),
                tax_rate_id=ln.tax_rate_id,
                tax_amount=ln.tax_amount,
                line_total=round2(ln.line_total),
            )
            for i, ln in enumerate(cart.lines, start=1)
        )
        payments = tuple(
            ReceiptPayment(method=t.method.value, amount=t.amount, reference=t.reference)
            for t in cart.ledger.tenders
        )
        # header figures are sums of the rounded line values above
        totals = cart.totals()
        cgst, sgst, igst = split_gst(totals.total_tax)
        receipt = Receipt(
            receipt_number=receipt_number,
            created_at=created_at,
            cart_id=cart.id,
            kind="SALE",
            status="COMPLETED",
            lines=lines,
            payments=payments,
            subtotal=totals.subtotal,
            total_discount=totals.total_discount,
            total_tax=totals.total_tax,
            grand_total=totals.grand_total,
            cgst=cgst,
            sgst=sgst,
            igst=igst,
            cess=ZERO,
            paid=totals.paid,
            change=totals.change,
        )
        entries = [
            StockLedgerEntry(
                item_id=ln.item_id,
                quantity=-abs(ln.quantity),
                entry_type="SALE",
                reference=receipt_number,
                created_at=created_at,
            )
            for ln in cart.lines
        ]
        return receipt, entries

    def _persist(
        self,
        owner: str,
        receipt: Receipt,
        entries: List[StockLedgerEntry],
        on_failure: Callable[[], None] = lambda: None,
    ) -> None:
        try:
            self.receipt_dao.create_receipt(receipt, entries)
        except Exception as exc:
            # sqlite errors and anything else raised mid-transaction
            on_failure()
            logger.error(
                "Settlement transaction rolled back",
                extra={
                    "request_id": owner,
                    "extra": {"receipt_number": receipt.receipt_number, "error_type": type(exc).__name__},
                },
                exc_info=True,
            )
            raise SettlementPersistenceFailed(owner, str(exc) or type(exc).__name__) from exc
        except BaseException:
            on_failure()
            raise

    # ---- returns ----

    def reverse(self, receipt_number: str) -> Receipt:
        """Record a full return of a sale as a new, reversing receipt.

        The original receipt is never touched.  Quantities and amounts are
        negated, refunds are allocated to the original tenders in order
        up to the amount each one contributed, and stock comes back in.
        """
        with self._return_lock:
            original = self.receipt_dao.get_receipt(receipt_number)
            if original is None:
                raise ReceiptNotFound(receipt_number)
            if original.kind != "SALE":
                raise ReturnNotAllowed(f"Receipt {receipt_number} is a {original.kind} and cannot be returned")
            existing = self.receipt_dao.find_return_for(receipt_number)
            if existing:
                raise ReturnNotAllowed(f"Receipt {receipt_number} was already returned as {existing}")
            receipt, entries = self._build_return(original)
            self._persist(receipt_number, receipt, entries)
        logger.info(
            "Receipt returned",
            extra={
                "request_id": receipt.receipt_number,
                "extra": {"original_receipt_number": receipt_number, "refund": -receipt.grand_total},
            },
        )
        return receipt

    def _build_return(self, original: Receipt) -> Tuple[Receipt, List[StockLedgerEntry]]:
        receipt_number = self.numbers.next()
        created_at = self._clock().isoformat()
        lines = tuple(
            ReceiptLine(
                line_no=ln.line_no,
                item_id=ln.item_id,
                name=ln.name,
                quantity=_neg(ln.quantity),
                unit_price=ln.unit_price,
                discount=_neg(ln.discount),
                tax_rate_id=ln.tax_rate_id,
                tax_amount=_neg(ln.tax_amount),
                line_total=_neg(ln.line_total),
            )
            for ln in original.lines
        )
        refunds = []
        remaining = original.grand_total
        for p in original.payments:
            if remaining <= ZERO:
                break
            amount = min(p.amount, remaining)
            refunds.append(ReceiptPayment(method=p.method, amount=_neg(amount), reference=p.reference))
            remaining -= amount
        receipt = Receipt(
            receipt_number=receipt_number,
            created_at=created_at,
            cart_id=None,
            kind="RETURN",
            status="COMPLETED",
            lines=lines,
            payments=tuple(refunds),
            subtotal=_neg(original.subtotal),
            total_discount=_neg(original.total_discount),
            total_tax=_neg(original.total_tax),
            grand_total=_neg(original.grand_total),
            cgst=_neg(original.cgst),
            sgst=_neg(original.sgst),
            igst=_neg(original.igst),
            cess=_neg(original.cess),
            paid=_neg(original.grand_total - remaining),
            change=ZERO,
            original_receipt_number=original.receipt_number,
        )
        entries = [
            StockLedgerEntry(
                item_id=ln.item_id,
                quantity=abs(ln.quantity),
                entry_type="RETURN",
                reference=receipt_number,
                created_at=created_at,
            )
            for ln in original.lines
        ]
        return receipt, entries
