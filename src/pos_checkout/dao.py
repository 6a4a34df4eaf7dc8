"""
SQLite persistence for the checkout engine.

Provides:
 - per-thread connections (WAL, busy timeout, foreign keys on)
 - catalog lookups (items, barcodes, tax rates, payment methods)
 - the single transactional write that turns a settled cart into a
   receipt with its lines, payments and stock ledger postings
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, UTC
from decimal import Decimal
from typing import Iterator, List, Optional, Sequence, Tuple

from .cart import Item, TaxRate
from .config import load_config
from .errors import InvalidTaxRate
from .pricing import HUNDRED, ZERO, to_decimal
from .tenders import TenderMethod

logger = logging.getLogger(__name__)

sqlite3.register_adapter(Decimal, str)

_thread_local = threading.local()

DEFAULT_TAX_RATES = [
    ("GST 0%", "0"),
    ("GST 5%", "5"),
    ("GST 12%", "12"),
    ("GST 18%", "18"),
    ("GST 28%", "28"),
]


# ------------------------------------------------------------------------------
# Connection management
# ------------------------------------------------------------------------------

def _ensure_parent_dir(path: str) -> None:
    parent = os.path.dirname(os.path.abspath(path))
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)


def _resolve_db_path() -> str:
    return load_config().db_path


def _new_connection() -> sqlite3.Connection:
    """Open a connection configured for concurrent access.

    WAL lets readers proceed during a settlement write and the busy
    timeout makes writers wait for the lock instead of failing.
    """
    db_path = _resolve_db_path()
    _ensure_parent_dir(db_path)
    try:
        conn = sqlite3.connect(db_path, check_same_thread=False, timeout=10.0)
    except sqlite3.OperationalError as e:
        logger.error(f"DB open failed: {e}")
        raise
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA busy_timeout = 10000;")
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except sqlite3.OperationalError:
        # e.g. filesystems without shared memory support
        pass
    return conn


def get_request_connection() -> sqlite3.Connection:
    """Return this thread's connection, opening it on first use."""
    conn = getattr(_thread_local, "conn", None)
    if conn is None:
        conn = _new_connection()
        _thread_local.conn = conn
    return conn


def close_request_connection() -> None:
    conn = getattr(_thread_local, "conn", None)
    if conn is not None:
        conn.close()
        _thread_local.conn = None


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Explicit all-or-nothing write boundary.

    ``BEGIN IMMEDIATE`` takes the write lock up front so two settlements
    never interleave their statements.
    """
    conn.execute("BEGIN IMMEDIATE;")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    else:
        conn.commit()


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _dec(value) -> Optional[Decimal]:
    return None if value is None else Decimal(str(value))


# ------------------------------------------------------------------------------
# Receipt models
# ------------------------------------------------------------------------------

@dataclass(frozen=True)
class ReceiptLine:
    line_no: int
    item_id: int
    name: str
    quantity: Decimal
    unit_price: Decimal
    discount: Decimal
    tax_rate_id: Optional[int]
    tax_amount: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class ReceiptPayment:
    method: str
    amount: Decimal
    reference: Optional[str]
    status: str = "SUCCESS"


@dataclass(frozen=True)
class Receipt:
    receipt_number: str
    created_at: str
    cart_id: Optional[str]
    kind: str
    status: str
    lines: Tuple[ReceiptLine, ...]
    payments: Tuple[ReceiptPayment, ...]
    subtotal: Decimal
    total_discount: Decimal
    total_tax: Decimal
    grand_total: Decimal
    cgst: Decimal
    sgst: Decimal
    igst: Decimal
    cess: Decimal
    paid: Decimal
    change: Decimal
    original_receipt_number: Optional[str] = None


@dataclass(frozen=True)
class StockLedgerEntry:
    item_id: int
    quantity: Decimal
    entry_type: str
    reference: Optional[str]
    created_at: str
    unit_cost: Decimal = Decimal("0")


# ------------------------------------------------------------------------------
# Base DAO
# ------------------------------------------------------------------------------

class BaseDAO:
    """Base class for all DAOs; each one creates its own tables."""

    def __init__(self, conn: Optional[sqlite3.Connection] = None) -> None:
        self._conn_explicit = conn
        self.create_table()

    def _conn(self) -> sqlite3.Connection:
        return self._conn_explicit if self._conn_explicit is not None else get_request_connection()

    def create_table(self) -> None:
        return


# ------------------------------------------------------------------------------
# Tax rates
# ------------------------------------------------------------------------------

class TaxDAO(BaseDAO):
    """DAO for TaxRate records; seeded with the GST slabs on first use."""

    def create_table(self) -> None:
        conn = self._conn()
        with conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS TaxRate (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    rate TEXT NOT NULL
                );
                """
            )
            (count,) = conn.execute("SELECT COUNT(*) FROM TaxRate;").fetchone()
            if count == 0:
                conn.executemany("INSERT INTO TaxRate (name, rate) VALUES (?, ?);", DEFAULT_TAX_RATES)

    def add_tax_rate(self, name: str, rate: Decimal) -> int:
        value = to_decimal(rate, "tax_rate", InvalidTaxRate)
        if value < ZERO or value > HUNDRED:
            raise InvalidTaxRate(f"Tax rate must be within 0..100, got {value}")
        conn = self._conn()
        with conn:
            cur = conn.execute("INSERT INTO TaxRate (name, rate) VALUES (?, ?);", (name, value))
        return cur.lastrowid

    def get_tax_rate(self, tax_rate_id: int) -> Optional[TaxRate]:
        row = self._conn().execute(
            "SELECT id, name, rate FROM TaxRate WHERE id = ?;", (tax_rate_id,)
        ).fetchone()
        return TaxRate(row["id"], row["name"], Decimal(row["rate"])) if row else None

    def find_by_rate(self, rate: Decimal) -> Optional[TaxRate]:
        for tax in self.list_tax_rates():
            if tax.rate == _dec(rate):
                return tax
        return None

    def list_tax_rates(self) -> List[TaxRate]:
        rows = self._conn().execute("SELECT id, name, rate FROM TaxRate ORDER BY id;").fetchall()
        return [TaxRate(r["id"], r["name"], Decimal(r["rate"])) for r in rows]


# ------------------------------------------------------------------------------
# Items and barcodes
# ------------------------------------------------------------------------------

_ITEM_SELECT = (
    "SELECT i.id, i.name, i.mrp, i.tax_rate_id, t.rate AS tax_rate, "
    "(SELECT code FROM Barcode b WHERE b.item_id = i.id ORDER BY code LIMIT 1) AS barcode "
    "FROM Item i LEFT JOIN TaxRate t ON t.id = i.tax_rate_id "
)


def _item_from_row(row: sqlite3.Row) -> Item:
    return Item(
        id=row["id"],
        name=row["name"],
        mrp=Decimal(row["mrp"]),
        tax_rate_id=row["tax_rate_id"],
        tax_rate=_dec(row["tax_rate"]),
        barcode=row["barcode"],
    )


class ItemDAO(BaseDAO):
    """DAO for Item and Barcode records.

    Lookups return an :class:`Item` snapshot with the tax percentage
    resolved, so a cart line never needs to join back to the catalog.
    """

    def __init__(self, conn: Optional[sqlite3.Connection] = None) -> None:
        TaxDAO(conn)
        super().__init__(conn)

    def create_table(self) -> None:
        conn = self._conn()
        with conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS Item (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    mrp TEXT NOT NULL,
                    tax_rate_id INTEGER,
                    FOREIGN KEY (tax_rate_id) REFERENCES TaxRate(id)
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS Barcode (
                    code TEXT PRIMARY KEY,
                    item_id INTEGER NOT NULL,
                    FOREIGN KEY (item_id) REFERENCES Item(id) ON DELETE CASCADE
                );
                """
            )

    def add_item(
        self,
        name: str,
        mrp: Decimal,
        tax_rate_id: Optional[int] = None,
        barcode: Optional[str] = None,
    ) -> int:
        conn = self._conn()
        with conn:
            cur = conn.execute(
                "INSERT INTO Item (name, mrp, tax_rate_id) VALUES (?, ?, ?);",
                (name, _dec(mrp), tax_rate_id),
            )
            item_id = cur.lastrowid
            if barcode:
                conn.execute("INSERT INTO Barcode (code, item_id) VALUES (?, ?);", (barcode, item_id))
        return item_id

    def add_barcode(self, item_id: int, code: str) -> None:
        conn = self._conn()
        with conn:
            conn.execute("INSERT INTO Barcode (code, item_id) VALUES (?, ?);", (code, item_id))

    def update_price(self, item_id: int, mrp: Decimal) -> bool:
        conn = self._conn()
        with conn:
            cur = conn.execute("UPDATE Item SET mrp = ? WHERE id = ?;", (_dec(mrp), item_id))
        return cur.rowcount > 0

    def get_item(self, item_id: int) -> Optional[Item]:
        row = self._conn().execute(_ITEM_SELECT + "WHERE i.id = ?;", (item_id,)).fetchone()
        return _item_from_row(row) if row else None

    def get_item_by_barcode(self, code: str) -> Optional[Item]:
        row = self._conn().execute(
            _ITEM_SELECT + "WHERE i.id = (SELECT item_id FROM Barcode WHERE code = ?);",
            (str(code).strip(),),
        ).fetchone()
        return _item_from_row(row) if row else None

    def delete_item(self, item_id: int) -> None:
        conn = self._conn()
        with conn:
            conn.execute("DELETE FROM Item WHERE id = ?;", (item_id,))


# ------------------------------------------------------------------------------
# Payment methods
# ------------------------------------------------------------------------------

class PaymentMethodDAO(BaseDAO):
    """DAO for PaymentMethod records.

    The table is seeded with every :class:`TenderMethod`; codes outside
    that enum are never created on the fly.
    """

    def create_table(self) -> None:
        conn = self._conn()
        with conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS PaymentMethod (
                    code TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    active INTEGER NOT NULL DEFAULT 1
                );
                """
            )
            conn.executemany(
                "INSERT OR IGNORE INTO PaymentMethod (code, name) VALUES (?, ?);",
                [(m.value, m.value.replace("_", " ").title()) for m in TenderMethod],
            )

    def set_active(self, code: str, active: bool) -> bool:
        conn = self._conn()
        with conn:
            cur = conn.execute(
                "UPDATE PaymentMethod SET active = ? WHERE code = ?;",
                (1 if active else 0, code),
            )
        return cur.rowcount > 0

    def active_methods(self) -> List[TenderMethod]:
        rows = self._conn().execute(
            "SELECT code FROM PaymentMethod WHERE active = 1 ORDER BY code;"
        ).fetchall()
        known = {m.value for m in TenderMethod}
        return [TenderMethod(r["code"]) for r in rows if r["code"] in known]


# ------------------------------------------------------------------------------
# Stock ledger
# ------------------------------------------------------------------------------

class StockLedgerDAO(BaseDAO):
    """DAO for StockLedger postings.

    Sale and return postings reference a receipt number; adjustments
    (opening stock, counts) carry no reference.
    """

    def __init__(self, conn: Optional[sqlite3.Connection] = None) -> None:
        ItemDAO(conn)
        ReceiptDAO(conn)
        super().__init__(conn)

    def post_adjustment(self, item_id: int, quantity: Decimal) -> int:
        conn = self._conn()
        with conn:
            cur = conn.execute(
                "INSERT INTO StockLedger (item_id, quantity, entry_type, unit_cost, reference, created_at)"
                " VALUES (?, ?, 'ADJUSTMENT', '0', NULL, ?);",
                (item_id, _dec(quantity), _now()),
            )
        return cur.lastrowid

    def entries_for(self, reference: str) -> List[StockLedgerEntry]:
        rows = self._conn().execute(
            "SELECT item_id, quantity, entry_type, reference, created_at, unit_cost"
            " FROM StockLedger WHERE reference = ? ORDER BY id;",
            (reference,),
        ).fetchall()
        return [
            StockLedgerEntry(
                item_id=r["item_id"],
                quantity=Decimal(r["quantity"]),
                entry_type=r["entry_type"],
                reference=r["reference"],
                created_at=r["created_at"],
                unit_cost=Decimal(r["unit_cost"]),
            )
            for r in rows
        ]

    def on_hand(self, item_id: int) -> Decimal:
        rows = self._conn().execute(
            "SELECT quantity FROM StockLedger WHERE item_id = ?;", (item_id,)
        ).fetchall()
        return sum((Decimal(r["quantity"]) for r in rows), Decimal("0"))


# ------------------------------------------------------------------------------
# Receipts
# ------------------------------------------------------------------------------

class ReceiptDAO(BaseDAO):
    """DAO for Receipt, ReceiptLine, ReceiptPayment and StockLedger writes."""

    def __init__(self, conn: Optional[sqlite3.Connection] = None) -> None:
        ItemDAO(conn)
        PaymentMethodDAO(conn)
        super().__init__(conn)

    def create_table(self) -> None:
        conn = self._conn()
        with conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS Receipt (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    receipt_number TEXT NOT NULL UNIQUE,
                    cart_id TEXT,
                    kind TEXT NOT NULL CHECK (kind IN ('SALE', 'RETURN')),
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    subtotal TEXT NOT NULL,
                    total_discount TEXT NOT NULL,
                    total_tax TEXT NOT NULL,
                    grand_total TEXT NOT NULL,
                    cgst TEXT NOT NULL,
                    sgst TEXT NOT NULL,
                    igst TEXT NOT NULL,
                    cess TEXT NOT NULL,
                    paid TEXT NOT NULL,
                    change_due TEXT NOT NULL,
                    original_receipt_number TEXT,
                    FOREIGN KEY (original_receipt_number) REFERENCES Receipt(receipt_number)
                );
                """
            )
            # one receipt per cart, one return per receipt
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS ux_receipt_cart ON Receipt(cart_id) WHERE kind = 'SALE';"
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS ux_receipt_return ON Receipt(original_receipt_number)"
                " WHERE kind = 'RETURN';"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ReceiptLine (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    receipt_id INTEGER NOT NULL,
                    line_no INTEGER NOT NULL,
                    item_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    quantity TEXT NOT NULL,
                    unit_price TEXT NOT NULL,
                    discount TEXT NOT NULL,
                    tax_rate_id INTEGER,
                    tax_amount TEXT NOT NULL,
                    line_total TEXT NOT NULL,
                    FOREIGN KEY (receipt_id) REFERENCES Receipt(id),
                    FOREIGN KEY (item_id) REFERENCES Item(id)
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ReceiptPayment (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    receipt_id INTEGER NOT NULL,
                    method TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    reference TEXT,
                    status TEXT NOT NULL,
                    FOREIGN KEY (receipt_id) REFERENCES Receipt(id),
                    FOREIGN KEY (method) REFERENCES PaymentMethod(code)
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS StockLedger (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    item_id INTEGER NOT NULL,
                    quantity TEXT NOT NULL,
                    entry_type TEXT NOT NULL,
                    unit_cost TEXT NOT NULL,
                    reference TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (item_id) REFERENCES Item(id),
                    FOREIGN KEY (reference) REFERENCES Receipt(receipt_number)
                );
                """
            )

    # ---- transactional write ----

    def create_receipt(self, receipt: Receipt, stock_entries: Sequence[StockLedgerEntry]) -> int:
        """Persist a receipt, its lines, payments and stock postings.

        Everything happens in one transaction: if any insert fails the
        whole write is rolled back and the sqlite error propagates.
        """
        conn = self._conn()
        with transaction(conn):
            receipt_id = self._insert_receipt(conn, receipt)
            self._insert_lines(conn, receipt_id, receipt.lines)
            self._insert_payments(conn, receipt_id, receipt.payments)
            self._insert_stock_entries(conn, stock_entries)
        return receipt_id

    def _insert_receipt(self, conn: sqlite3.Connection, r: Receipt) -> int:
        cur = conn.execute(
            "INSERT INTO Receipt (receipt_number, cart_id, kind, status, created_at, subtotal,"
            " total_discount, total_tax, grand_total, cgst, sgst, igst, cess, paid, change_due,"
            " original_receipt_number) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);",
            (
                r.receipt_number, r.cart_id, r.kind, r.status, r.created_at, r.subtotal,
                r.total_discount, r.total_tax, r.grand_total, r.cgst, r.sgst, r.igst, r.cess,
                r.paid, r.change, r.original_receipt_number,
            ),
        )
        return cur.lastrowid

    def _insert_lines(self, conn: sqlite3.Connection, receipt_id: int, lines: Sequence[ReceiptLine]) -> None:
        conn.executemany(
            "INSERT INTO ReceiptLine (receipt_id, line_no, item_id, name, quantity, unit_price,"
            " discount, tax_rate_id, tax_amount, line_total) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);",
            [
                (receipt_id, ln.line_no, ln.item_id, ln.name, ln.quantity, ln.unit_price,
                 ln.discount, ln.tax_rate_id, ln.tax_amount, ln.line_total)
                for ln in lines
            ],
        )

    def _insert_payments(
        self, conn: sqlite3.Connection, receipt_id: int, payments: Sequence[ReceiptPayment]
    ) -> None:
        conn.executemany(
            "INSERT INTO ReceiptPayment (receipt_id, method, amount, reference, status)"
            " VALUES (?, ?, ?, ?, ?);",
            [(receipt_id, p.method, p.amount, p.reference, p.status) for p in payments],
        )

    def _insert_stock_entries(self, conn: sqlite3.Connection, entries: Sequence[StockLedgerEntry]) -> None:
        conn.executemany(
            "INSERT INTO StockLedger (item_id, quantity, entry_type, unit_cost, reference, created_at)"
            " VALUES (?, ?, ?, ?, ?, ?);",
            [(e.item_id, e.quantity, e.entry_type, e.unit_cost, e.reference, e.created_at) for e in entries],
        )

    # ---- reads ----

    def get_receipt(self, receipt_number: str) -> Optional[Receipt]:
        conn = self._conn()
        row = conn.execute("SELECT * FROM Receipt WHERE receipt_number = ?;", (receipt_number,)).fetchone()
        if not row:
            return None
        lines = conn.execute(
            "SELECT line_no, item_id, name, quantity, unit_price, discount, tax_rate_id, tax_amount,"
            " line_total FROM ReceiptLine WHERE receipt_id = ? ORDER BY line_no;",
            (row["id"],),
        ).fetchall()
        payments = conn.execute(
            "SELECT method, amount, reference, status FROM ReceiptPayment WHERE receipt_id = ? ORDER BY id;",
            (row["id"],),
        ).fetchall()
        return Receipt(
            receipt_number=row["receipt_number"],
            created_at=row["created_at"],
            cart_id=row["cart_id"],
            kind=row["kind"],
            status=row["status"],
            lines=tuple(
                ReceiptLine(
                    line_no=ln["line_no"],
                    item_id=ln["item_id"],
                    name=ln["name"],
                    quantity=Decimal(ln["quantity"]),
                    unit_price=Decimal(ln["unit_price"]),
                    discount=Decimal(ln["discount"]),
                    tax_rate_id=ln["tax_rate_id"],
                    tax_amount=Decimal(ln["tax_amount"]),
                    line_total=Decimal(ln["line_total"]),
                )
                for ln in lines
            ),
            payments=tuple(
                ReceiptPayment(p["method"], Decimal(p["amount"]), p["reference"], p["status"])
                for p in payments
            ),
            subtotal=Decimal(row["subtotal"]),
            total_discount=Decimal(row["total_discount"]),
            total_tax=Decimal(row["total_tax"]),
            grand_total=Decimal(row["grand_total"]),
            cgst=Decimal(row["cgst"]),
            sgst=Decimal(row["sgst"]),
            igst=Decimal(row["igst"]),
            cess=Decimal(row["cess"]),
            paid=Decimal(row["paid"]),
            change=Decimal(row["change_due"]),
            original_receipt_number=row["original_receipt_number"],
        )

    def find_return_for(self, receipt_number: str) -> Optional[str]:
        row = self._conn().execute(
            "SELECT receipt_number FROM Receipt WHERE kind = 'RETURN' AND original_receipt_number = ?;",
            (receipt_number,),
        ).fetchone()
        return row["receipt_number"] if row else None

    def max_sequence(self, stem: str) -> int:
        """Highest sequence number already used for receipt numbers ``<stem><seq>``."""
        row = self._conn().execute(
            "SELECT receipt_number FROM Receipt WHERE receipt_number LIKE ?"
            " ORDER BY length(receipt_number) DESC, receipt_number DESC LIMIT 1;",
            (stem + "%",),
        ).fetchone()
        if not row:
            return 0
        tail = row["receipt_number"][len(stem):]
        return int(tail) if tail.isdigit() else 0

    def count_for_cart(self, cart_id: str) -> int:
        (count,) = self._conn().execute(
            "SELECT COUNT(*) FROM Receipt WHERE cart_id = ?;", (cart_id,)
        ).fetchone()
        return count
