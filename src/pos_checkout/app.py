"""Checkout service: the operations a transport or UI layer calls.

``CheckoutService`` wires the catalog DAOs, the cart registry and the
settlement engine together.  Every cart operation runs under that cart's
registry lock and either returns the updated aggregate/result or raises
one of the :mod:`pos_checkout.errors` kinds.  Nothing here formats output
for display.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from .cart import Cart, CartTotals, Item
from .config import CheckoutConfig, load_config
from .dao import ItemDAO, PaymentMethodDAO, Receipt, ReceiptDAO, StockLedgerDAO, TaxDAO
from .errors import ItemNotFound, ReceiptNotFound
from .registry import CartRegistry
from .settlement import ReceiptNumberGenerator, SettlementEngine
from .tenders import Tender, TenderLedger

logger = logging.getLogger(__name__)


class CheckoutService:
    """
    Business operations for the checkout counter: start a cart, scan and
    edit lines, discount, take tenders, settle and return.
    """

    def __init__(self, config: Optional[CheckoutConfig] = None) -> None:
        self.config = config or load_config()
        # DAOs use per-thread connections
        self.tax_dao = TaxDAO()
        self.item_dao = ItemDAO()
        self.payment_method_dao = PaymentMethodDAO()
        self.receipt_dao = ReceiptDAO()
        self.stock_dao = StockLedgerDAO()

        self.registry = CartRegistry(
            ledger_factory=self._new_ledger,
            ttl_seconds=self.config.cart_ttl_seconds,
        )
        self.engine = SettlementEngine(
            self.registry,
            receipt_dao=self.receipt_dao,
            numbers=ReceiptNumberGenerator(self.receipt_dao, prefix=self.config.receipt_prefix),
            max_change=self.config.max_change,
        )

    def _new_ledger(self) -> TenderLedger:
        # accepted methods are fixed when the cart opens
        return TenderLedger(self.payment_method_dao.active_methods())

    # ---- Catalog ----

    def lookup_item(self, item_id: Optional[int] = None, barcode: Optional[str] = None) -> Item:
        """Find an item by barcode (preferred) or id."""
        item = None
        if barcode:
            item = self.item_dao.get_item_by_barcode(barcode)
        elif item_id is not None:
            item = self.item_dao.get_item(item_id)
        if item is None:
            raise ItemNotFound(barcode if barcode else item_id)
        return item

    # ---- Cart lifecycle ----

    def start_cart(self) -> Cart:
        cart = self.registry.create()
        logger.info("Cart started", extra={"request_id": cart.id})
        return cart

    def get_cart(self, cart_id: str) -> Cart:
        return self.registry.get(cart_id)

    def cart_totals(self, cart_id: str) -> CartTotals:
        """Consistent totals snapshot, taken while no mutation can interleave."""
        with self.registry.locked(cart_id) as cart:
            return cart.totals()

    def discard_cart(self, cart_id: str) -> Cart:
        return self.registry.discard(cart_id)

    def sweep_idle_carts(self) -> List[str]:
        return self.registry.sweep_expired()

    # ---- Cart lines ----

    def add_line(
        self,
        cart_id: str,
        item_id: Optional[int] = None,
        barcode: Optional[str] = None,
        quantity: object = 1,
    ) -> Cart:
        with self.registry.locked(cart_id) as cart:
            cart.require_open()
            item = self.lookup_item(item_id=item_id, barcode=barcode)
            line = cart.add_line(item, quantity)
        logger.info(
            "Line added",
            extra={
                "request_id": cart_id,
                "extra": {"item_id": item.id, "quantity": line.quantity, "line_total": line.line_total},
            },
        )
        return cart

    def update_line(
        self,
        cart_id: str,
        index: int,
        quantity: object = None,
        unit_price: object = None,
        discount: object = None,
    ) -> Cart:
        with self.registry.locked(cart_id) as cart:
            line = cart.update_line(index, quantity=quantity, unit_price=unit_price, discount=discount)
        logger.info(
            "Line removed" if line is None else "Line updated",
            extra={"request_id": cart_id, "extra": {"index": index}},
        )
        return cart

    def remove_line(self, cart_id: str, index: int) -> Cart:
        with self.registry.locked(cart_id) as cart:
            cart.remove_line(index)
        logger.info("Line removed", extra={"request_id": cart_id, "extra": {"index": index}})
        return cart

    def apply_discount(self, cart_id: str, percent: object) -> Cart:
        with self.registry.locked(cart_id) as cart:
            cart.apply_cart_discount(percent)
        logger.info(
            "Cart discount applied",
            extra={"request_id": cart_id, "extra": {"percent": percent, "total_discount": cart.total_discount}},
        )
        return cart

    # ---- Tenders ----

    def add_tender(self, cart_id: str, method: object, amount: object, reference: Optional[str] = None) -> Tender:
        with self.registry.locked(cart_id) as cart:
            cart.require_open()
            tender = cart.ledger.add_tender(method, amount, reference)
        logger.info(
            "Tender added",
            extra={"request_id": cart_id, "extra": {"method": tender.method, "amount": tender.amount}},
        )
        return tender

    def remove_tender(self, cart_id: str, index: int) -> Tender:
        with self.registry.locked(cart_id) as cart:
            cart.require_open()
            tender = cart.ledger.remove_tender(index)
        logger.info("Tender removed", extra={"request_id": cart_id, "extra": {"index": index}})
        return tender

    # ---- Settlement and receipts ----

    def settle(self, cart_id: str) -> Receipt:
        return self.engine.settle(cart_id)

    def get_receipt(self, receipt_number: str) -> Receipt:
        receipt = self.receipt_dao.get_receipt(receipt_number)
        if receipt is None:
            raise ReceiptNotFound(receipt_number)
        return receipt

    def return_receipt(self, receipt_number: str) -> Receipt:
        return self.engine.reverse(receipt_number)
