"""Error kinds raised by the checkout engine.

Every error carries a stable ``kind`` string and a ``status`` code so a
transport layer can decide whether to prompt the operator for a
correction (4xx) or treat the request as fatal (5xx).  Nothing in the
engine swallows these; they always reach the caller.
"""

from __future__ import annotations

from decimal import Decimal


class CheckoutError(Exception):
    """Base class for all checkout errors."""

    kind = "CheckoutError"
    status = 400

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": str(self)}


class CartNotFound(CheckoutError):
    kind = "CartNotFound"
    status = 404

    def __init__(self, cart_id: str):
        self.cart_id = cart_id
        super().__init__(f"Cart not found: {cart_id}")


class CartNotOpen(CheckoutError):
    kind = "CartNotOpen"
    status = 409

    def __init__(self, cart_id: str, state: str):
        self.cart_id = cart_id
        self.state = state
        super().__init__(f"Cart {cart_id} is not open (state={state})")


class ItemNotFound(CheckoutError):
    kind = "ItemNotFound"
    status = 404

    def __init__(self, ref: object):
        self.ref = ref
        super().__init__(f"Item not found: {ref}")


class LineNotFound(CheckoutError):
    kind = "LineNotFound"
    status = 404

    def __init__(self, index: int, size: int):
        self.index = index
        self.size = size
        super().__init__(f"Line {index} not found (cart has {size} lines)")


class InvalidDiscount(CheckoutError):
    kind = "InvalidDiscount"


class InvalidQuantity(CheckoutError):
    kind = "InvalidQuantity"


class InvalidPrice(CheckoutError):
    kind = "InvalidPrice"


class InvalidTaxRate(CheckoutError):
    kind = "InvalidTaxRate"


class InvalidTender(CheckoutError):
    kind = "InvalidTender"


class TenderNotFound(CheckoutError):
    kind = "TenderNotFound"
    status = 404

    def __init__(self, index: int, size: int):
        self.index = index
        self.size = size
        super().__init__(f"Tender {index} not found (ledger has {size} tenders)")


class EmptyCart(CheckoutError):
    kind = "EmptyCart"

    def __init__(self, cart_id: str):
        self.cart_id = cart_id
        super().__init__(f"Cart {cart_id} has no lines")


class NoPayment(CheckoutError):
    kind = "NoPayment"
    status = 402

    def __init__(self, cart_id: str):
        self.cart_id = cart_id
        super().__init__(f"Cart {cart_id} has no tenders")


class InsufficientPayment(CheckoutError):
    kind = "InsufficientPayment"
    status = 402

    def __init__(self, cart_id: str, due: Decimal):
        self.cart_id = cart_id
        self.due = due
        super().__init__(f"Cart {cart_id} is underpaid, {due} still due")

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["due"] = str(self.due)
        return data


class ExcessChange(CheckoutError):
    """Raised when change exceeds the configured ``max_change`` cap."""

    kind = "ExcessChange"
    status = 409

    def __init__(self, cart_id: str, change: Decimal, limit: Decimal):
        self.cart_id = cart_id
        self.change = change
        self.limit = limit
        super().__init__(f"Cart {cart_id} would return {change} change (limit {limit})")


class SettlementPersistenceFailed(CheckoutError):
    """The settlement transaction was rolled back; no receipt exists.

    This is the only terminal error.  Callers must not assume funds were
    captured and must not blindly retry.
    """

    kind = "SettlementPersistenceFailed"
    status = 500

    def __init__(self, cart_id: str, reason: str):
        self.cart_id = cart_id
        self.reason = reason
        super().__init__(f"Settlement of cart {cart_id} failed and was rolled back: {reason}")


class ReceiptNotFound(CheckoutError):
    kind = "ReceiptNotFound"
    status = 404

    def __init__(self, receipt_number: str):
        self.receipt_number = receipt_number
        super().__init__(f"Receipt not found: {receipt_number}")


class ReturnNotAllowed(CheckoutError):
    kind = "ReturnNotAllowed"
    status = 409


class InvalidConfig(CheckoutError):
    kind = "InvalidConfig"
    status = 500
