import helpers  # noqa: F401  (sets up sys.path)

import unittest
from decimal import Decimal

from pos_checkout.app import CheckoutService
from pos_checkout.config import CheckoutConfig
from pos_checkout.errors import ReceiptNotFound, ReturnNotAllowed

D = Decimal


class TestReturns(unittest.TestCase):

    def setUp(self):
        self.tmpdir = helpers.fresh_db()
        self.service = CheckoutService(CheckoutConfig())
        self.items = helpers.seed_catalog(self.service)

    def tearDown(self):
        helpers.drop_db(self.tmpdir)

    def sell(self, tenders):
        cart = self.service.start_cart()
        self.service.add_line(cart.id, barcode=helpers.RICE_BARCODE)
        self.service.add_line(cart.id, item_id=self.items["bag"], quantity=2)
        self.service.apply_discount(cart.id, 10)
        for method, amount in tenders:
            self.service.add_tender(cart.id, method, amount)
        return self.service.settle(cart.id)

    def test_return_reverses_the_sale(self):
        # 113.40 rice + 9.00 bags
        sale = self.sell([("UPI", "100"), ("CASH", "22.40")])
        self.assertEqual(sale.grand_total, D("122.40"))

        ret = self.service.return_receipt(sale.receipt_number)
        self.assertEqual(ret.kind, "RETURN")
        self.assertIsNone(ret.cart_id)
        self.assertEqual(ret.original_receipt_number, sale.receipt_number)
        self.assertNotEqual(ret.receipt_number, sale.receipt_number)
        self.assertEqual(ret.grand_total, D("-122.40"))
        self.assertEqual(ret.total_tax, -sale.total_tax)
        self.assertEqual(ret.cgst + ret.sgst, ret.total_tax)
        self.assertEqual([ln.quantity for ln in ret.lines], [D("-1"), D("-2")])
        self.assertEqual(
            [(p.method, p.amount) for p in ret.payments],
            [("UPI", D("-100.00")), ("CASH", D("-22.40"))],
        )
        self.assertEqual(ret.paid, D("-122.40"))

        stored = self.service.get_receipt(ret.receipt_number)
        self.assertEqual(stored, ret)
        # the sale itself is left untouched
        self.assertEqual(self.service.get_receipt(sale.receipt_number), sale)

    def test_refund_stops_at_grand_total(self):
        sale = self.sell([("CARD", "100"), ("CASH", "50")])
        self.assertEqual(sale.change, D("27.60"))
        ret = self.service.return_receipt(sale.receipt_number)
        self.assertEqual(
            [(p.method, p.amount) for p in ret.payments],
            [("CARD", D("-100.00")), ("CASH", D("-22.40"))],
        )
        self.assertEqual(ret.change, D("0"))

    def test_stock_comes_back(self):
        sale = self.sell([("CASH", "200")])
        rice = self.items["rice"]
        self.assertEqual(self.service.stock_dao.on_hand(rice), D("-1"))
        ret = self.service.return_receipt(sale.receipt_number)
        entries = self.service.stock_dao.entries_for(ret.receipt_number)
        self.assertEqual(
            [(e.item_id, e.quantity, e.entry_type) for e in entries],
            [(rice, D("1"), "RETURN"), (self.items["bag"], D("2"), "RETURN")],
        )
        self.assertEqual(self.service.stock_dao.on_hand(rice), D("0"))

    def test_only_one_return_per_sale(self):
        sale = self.sell([("CASH", "200")])
        ret = self.service.return_receipt(sale.receipt_number)
        with self.assertRaises(ReturnNotAllowed):
            self.service.return_receipt(sale.receipt_number)
        with self.assertRaises(ReturnNotAllowed):
            self.service.return_receipt(ret.receipt_number)

    def test_unknown_receipt(self):
        with self.assertRaises(ReceiptNotFound):
            self.service.return_receipt("R20260101-999999")
        with self.assertRaises(ReceiptNotFound):
            self.service.get_receipt("nope")


if __name__ == "__main__":
    unittest.main(verbosity=2)
