import helpers  # noqa: F401  (sets up sys.path)

import unittest
from decimal import Decimal

from pos_checkout.errors import InvalidDiscount, InvalidPrice, InvalidQuantity, InvalidTaxRate
from pos_checkout.pricing import price_line, round2, to_decimal

D = Decimal


class TestRound2(unittest.TestCase):

    def test_half_up(self):
        self.assertEqual(round2(D("0.125")), D("0.13"))
        self.assertEqual(round2(D("0.124")), D("0.12"))
        self.assertEqual(round2(D("2.675")), D("2.68"))

    def test_negative_half_rounds_away_from_zero(self):
        self.assertEqual(round2(D("-0.125")), D("-0.13"))


class TestPriceLine(unittest.TestCase):

    def test_taxed_line(self):
        p = price_line(D("120"), D("1"), D("0"), D("5"))
        self.assertEqual(p.tax_amount, D("6.00"))
        self.assertEqual(p.line_total, D("126.00"))

    def test_discount_is_taken_before_tax(self):
        p = price_line(D("120"), D("1"), D("12"), D("5"))
        self.assertEqual(p.tax_amount, D("5.40"))
        self.assertEqual(p.line_total, D("113.40"))

    def test_untaxed_line(self):
        p = price_line(D("5"), D("3"), D("0"), None)
        self.assertEqual(p.tax_amount, D("0"))
        self.assertEqual(p.line_total, D("15"))

    def test_invariants_hold_across_inputs(self):
        cases = [
            (D("0"), D("1"), D("0"), D("18")),
            (D("9.99"), D("3"), D("1.50"), D("12")),
            (D("199.50"), D("2"), D("0"), D("18")),
            (D("47.30"), D("0.755"), D("0.33"), D("5")),
            (D("1000"), D("1"), D("999.99"), D("28")),
            (D("3.33"), D("7"), D("0"), D("0")),
        ]
        for unit_price, qty, discount, rate in cases:
            with self.subTest(unit_price=unit_price, qty=qty, discount=discount, rate=rate):
                p = price_line(unit_price, qty, discount, rate)
                net = unit_price * qty - discount
                self.assertEqual(p.tax_amount, round2(net * rate / 100))
                self.assertEqual(p.line_total, net + p.tax_amount)
                self.assertGreaterEqual(p.tax_amount, 0)

    def test_excess_discount_is_clamped_to_base(self):
        p = price_line(D("10"), D("2"), D("50"), D("18"))
        self.assertEqual(p.discount, D("20"))
        self.assertEqual(p.tax_amount, D("0.00"))
        self.assertEqual(p.line_total, D("0.00"))

    def test_fractional_quantity(self):
        p = price_line(D("80"), D("1.25"), D("0"), D("5"))
        self.assertEqual(p.base, D("100.00"))
        self.assertEqual(p.tax_amount, D("5.00"))

    def test_deterministic(self):
        a = price_line(D("47.30"), D("0.755"), D("0.33"), D("5"))
        b = price_line(D("47.30"), D("0.755"), D("0.33"), D("5"))
        self.assertEqual(a, b)

    def test_invalid_inputs(self):
        with self.assertRaises(InvalidPrice):
            price_line(D("-1"), D("1"))
        with self.assertRaises(InvalidQuantity):
            price_line(D("1"), D("0"))
        with self.assertRaises(InvalidDiscount):
            price_line(D("1"), D("1"), D("-0.01"))
        with self.assertRaises(InvalidTaxRate):
            price_line(D("1"), D("1"), D("0"), D("101"))
        with self.assertRaises(InvalidTaxRate):
            price_line(D("1"), D("1"), D("0"), D("-5"))


class TestToDecimal(unittest.TestCase):

    def test_accepts_numbers_and_numeric_strings(self):
        self.assertEqual(to_decimal(3, "x"), D("3"))
        self.assertEqual(to_decimal(0.1, "x"), D("0.1"))
        self.assertEqual(to_decimal(" 56.70 ", "x"), D("56.70"))

    def test_rejects_garbage_instead_of_defaulting(self):
        for bad in (None, True, "abc", "", float("nan"), "Infinity", [1]):
            with self.subTest(value=bad):
                with self.assertRaises(InvalidQuantity):
                    to_decimal(bad, "quantity", InvalidQuantity)


if __name__ == "__main__":
    unittest.main(verbosity=2)
