import helpers  # noqa: F401  (sets up sys.path)

import json
import logging
import os
import shutil
import sys
import tempfile
import unittest
from decimal import Decimal

from pos_checkout.config import CheckoutConfig, load_config
from pos_checkout.errors import InvalidConfig
from pos_checkout.logging_config import LOG_FILE_NAME, JsonFormatter, configure_logging
from pos_checkout.metrics import Counter, Histogram, generate_metrics_text


class TestLoadConfig(unittest.TestCase):

    def test_defaults(self):
        cfg = load_config({})
        self.assertEqual(cfg, CheckoutConfig())
        self.assertEqual(cfg.receipt_prefix, "R")
        self.assertIsNone(cfg.max_change)
        self.assertTrue(cfg.db_path.endswith(os.path.join("db", "checkout.db")))

    def test_overrides(self):
        cfg = load_config({
            "CHECKOUT_DB_PATH": "/tmp/x.db",
            "CHECKOUT_LOG_DIR": "/tmp/logs",
            "CHECKOUT_LOG_LEVEL": "debug",
            "CHECKOUT_RECEIPT_PREFIX": "S2",
            "CHECKOUT_CART_TTL_SECONDS": "900",
            "CHECKOUT_MAX_CHANGE": "500",
        })
        self.assertEqual(cfg.db_path, "/tmp/x.db")
        self.assertEqual(cfg.log_dir, "/tmp/logs")
        self.assertEqual(cfg.log_level, logging.DEBUG)
        self.assertEqual(cfg.receipt_prefix, "S2")
        self.assertEqual(cfg.cart_ttl_seconds, 900)
        self.assertEqual(cfg.max_change, Decimal("500"))

    def test_malformed_values_are_rejected(self):
        bad = [
            {"CHECKOUT_LOG_LEVEL": "LOUD"},
            {"CHECKOUT_RECEIPT_PREFIX": "R-"},
            {"CHECKOUT_RECEIPT_PREFIX": " "},
            {"CHECKOUT_CART_TTL_SECONDS": "soon"},
            {"CHECKOUT_CART_TTL_SECONDS": "-1"},
            {"CHECKOUT_MAX_CHANGE": "lots"},
            {"CHECKOUT_MAX_CHANGE": "-10"},
        ]
        for env in bad:
            with self.subTest(env=env):
                with self.assertRaises(InvalidConfig) as ctx:
                    load_config(env)
                self.assertEqual(ctx.exception.status, 500)


class TestJsonLogging(unittest.TestCase):

    def make_record(self, **extra):
        record = logging.LogRecord("pos_checkout.test", logging.INFO, __file__, 1, "Cart settled", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_extra_fields_are_merged(self):
        record = self.make_record(request_id="R20261018-000001", extra={"grand_total": Decimal("113.40")})
        data = json.loads(JsonFormatter().format(record))
        self.assertEqual(data["message"], "Cart settled")
        self.assertEqual(data["level"], "INFO")
        self.assertEqual(data["logger"], "pos_checkout.test")
        self.assertEqual(data["request_id"], "R20261018-000001")
        self.assertEqual(data["grand_total"], "113.40")
        self.assertIn("timestamp", data)

    def test_exception_is_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = self.make_record()
            record.exc_info = sys.exc_info()
        data = json.loads(JsonFormatter().format(record))
        self.assertIn("RuntimeError: boom", data["exc_info"])

    def test_configure_logging_writes_json_file(self):
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        log_dir = tempfile.mkdtemp(prefix="checkout-logs-")
        try:
            configure_logging(log_dir, logging.INFO)
            logging.getLogger("pos_checkout.test").info("hello", extra={"request_id": "c1"})
            for handler in root.handlers:
                handler.flush()
            with open(os.path.join(log_dir, LOG_FILE_NAME), encoding="utf-8") as fh:
                lines = [json.loads(line) for line in fh if line.strip()]
            self.assertEqual(lines[-1]["message"], "hello")
            self.assertEqual(lines[-1]["request_id"], "c1")
        finally:
            for handler in list(root.handlers):
                root.removeHandler(handler)
                handler.close()
            for handler in saved_handlers:
                root.addHandler(handler)
            root.setLevel(saved_level)
            shutil.rmtree(log_dir, ignore_errors=True)


class TestMetrics(unittest.TestCase):

    def test_counter_labels(self):
        c = Counter("test_widgets_total", "Widgets", ["colour"])
        c.inc(colour="red")
        c.inc(2, colour="red")
        c.inc(colour="blue")
        self.assertEqual(c.value(colour="red"), 3.0)
        self.assertEqual(c.value(colour="green"), 0.0)
        with self.assertRaises(ValueError):
            c.inc(-1, colour="red")
        text = generate_metrics_text().decode("utf-8")
        self.assertIn("# TYPE test_widgets_total counter", text)
        self.assertIn('test_widgets_total{colour="red"} 3.0', text)

    def test_histogram_buckets_are_cumulative(self):
        h = Histogram("test_latency_seconds", "Latency", ["op"], [0.1, 1.0])
        for value in (0.05, 0.5, 0.7, 3.0):
            h.observe(value, op="settle")
        self.assertEqual(h.count(op="settle"), 4)
        text = generate_metrics_text().decode("utf-8")
        self.assertIn('test_latency_seconds_bucket{op="settle",le="0.1"} 1', text)
        self.assertIn('test_latency_seconds_bucket{op="settle",le="1.0"} 3', text)
        self.assertIn('test_latency_seconds_bucket{op="settle",le="+Inf"} 4', text)
        self.assertIn('test_latency_seconds_count{op="settle"} 4', text)


if __name__ == "__main__":
    unittest.main(verbosity=2)
