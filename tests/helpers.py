# --- path/bootstrap (keep this at the very top) ---
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if SRC.is_dir() and str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
# --- end path/bootstrap ---

import os
import shutil
import tempfile
from decimal import Decimal

from pos_checkout import dao

RICE_BARCODE = "8900000000011"
OIL_BARCODE = "8900000000028"


def fresh_db() -> str:
    """
    Point CHECKOUT_DB_PATH at a new temporary directory and drop this
    thread's cached connection so every test starts from an empty DB.
    Returns the directory so the caller can remove it.
    """
    tmpdir = tempfile.mkdtemp(prefix="checkout-test-")
    os.environ["CHECKOUT_DB_PATH"] = os.path.join(tmpdir, "checkout.db")
    dao.close_request_connection()
    return tmpdir


def drop_db(tmpdir: str) -> None:
    dao.close_request_connection()
    shutil.rmtree(tmpdir, ignore_errors=True)


def seed_catalog(service) -> dict:
    """Two taxed items and one untaxed item; returns their ids by name."""
    gst5 = service.tax_dao.find_by_rate(Decimal("5"))
    gst18 = service.tax_dao.find_by_rate(Decimal("18"))
    return {
        "rice": service.item_dao.add_item("Basmati Rice", Decimal("120"), gst5.id, barcode=RICE_BARCODE),
        "oil": service.item_dao.add_item("Sunflower Oil", Decimal("199.50"), gst18.id, barcode=OIL_BARCODE),
        "bag": service.item_dao.add_item("Carry Bag", Decimal("5")),
    }
