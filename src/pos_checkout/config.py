"""Runtime configuration read from ``CHECKOUT_*`` environment variables."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Mapping, Optional

from .errors import InvalidConfig
from .pricing import ZERO, to_decimal

_THIS_FILE = Path(__file__).resolve()
_DEFAULT_DB_PATH = (_THIS_FILE.parent / ".." / ".." / "db" / "checkout.db").resolve()

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


@dataclass(frozen=True)
class CheckoutConfig:
    db_path: str = str(_DEFAULT_DB_PATH)
    log_dir: str = "logs"
    log_level: int = logging.INFO
    receipt_prefix: str = "R"
    # 0 disables the idle-cart sweep
    cart_ttl_seconds: int = 0
    # None means overpayment is never capped
    max_change: Optional[Decimal] = None


def load_config(env: Optional[Mapping[str, str]] = None) -> CheckoutConfig:
    """Build a :class:`CheckoutConfig` from the environment.

    Unset variables fall back to defaults; malformed values raise
    :class:`InvalidConfig` instead of being silently ignored.
    """
    env = os.environ if env is None else env
    defaults = CheckoutConfig()

    level_name = env.get("CHECKOUT_LOG_LEVEL", "INFO").strip().upper()
    if level_name not in _LEVELS:
        raise InvalidConfig(f"CHECKOUT_LOG_LEVEL must be one of {sorted(_LEVELS)}, got {level_name!r}")

    prefix = env.get("CHECKOUT_RECEIPT_PREFIX", defaults.receipt_prefix).strip()
    if not prefix or not prefix.isalnum():
        raise InvalidConfig(f"CHECKOUT_RECEIPT_PREFIX must be alphanumeric, got {prefix!r}")

    raw_ttl = env.get("CHECKOUT_CART_TTL_SECONDS", "0").strip()
    try:
        ttl = int(raw_ttl)
    except ValueError:
        raise InvalidConfig(f"CHECKOUT_CART_TTL_SECONDS must be an integer, got {raw_ttl!r}") from None
    if ttl < 0:
        raise InvalidConfig("CHECKOUT_CART_TTL_SECONDS must be >= 0")

    max_change = None
    raw_change = env.get("CHECKOUT_MAX_CHANGE", "").strip()
    if raw_change:
        max_change = to_decimal(raw_change, "CHECKOUT_MAX_CHANGE", InvalidConfig)
        if max_change < ZERO:
            raise InvalidConfig("CHECKOUT_MAX_CHANGE must be >= 0")

    return CheckoutConfig(
        db_path=env.get("CHECKOUT_DB_PATH", defaults.db_path),
        log_dir=env.get("CHECKOUT_LOG_DIR", defaults.log_dir),
        log_level=_LEVELS[level_name],
        receipt_prefix=prefix,
        cart_ttl_seconds=ttl,
        max_change=max_change,
    )
