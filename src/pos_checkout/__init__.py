"""Top-level package for the checkout transaction engine.

Business operations live in :mod:`pos_checkout.app`, persistence in
:mod:`pos_checkout.dao` and settlement in :mod:`pos_checkout.settlement`.
"""

from .app import CheckoutService
from .errors import CheckoutError

__all__ = ["CheckoutService", "CheckoutError"]
