"""Process-wide store of in-progress carts.

Each cart id owns its own lock.  Everything that reads or mutates a cart
goes through :meth:`CartRegistry.locked`, so operations on one cart are
serialized while different carts never wait on each other.  The registry
lock itself only guards the id -> cart map and is never held while a
cart operation runs.
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, UTC
from typing import Callable, Dict, Iterator, List, Optional

from .cart import Cart, CartState
from .errors import CartNotFound
from .metrics import OPEN_CARTS
from .tenders import TenderLedger

logger = logging.getLogger(__name__)


class CartRegistry:

    def __init__(
        self,
        ledger_factory: Callable[[], TenderLedger] = TenderLedger,
        ttl_seconds: int = 0,
    ) -> None:
        self._ledger_factory = ledger_factory
        self.ttl_seconds = ttl_seconds
        self._guard = threading.Lock()
        self._carts: Dict[str, Cart] = {}
        self._locks: Dict[str, threading.Lock] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._carts)

    def __contains__(self, cart_id: str) -> bool:
        with self._guard:
            return cart_id in self._carts

    def create(self) -> Cart:
        cart = Cart(id=str(uuid.uuid4()), ledger=self._ledger_factory())
        with self._guard:
            self._carts[cart.id] = cart
            self._locks[cart.id] = threading.Lock()
        OPEN_CARTS.inc()
        logger.debug("Cart created", extra={"request_id": cart.id})
        return cart

    def get(self, cart_id: str) -> Cart:
        with self._guard:
            cart = self._carts.get(cart_id)
        if cart is None:
            raise CartNotFound(cart_id)
        return cart

    @contextmanager
    def locked(self, cart_id: str) -> Iterator[Cart]:
        """Hold the cart's lock for the duration of the block.

        Raises :class:`CartNotFound` if the cart is absent, including when
        it was disposed while this caller waited for the lock.
        """
        with self._guard:
            lock = self._locks.get(cart_id)
        if lock is None:
            raise CartNotFound(cart_id)
        with lock:
            with self._guard:
                cart = self._carts.get(cart_id)
            if cart is None:
                raise CartNotFound(cart_id)
            yield cart

    def dispose(self, cart_id: str) -> Optional[Cart]:
        """Remove a cart.  Callers normally hold its lock already."""
        with self._guard:
            cart = self._carts.pop(cart_id, None)
            self._locks.pop(cart_id, None)
        if cart is not None:
            OPEN_CARTS.dec()
        return cart

    def discard(self, cart_id: str) -> Cart:
        """Abandon an open cart."""
        with self.locked(cart_id) as cart:
            cart.require_open()
            cart.state = CartState.DISCARDED
            self.dispose(cart_id)
        logger.info("Cart discarded", extra={"request_id": cart_id})
        return cart

    def sweep_expired(self, now: Optional[datetime] = None) -> List[str]:
        """Discard OPEN carts idle for longer than ``ttl_seconds``.

        Not called automatically; a host process may schedule it.  Carts
        that are busy (lock held) are skipped until the next sweep.
        """
        if self.ttl_seconds <= 0:
            return []
        cutoff = (now or datetime.now(UTC)) - timedelta(seconds=self.ttl_seconds)
        with self._guard:
            candidates = list(self._locks.items())
        expired: List[str] = []
        for cart_id, lock in candidates:
            if not lock.acquire(blocking=False):
                continue
            try:
                with self._guard:
                    cart = self._carts.get(cart_id)
                if cart is not None and cart.state is CartState.OPEN and cart.touched_at < cutoff:
                    cart.state = CartState.DISCARDED
                    self.dispose(cart_id)
                    expired.append(cart_id)
            finally:
                lock.release()
        if expired:
            logger.info("Expired idle carts", extra={"extra": {"cart_ids": expired}})
        return expired
