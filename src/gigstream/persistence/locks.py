"""Key-scoped serialization — one mutex per listing, provider, or order.

Read-all-then-write sequences (aggregate recomputation, order status
changes) must not interleave for the same key, but must never contend
across unrelated keys. ``KeyedLocks.hold(key)`` gives exactly that.

Every acquisition is bounded: waiting longer than the timeout raises
LockTimeout instead of blocking forever.

Entries are reference-counted. A key's mutex exists only while some
thread holds or waits for it, so the map does not grow with the number
of orders ever touched.
"""

from __future__ import annotations

import logging
import threading
from contextlib import ExitStack, contextmanager
from typing import Iterator, Optional

from gigstream.errors import LockTimeout


logger = logging.getLogger(__name__)


def order_key(order_id: str) -> str:
    return f"order:{order_id}"


def listing_key(gig_id: str) -> str:
    return f"listing:{gig_id}"


def provider_key(seller_id: str) -> str:
    return f"provider:{seller_id}"


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class KeyedLocks:
    """Lazily-created mutex per key.

    Usage:
        locks = KeyedLocks(timeout_seconds=5.0)
        with locks.hold(listing_key("gig-1")):
            ...  # no other holder of "listing:gig-1" runs here
    """

    def __init__(self, timeout_seconds: float = 5.0) -> None:
        if timeout_seconds <= 0:
            raise ValueError("Lock timeout must be positive")
        self._timeout = timeout_seconds
        self._guard = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    def _checkout(self, key: str) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry()
                self._entries[key] = entry
            entry.users += 1
            return entry

    def _checkin(self, key: str, entry: _Entry) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                del self._entries[key]

    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None) -> Iterator[None]:
        entry = self._checkout(key)
        try:
            wait = self._timeout if timeout is None else timeout
            if not entry.lock.acquire(timeout=wait):
                logger.warning("Timed out after %.2fs waiting for %s", wait, key)
                raise LockTimeout(f"Timed out waiting for serialization scope {key}")
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)

    @contextmanager
    def hold_all(self, *keys: str, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold several keys, acquired in the order given.

        Callers that nest scopes must always pass them in the same order
        (order, then listing, then provider).
        """
        with ExitStack() as stack:
            for key in keys:
                stack.enter_context(self.hold(key, timeout))
            yield

    def __len__(self) -> int:
        """Number of keys currently held or waited on."""
        with self._guard:
            return len(self._entries)
