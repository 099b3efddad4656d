"""Identity-keyed map whose entries expire after a fixed TTL.

Replaces ad hoc module-level dicts cleaned up by timers: expiry is a
property of the store, checked on access, and every ``set`` sweeps out
expired entries so abandoned keys never pile up. ``purge_expired`` can
also be called from any maintenance hook.
"""

import logging
import math
import threading
import time
from typing import Callable, Generic, Hashable, Optional, TypeVar

logger = logging.getLogger("signflow.expiring")

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class ExpiringStore(Generic[K, V]):
    """Thread-safe key/value store with a declarative TTL.

    Args:
        ttl_seconds: Lifetime of an entry from its last ``set``.
        clock: Monotonic time source (injectable for tests).
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl = ttl_seconds
        self._clock = clock
        self._items: dict[K, tuple[V, float]] = {}
        self._lock = threading.Lock()

    def set(self, key: K, value: V) -> None:
        """Store ``value`` and drop every entry that has already expired."""
        now = self._clock()
        with self._lock:
            swept = self._sweep(now)
            self._items[key] = (value, now + self.ttl)
        if swept:
            logger.debug("Swept %d expired entries", swept)

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        """Return the live value for ``key``; expired entries are evicted."""
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return default
            value, expires_at = item
            if self._clock() >= expires_at:
                del self._items[key]
                logger.debug("Evicted expired entry %s", key)
                return default
            return value

    def pop(self, key: K, default: Optional[V] = None) -> Optional[V]:
        with self._lock:
            item = self._items.pop(key, None)
        if item is None or self._clock() >= item[1]:
            return default
        return item[0]

    def remaining(self, key: K) -> int:
        """Whole seconds until ``key`` expires (0 if absent or expired)."""
        with self._lock:
            item = self._items.get(key)
        if item is None:
            return 0
        return max(0, math.ceil(item[1] - self._clock()))

    def purge_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        with self._lock:
            purged = self._sweep(self._clock())
        if purged:
            logger.info("Purged %d expired entries", purged)
        return purged

    def _sweep(self, now: float) -> int:
        # Caller holds self._lock.
        expired = [k for k, (_, exp) in self._items.items() if now >= exp]
        for k in expired:
            del self._items[k]
        return len(expired)

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for _, exp in self._items.values() if now < exp)
