"""Expiring key -> last-fired timestamp cache used as a rate limiter.

Debounces the automatic top-up trigger: the risk signal is recomputed every
few seconds, and a sustained high reading must not fire repeated top-ups or
notification storms.
"""

import asyncio
import time
from collections.abc import Callable, Hashable


class CooldownCache:
    """Allows each key to fire at most once per ``ttl_seconds``.

    Uses asyncio.Lock so the check-and-record in try_acquire is atomic across
    coroutines. Expired entries are evicted lazily on every acquire.

    Args:
        ttl_seconds: Cool-down window per key.
        clock: Monotonic clock in seconds; injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._fired: dict[Hashable, float] = {}
        self._lock = asyncio.Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    async def try_acquire(self, key: Hashable) -> bool:
        """Record a firing for ``key`` unless it already fired within the window.

        Returns True if the caller may proceed, False if it is cooling down.
        """
        async with self._lock:
            now = self._clock()
            self._evict_expired(now)
            if key in self._fired:
                return False
            self._fired[key] = now
            return True

    async def remaining(self, key: Hashable) -> float:
        """Seconds until ``key`` may fire again (0 if it may fire now)."""
        async with self._lock:
            fired_at = self._fired.get(key)
            if fired_at is None:
                return 0.0
            return max(0.0, self._ttl - (self._clock() - fired_at))

    async def evict_expired(self) -> int:
        """Drop entries older than the window. Returns the number removed."""
        async with self._lock:
            return self._evict_expired(self._clock())

    def _evict_expired(self, now: float) -> int:
        expired = [key for key, fired_at in self._fired.items() if now - fired_at >= self._ttl]
        for key in expired:
            del self._fired[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._fired)
