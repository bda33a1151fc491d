"""Small async TTL cache.

Cached values only ever save latency: a miss or an expired entry always falls
back to calling ``compute`` again.
"""

import time
from collections.abc import Awaitable, Callable, Hashable
from typing import Any, Optional, TypeVar

T = TypeVar("T")


class TTLCache:
    """Process-local cache with per-entry expiry."""

    def __init__(
        self,
        max_entries: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_entries = max_entries
        self._clock = clock
        # key -> (expires_at, value)
        self._entries: dict[Hashable, tuple[float, Any]] = {}

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    def set(self, key: Hashable, value: Any, ttl: float) -> None:
        if ttl <= 0:
            return
        if len(self._entries) >= self.max_entries:
            self._purge()
        self._entries[key] = (self._clock() + ttl, value)

    async def get_or_compute(
        self,
        key: Hashable,
        ttl: float,
        compute: Callable[[], Awaitable[T]],
    ) -> tuple[T, bool]:
        """Return ``(value, cached)``, computing and storing on a miss."""
        hit = self.get(key)
        if hit is not None:
            return hit, True
        value = await compute()
        self.set(key, value, ttl)
        return value, False

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def _purge(self) -> None:
        now = self._clock()
        for key in [k for k, (exp, _) in self._entries.items() if exp <= now]:
            del self._entries[key]
        # Still full: drop the entries closest to expiry
        overflow = len(self._entries) - self.max_entries + 1
        if overflow > 0:
            for key, _ in sorted(self._entries.items(), key=lambda kv: kv[1][0])[:overflow]:
                del self._entries[key]
