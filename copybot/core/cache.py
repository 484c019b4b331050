"""In-process cache with TTL and LRU eviction."""

import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any


class TTLCache:
    """LRU cache whose entries also expire after a fixed TTL.

    Instances are created once per process and injected into the adapters
    that need them, so tests can hand in a fresh cache or clear it.
    """

    def __init__(
        self,
        maxsize: int = 1000,
        ttl: float = 300,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        """Initialize cache.

        Args:
            maxsize: Maximum number of cached items
            ttl: Time to live in seconds
            now_fn: Optional clock (for testing)
        """
        self.maxsize = maxsize
        self.ttl = ttl
        self._now_fn = now_fn or time.time
        self._entries: OrderedDict[str, tuple[Any, float]] = OrderedDict()

    def get(self, key: str) -> Any | None:
        """Get item from cache, None when missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None

        value, stored_at = entry
        if self._now_fn() - stored_at > self.ttl:
            del self._entries[key]
            return None

        self._entries.move_to_end(key)
        return value

    def set(self, key: str, value: Any) -> None:
        """Set item in cache, evicting the least recently used at capacity."""
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.maxsize:
            self._entries.popitem(last=False)

        self._entries[key] = (value, self._now_fn())

    def clear(self) -> None:
        """Drop every entry."""
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
