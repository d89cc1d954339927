"""
TTL memoization of expensive storage operations.
"""

import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional


def cache_key(operation: str, *args, **kwargs) -> str:
    """Build a key from an operation name and its arguments."""
    payload = json.dumps({"args": args, "kwargs": kwargs}, sort_keys=True, default=str)
    return f"{operation}:{payload}"


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class CacheLayer:
    """In-process cache; every entry carries its own expiry."""

    def __init__(self, default_ttl: float = 300, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self.clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None when absent or at/after expiry."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if self.clock() >= entry.expires_at:
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: float = None):
        ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            self._entries[key] = CacheEntry(value=value, expires_at=self.clock() + ttl)

    def invalidate(self, prefix: str) -> int:
        """Drop every entry whose key starts with prefix."""
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    async def get_or_compute(self, key: str, compute: Callable[[], Awaitable[Any]], ttl: float = None) -> Any:
        """Return a live cached value, or await compute() and cache its result."""
        cached = self.get(key)
        if cached is not None:
            return cached
        value = await compute()
        self.set(key, value, ttl)
        return value

    def clear(self):
        with self._lock:
            self._entries.clear()

    def cleanup(self) -> int:
        """Evict expired entries only. Returns how many were evicted."""
        now = self.clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self.hits + self.misses
            return {
                "size": len(self._entries),
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": round(self.hits / total, 4) if total else 0.0,
            }
