"""
In-memory response cache with TTL and bounded size
"""

import hashlib
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional


class ResponseCache:
    """Cache generator replies keyed by an md5 of their inputs"""

    def __init__(self, ttl_seconds: float = 300, max_entries: int = 50,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, tuple]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_key(*parts: Optional[str]) -> str:
        """Build a cache key from the call inputs"""
        joined = "|".join(p or "" for p in parts)
        return hashlib.md5(joined.encode()).hexdigest()

    def get(self, key: str) -> Optional[Any]:
        """Get value from cache if not expired"""
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        stored_at, value = entry
        if self._clock() - stored_at > self.ttl_seconds:
            del self._entries[key]
            self.misses += 1
            return None

        self.hits += 1
        return value

    def set(self, key: str, value: Any):
        """Set value in cache, evicting the oldest entry when full"""
        if key in self._entries:
            del self._entries[key]
        while len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)
        self._entries[key] = (self._clock(), value)

    def clear_expired(self) -> int:
        """Clear all expired cache entries"""
        now = self._clock()
        expired = [k for k, (stored_at, _) in self._entries.items()
                   if now - stored_at > self.ttl_seconds]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear_all(self):
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        lookups = self.hits + self.misses
        return {
            "entry_count": len(self._entries),
            "max_entries": self.max_entries,
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / lookups, 3) if lookups else 0.0,
        }
