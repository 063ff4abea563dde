import json
import threading
import time
from typing import Any, Optional

import structlog
from cachetools import TTLCache

from onchain_indexer.config import settings

logger = structlog.get_logger()

_MISSING = object()


def _now() -> float:
    return time.monotonic()


class ResponseCache:
    """
    Bounded TTL cache for RPC responses.

    Expired entries are purged when the cache is read or written. When the cache
    is full the least recently used entry is dropped.
    """

    def __init__(self, ttl: float = None, max_entries: int = None):
        self.ttl = settings.RPC_CACHE_TTL if ttl is None else ttl
        self.max_entries = settings.RPC_CACHE_MAX_ENTRIES if max_entries is None else max_entries
        self._entries = TTLCache(maxsize=self.max_entries, ttl=self.ttl, timer=_now)
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def generate_key(self, method: str, params: Any) -> str:
        """Generate cache key"""
        return f"{method}:{json.dumps(params, sort_keys=True, default=str)}"

    def get(self, key: str) -> Optional[Any]:
        """Get cached value, or None when missing or expired"""
        with self._lock:
            self._entries.expire()
            value = self._entries.get(key, _MISSING)
            if value is _MISSING:
                self.misses += 1
                return None
            self.hits += 1
            return value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            # Re-inserting moves the key to the most recently used position
            self._entries.pop(key, None)
            self._entries[key] = value

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, _MISSING) is not _MISSING

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self):
        total = self.hits + self.misses
        return {
            "entries": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": (self.hits / total) if total else 0.0,
        }
