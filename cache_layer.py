from __future__ import annotations

import os
import threading
from typing import Any

from cachetools import TTLCache


_MISSING = object()


def _env_int(name: str, default: int, *, lo: int, hi: int) -> int:
    try:
        value = int(os.getenv(name, str(default)) or default)
    except Exception:
        value = default
    return max(lo, min(hi, value))


class LocalCache:
    """Process-local TTL cache used for RBAC lookups (roles index, permission rules)."""

    def __init__(self, *, ttl_seconds: int, max_items: int):
        self._cache: TTLCache = TTLCache(maxsize=max_items, ttl=ttl_seconds)
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Any:
        with self._lock:
            val = self._cache.get(key, _MISSING)
            if val is _MISSING:
                self._misses += 1
                return None
            self._hits += 1
            return val

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._cache[key] = value

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._cache),
                "maxsize": self._cache.maxsize,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round((self._hits / total * 100) if total else 0.0, 2),
            }


_cache = LocalCache(
    ttl_seconds=_env_int("CACHE_TTL_SECONDS", 60, lo=1, hi=3600),
    max_items=_env_int("CACHE_MAX_ITEMS", 10_000, lo=100, hi=500_000),
)


def cache_get(key: str) -> Any:
    return _cache.get(key)


def cache_set(key: str, value: Any) -> None:
    _cache.set(key, value)


def cache_clear() -> None:
    _cache.clear()


def cache_stats() -> dict[str, Any]:
    return _cache.stats()
