"""Thread-safe in-memory cache with per-entry freshness and an entry ceiling.

Used for externally owned settings: a value is served from memory until it
is older than the cache's ``ttl_seconds``, after which the next read misses
and the caller refetches.  Least-recently-used entries are evicted once
``max_entries`` is reached.  Writes through the API invalidate the
affected keys so changes made here are visible immediately; changes made
elsewhere are picked up within one freshness window.

>>> cache = TTLCache(ttl_seconds=60)
>>> cache.put("settings:validation", settings)
>>> cache.get("settings:validation")
settings
>>> cache.invalidate_prefix("settings:")
1
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 256


class TTLCache:
    """LRU cache whose entries expire ``ttl_seconds`` after they were stored."""

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        # key → (value, stored_at)
        self._store: OrderedDict[str, tuple[Any, float]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        """Return a fresh cached value (promoting it to MRU) or ``None``."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            value, stored_at = entry
            if self._clock() - stored_at >= self._ttl:
                del self._store[key]
                logger.debug("Cache: %s expired", key)
                return None
            self._store.move_to_end(key)
            return value

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._store.pop(key, None)
            while len(self._store) >= self._max_entries:
                evicted_key, _ = self._store.popitem(last=False)
                logger.debug("Cache: evicted %s", evicted_key)
            self._store[key] = (value, self._clock())

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._store.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in self._store if k.startswith(prefix)]
            for key in keys:
                del self._store[key]
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def age(self, key: str) -> float | None:
        """Seconds since *key* was stored, or ``None`` if absent."""
        with self._lock:
            entry = self._store.get(key)
            return None if entry is None else self._clock() - entry[1]

    @property
    def entry_count(self) -> int:
        return len(self._store)

    def has(self, key: str) -> bool:
        """Check presence *without* promoting or expiring the entry."""
        return key in self._store
