"""In-memory LRU cache with TTL for fingerprints and pairwise scores."""

import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Hashable, Optional

from .logging_config import get_logger

logger = get_logger(__name__)


class FingerprintCache:
    """Thread-safe LRU cache with TTL support.

    Keys always include the content hash of the underlying event, so an
    edited record never hits an entry computed from its old content.
    """

    def __init__(self, max_size: int = 10000, ttl: float = 3600.0,
                 clock: Callable[[], float] = time.monotonic):
        """Initialize cache.

        Args:
            max_size: Maximum number of entries before least recently used are evicted
            ttl: Time to live in seconds
            clock: Time source, injectable for tests
        """
        self.max_size = max_size
        self.ttl = ttl
        self._clock = clock
        self._entries: "OrderedDict[Hashable, tuple]" = OrderedDict()
        self._lock = threading.Lock()
        self.stats = {"hits": 0, "misses": 0, "evictions": 0, "expirations": 0}

    def get(self, key: Hashable) -> Optional[Any]:
        """Get value from cache, or None if missing or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.stats["misses"] += 1
                return None

            stored_at, value = entry
            if self._clock() - stored_at > self.ttl:
                del self._entries[key]
                self.stats["expirations"] += 1
                self.stats["misses"] += 1
                return None

            self._entries.move_to_end(key)
            self.stats["hits"] += 1
            return value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
                self.stats["evictions"] += 1

    def get_or_compute(self, key: Hashable, compute: Callable[[], Any]) -> Any:
        value = self.get(key)
        if value is None:
            value = compute()
            self.set(key, value)
        return value

    def invalidate_event(self, event_id: str) -> int:
        """Drop every entry whose key mentions ``event_id``."""
        with self._lock:
            stale = [
                k for k in self._entries
                if k == event_id or (isinstance(k, tuple) and event_id in k)
            ]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        if count:
            logger.debug(f"Cleared {count} cache entries")

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def hit_rate(self) -> float:
        lookups = self.stats["hits"] + self.stats["misses"]
        return self.stats["hits"] / lookups if lookups else 0.0

    def get_stats(self) -> Dict[str, Any]:
        lookups = self.stats["hits"] + self.stats["misses"]
        return {
            **self.stats,
            "lookups": lookups,
            "size": len(self._entries),
            "max_size": self.max_size,
            "hit_rate": self.hit_rate,
        }
