"""
TTL Cache
Small in-process cache shared by the snapshot, analysis and match-score
layers. Each instance carries its own TTL and clock so tests can move time
forward without sleeping.
"""
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

from app.db.base import utcnow

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class TTLCache:
    """Keyed map of (value, stored_at) entries that expire after ``ttl``."""

    def __init__(
        self,
        ttl: timedelta,
        clock: Clock = utcnow,
        max_entries: Optional[int] = None,
        name: str = "cache",
    ):
        self.ttl = ttl
        self.clock = clock
        self.max_entries = max_entries
        self.name = name
        self._entries: Dict[Hashable, Tuple[Any, datetime]] = {}
        self._lock = threading.Lock()

    def _is_fresh(self, stored_at: datetime, now: datetime) -> bool:
        return now - stored_at < self.ttl

    def get_entry(self, key: Hashable) -> Optional[Tuple[Any, datetime]]:
        """Return (value, stored_at) for a live entry, dropping it if expired."""
        now = self.clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if not self._is_fresh(entry[1], now):
                del self._entries[key]
                logger.debug(f"[{self.name}] expired {key!r}")
                return None
            return entry

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self.get_entry(key)
        return entry[0] if entry is not None else None

    def set(self, key: Hashable, value: Any) -> datetime:
        """Store ``value`` and return its timestamp. Last writer wins."""
        now = self.clock()
        with self._lock:
            self._entries[key] = (value, now)
            size = len(self._entries)
        if self.max_entries is not None and size > self.max_entries:
            self.evict_expired()
        return now

    def evict_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self.clock()
        with self._lock:
            stale = [k for k, (_, ts) in self._entries.items() if not self._is_fresh(ts, now)]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug(f"[{self.name}] evicted {len(stale)} expired entries")
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return self.get_entry(key) is not None
