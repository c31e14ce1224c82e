from __future__ import annotations

import time
from typing import Callable, Dict, Optional, Tuple

from models import CacheEntry

CacheKey = Tuple[float, float, float]


class ScoreCache:
    """Overall scores keyed by location.

    Expiry is checked on read; entries are only removed by :meth:`evict_expired`.
    """

    def __init__(
        self,
        ttl: float = 3600.0,
        *,
        clock: Callable[[], float] = time.time,
        precision: Optional[int] = None,
    ) -> None:
        self.ttl = ttl
        self.precision = precision
        self._clock = clock
        self._entries: Dict[CacheKey, CacheEntry] = {}

    def make_key(self, lat: float, lng: float, radius: float) -> CacheKey:
        if self.precision is not None:
            lat = round(lat, self.precision)
            lng = round(lng, self.precision)
        return (float(lat), float(lng), float(radius))

    def _is_valid(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.timestamp < self.ttl

    def get(self, key: CacheKey) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None or not self._is_valid(entry, self._clock()):
            return None
        return entry

    def set(self, key: CacheKey, score: int) -> CacheEntry:
        entry = CacheEntry(score=score, timestamp=self._clock())
        self._entries[key] = entry
        return entry

    def evict_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if not self._is_valid(entry, now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def stats(self) -> Tuple[int, int]:
        """(total entries, entries still within the TTL)."""
        now = self._clock()
        valid = sum(1 for entry in self._entries.values() if self._is_valid(entry, now))
        return len(self._entries), valid

    def __len__(self) -> int:
        return len(self._entries)
