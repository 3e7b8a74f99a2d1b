"""TTL response cache keyed by route and travel day"""

from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .config import (
    CACHE_TTL_DEFAULT,
    CACHE_TTL_TODAY,
    CACHE_TTL_TOMORROW,
    CACHE_TTL_WEEK,
)
from .date_utils import DayLike, days_until
from .models import CacheEntry, CacheKey


def cache_ttl(target: DayLike, today: date) -> timedelta:
    """
    TTL for a travel day, shorter the closer the day is.

    Availability for today and tomorrow moves fast; far-away days barely
    change within an hour.
    """
    distance = days_until(target, today)
    if distance <= 0:
        return timedelta(seconds=CACHE_TTL_TODAY)
    if distance == 1:
        return timedelta(seconds=CACHE_TTL_TOMORROW)
    if distance <= 7:
        return timedelta(seconds=CACHE_TTL_WEEK)
    return timedelta(seconds=CACHE_TTL_DEFAULT)


class ResponseCache:
    """
    In-memory cache of search results with date-tiered expiry.

    Every method is synchronous, so under the event loop no coroutine can
    observe a half-applied update. Expired entries are evicted lazily on
    read and by sweep().
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or (lambda: datetime.now().astimezone())
        self._entries: Dict[CacheKey, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get_entry(self, key: CacheKey) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self.clock()):
            del self._entries[key]
            logger.debug(f"Cache entry expired: {key}")
            return None
        return entry

    def get(self, key: CacheKey) -> Optional[Any]:
        entry = self.get_entry(key)
        return entry.payload if entry else None

    def put(self, key: CacheKey, payload: Any, target_date: Optional[DayLike] = None) -> CacheEntry:
        now = self.clock()
        ttl = cache_ttl(target_date if target_date is not None else key.day, now.date())
        entry = CacheEntry(payload=payload, cached_at=now, expires_at=now + ttl)
        self._entries[key] = entry
        logger.debug(f"Cached {key} for {ttl.total_seconds():.0f}s")
        return entry

    def invalidate(self, key: CacheKey) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_all(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        logger.info(f"🗑️ Cache cleared: {count} entries removed")
        return count

    def invalidate_prefix(self, origin: str, destination: str) -> int:
        """Drop every day cached for a route"""
        keys = [k for k in list(self._entries) if k.origin == origin and k.destination == destination]
        for key in keys:
            self._entries.pop(key, None)
        logger.info(f"🗑️ Route cache cleared: {origin} → {destination}, {len(keys)} entries removed")
        return len(keys)

    def sweep(self) -> int:
        """Evict every expired entry, returns how many were removed"""
        now = self.clock()
        expired = [k for k, e in list(self._entries.items()) if e.is_expired(now)]
        for key in expired:
            self._entries.pop(key, None)
        if expired:
            logger.info(
                f"🧹 Cache cleanup: {len(expired)} expired entries removed, "
                f"{len(self._entries)} remaining"
            )
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        now = self.clock()
        entries: List[Dict[str, Any]] = []
        for key, entry in list(self._entries.items()):
            payload = entry.payload if isinstance(entry.payload, dict) else {}
            entries.append(
                {
                    "route": f"{key.origin} -> {key.destination}",
                    "date": key.day.isoformat(),
                    "cachedAt": entry.cached_at.isoformat(),
                    "expiresIn": max(0, round((entry.expires_at - now).total_seconds())),
                    "hasAvailability": (payload.get("ratio") or 0) > 0,
                }
            )
        return {
            "totalEntries": len(self._entries),
            "entries": sorted(entries, key=lambda e: e["date"]),
        }
