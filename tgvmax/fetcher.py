"""Cache-aware availability fetching for single days, ranges and months"""

import asyncio
import re
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from . import endpoints
from .cache import ResponseCache
from .config import FETCH_BATCH_DELAY, FETCH_MAX_CONCURRENT
from .date_utils import DayLike, day_range, month_days, to_day
from .exceptions import RemoteResponseError, ValidationError
from .models import CacheKey
from .session import SessionLifecycleManager

_STATION_PATTERN = re.compile(r"^[A-Z0-9]{2,10}$")

EMPTY_DAY = {"proposals": [], "ratio": 0}


def _check_station(code: str, field: str) -> str:
    value = (code or "").strip().upper()
    if not value:
        raise ValidationError(f"{field} is required")
    if not _STATION_PATTERN.match(value):
        raise ValidationError(f"Invalid {field} station code: {code}")
    return value


class AvailabilityFetcher:
    """
    Fetches free TGV Max seats through the shared anonymous session.

    Range fetches serve what they can from the cache and fetch the rest
    in batches of at most max_concurrent requests, pausing batch_delay
    seconds between batches.
    """

    def __init__(
        self,
        cache: ResponseCache,
        session_manager: SessionLifecycleManager,
        max_concurrent: int = FETCH_MAX_CONCURRENT,
        batch_delay: float = FETCH_BATCH_DELAY,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.cache = cache
        self.session_manager = session_manager
        self.max_concurrent = max_concurrent
        self.batch_delay = batch_delay
        self.clock = clock or (lambda: datetime.now().astimezone())

    async def _request_day(self, origin: str, destination: str, day: date) -> Any:
        response = await self.session_manager.perform(
            endpoints.search_proposals(origin, destination, day)
        )
        if not response.ok:
            raise RemoteResponseError(
                f"Search {origin} → {destination} on {day} failed: {response.error_text()}",
                status=response.status,
            )
        self.cache.put(CacheKey(origin, destination, day), response.body, target_date=day)
        return response.body

    async def fetch_day(
        self,
        origin: str,
        destination: str,
        day: DayLike,
        force_refresh: bool = False,
    ) -> Dict[str, Any]:
        """
        Availability for one day, from the cache when possible.

        Returns:
            Dict with the day, the payload and whether it came from the cache

        Raises:
            ValidationError: If a station code or the date is invalid
            BlockedError: If the remote site keeps blocking the session
            RemoteResponseError: If the search answered with an error status
        """
        origin = _check_station(origin, "origin")
        destination = _check_station(destination, "destination")
        try:
            day = to_day(day)
        except ValueError as e:
            raise ValidationError(str(e))

        key = CacheKey(origin, destination, day)
        if not force_refresh:
            cached = self.cache.get(key)
            if cached is not None:
                logger.info(f"📦 Cache hit: {origin} → {destination} on {day}")
                return {"date": day.isoformat(), "fromCache": True, "data": cached}

        logger.info(f"🔍 Searching {origin} → {destination} on {day}")
        payload = await self._request_day(origin, destination, day)
        return {"date": day.isoformat(), "fromCache": False, "data": payload}

    async def fetch_range(
        self,
        origin: str,
        destination: str,
        start: DayLike,
        end: DayLike,
        force_refresh: bool = False,
    ) -> Dict[str, Any]:
        """
        Availability for every day from start to end, inclusive.

        Days already in the past are skipped. A day that fails is reported
        empty and listed in errors; it never stops the other days.
        """
        try:
            days = day_range(start, end)
        except ValueError as e:
            raise ValidationError(str(e))
        return await self.fetch_days(origin, destination, days, force_refresh)

    async def fetch_days(
        self,
        origin: str,
        destination: str,
        days: List[DayLike],
        force_refresh: bool = False,
    ) -> Dict[str, Any]:
        """Availability for an arbitrary set of days, same rules as fetch_range"""
        origin = _check_station(origin, "origin")
        destination = _check_station(destination, "destination")
        try:
            days = sorted({to_day(d) for d in days})
        except ValueError as e:
            raise ValidationError(str(e))
        if not days:
            raise ValidationError("At least one date is required")

        today = self.clock().date()
        results: Dict[str, Dict[str, Any]] = {}
        errors: List[Dict[str, str]] = []
        to_fetch: List[date] = []
        from_cache = 0
        skipped = 0

        for day in days:
            if day < today:
                skipped += 1
                continue
            cached = None if force_refresh else self.cache.get(CacheKey(origin, destination, day))
            if cached is not None:
                results[day.isoformat()] = cached
                from_cache += 1
            else:
                to_fetch.append(day)

        logger.info(
            f"📅 {origin} → {destination}: {from_cache} days cached, "
            f"{len(to_fetch)} to fetch, {skipped} past days skipped"
        )

        fetched = 0
        for i in range(0, len(to_fetch), self.max_concurrent):
            batch = to_fetch[i:i + self.max_concurrent]
            outcomes = await asyncio.gather(
                *(self._request_day(origin, destination, day) for day in batch),
                return_exceptions=True,
            )

            for day, outcome in zip(batch, outcomes):
                if isinstance(outcome, Exception):
                    logger.error(f"❌ Error fetching {day}: {outcome}")
                    errors.append({"date": day.isoformat(), "error": str(outcome) or type(outcome).__name__})
                    results[day.isoformat()] = dict(EMPTY_DAY)
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    results[day.isoformat()] = outcome
                    fetched += 1

            if i + self.max_concurrent < len(to_fetch):
                await asyncio.sleep(self.batch_delay)

        ordered = dict(sorted(results.items()))
        summary = self._summarize(ordered, from_cache, fetched, len(errors))
        logger.success(
            f"✅ {origin} → {destination}: {summary['daysWithAvailability']}/{summary['totalDays']} "
            f"days with seats, {summary['totalTrains']} trains"
        )

        return {
            "origin": origin,
            "destination": destination,
            "startDate": days[0].isoformat(),
            "endDate": days[-1].isoformat(),
            "results": ordered,
            "errors": errors,
            "summary": summary,
        }

    async def fetch_month(
        self,
        origin: str,
        destination: str,
        year: int,
        month: int,
        force_refresh: bool = False,
    ) -> Dict[str, Any]:
        try:
            days = month_days(year, month)
        except ValueError as e:
            raise ValidationError(str(e))
        result = await self.fetch_range(origin, destination, days[0], days[-1], force_refresh)
        result["month"] = f"{year:04d}-{month:02d}"
        return result

    async def search_stations(self, label: str) -> Any:
        """Station lookup by name, never cached"""
        label = (label or "").strip()
        if len(label) < 2:
            raise ValidationError("Station search needs at least 2 characters")

        response = await self.session_manager.perform(endpoints.search_stations(label))
        if not response.ok:
            raise RemoteResponseError(
                f"Station search failed: {response.error_text()}", status=response.status
            )
        return response.body

    @staticmethod
    def _summarize(
        results: Dict[str, Dict[str, Any]], from_cache: int, fetched: int, error_count: int
    ) -> Dict[str, Any]:
        total_days = len(results)
        with_seats = 0
        total_trains = 0
        for payload in results.values():
            if not isinstance(payload, dict):
                continue
            if (payload.get("ratio") or 0) > 0:
                with_seats += 1
            total_trains += len(payload.get("proposals") or [])

        return {
            "totalDays": total_days,
            "daysWithAvailability": with_seats,
            "totalTrains": total_trains,
            "fromCache": from_cache,
            "fetched": fetched,
            "errors": error_count,
            "cacheHitRate": round(from_cache / total_days * 100) if total_days else 0,
        }
