from datetime import date

import pytest

from tgvmax.cache import ResponseCache
from tgvmax.exceptions import BlockedError, RemoteResponseError, ValidationError
from tgvmax.fetcher import AvailabilityFetcher
from tgvmax.models import BlockSignal, CacheKey, RemoteResponse
from tgvmax.session import SessionLifecycleManager

from conftest import FakeSessionDriver


def day_of(descriptor) -> str:
    return descriptor.label[-10:]


def availability(descriptor):
    day = date.fromisoformat(day_of(descriptor))
    # Seats only on even days
    if day.day % 2 == 0:
        return RemoteResponse(200, {"proposals": [{"trainNumber": "6201"}, {"trainNumber": "6203"}], "ratio": 0.4})
    return RemoteResponse(200, {"proposals": [], "ratio": 0})


def make_fetcher(clock, driver, **kwargs):
    cache = ResponseCache(clock=clock)
    manager = SessionLifecycleManager(driver, clock=clock)
    kwargs.setdefault("batch_delay", 0)
    return AvailabilityFetcher(cache, manager, clock=clock, **kwargs)


@pytest.mark.asyncio
async def test_fetch_day_caches_result(clock):
    driver = FakeSessionDriver(responder=availability)
    fetcher = make_fetcher(clock, driver)

    first = await fetcher.fetch_day("frpno", "frlys", "2026-11-04")
    second = await fetcher.fetch_day("FRPNO", "FRLYS", date(2026, 11, 4))

    assert first["fromCache"] is False
    assert second["fromCache"] is True
    assert second["data"]["ratio"] == 0.4
    assert len(driver.requests) == 1
    assert "departureDateTime=2026-11-04T01%3A00%3A00.000Z" in driver.requests[0][1].url


@pytest.mark.asyncio
async def test_fetch_day_force_refresh(clock):
    driver = FakeSessionDriver(responder=availability)
    fetcher = make_fetcher(clock, driver)

    await fetcher.fetch_day("FRPNO", "FRLYS", "2026-11-04")
    result = await fetcher.fetch_day("FRPNO", "FRLYS", "2026-11-04", force_refresh=True)

    assert result["fromCache"] is False
    assert len(driver.requests) == 2


@pytest.mark.asyncio
async def test_fetch_day_error_status(clock):
    driver = FakeSessionDriver(responder=lambda d: RemoteResponse(500, "Erreur"))
    fetcher = make_fetcher(clock, driver)

    with pytest.raises(RemoteResponseError) as exc_info:
        await fetcher.fetch_day("FRPNO", "FRLYS", "2026-11-04")
    assert exc_info.value.status == 500
    assert len(fetcher.cache) == 0


@pytest.mark.asyncio
async def test_fetch_day_blocked(clock):
    driver = FakeSessionDriver(responder=lambda d: BlockSignal("http_403"))
    fetcher = make_fetcher(clock, driver)

    with pytest.raises(BlockedError):
        await fetcher.fetch_day("FRPNO", "FRLYS", "2026-11-04")


@pytest.mark.asyncio
@pytest.mark.parametrize("origin, destination", [("", "FRLYS"), ("FRPNO", None), ("PARIS GARE", "FRLYS")])
async def test_invalid_station_codes(clock, origin, destination):
    fetcher = make_fetcher(clock, FakeSessionDriver())
    with pytest.raises(ValidationError):
        await fetcher.fetch_day(origin, destination, "2026-11-04")


@pytest.mark.asyncio
async def test_fetch_range_respects_concurrency_cap(clock):
    driver = FakeSessionDriver(responder=availability, request_delay=0.01)
    fetcher = make_fetcher(clock, driver, max_concurrent=6)

    result = await fetcher.fetch_range("FRPNO", "FRLYS", "2026-11-02", "2026-11-15")

    assert len(driver.requests) == 14
    assert driver.max_in_flight == 6
    assert result["summary"]["fetched"] == 14
    assert list(result["results"]) == sorted(result["results"])


@pytest.mark.asyncio
async def test_fetch_range_skips_past_days_and_summarizes(clock):
    driver = FakeSessionDriver(responder=availability)
    fetcher = make_fetcher(clock, driver)

    result = await fetcher.fetch_range("FRPNO", "FRLYS", "2026-10-30", "2026-11-05")

    assert list(result["results"]) == [
        "2026-11-02", "2026-11-03", "2026-11-04", "2026-11-05",
    ]
    summary = result["summary"]
    assert summary["totalDays"] == 4
    assert summary["daysWithAvailability"] == 2
    assert summary["totalTrains"] == 4
    assert summary["cacheHitRate"] == 0


@pytest.mark.asyncio
async def test_fetch_range_uses_cache(clock):
    driver = FakeSessionDriver(responder=availability)
    fetcher = make_fetcher(clock, driver)
    fetcher.cache.put(CacheKey("FRPNO", "FRLYS", date(2026, 11, 3)), {"proposals": [{}], "ratio": 1})

    result = await fetcher.fetch_range("FRPNO", "FRLYS", "2026-11-02", "2026-11-04")

    assert len(driver.requests) == 2
    assert result["results"]["2026-11-03"] == {"proposals": [{}], "ratio": 1}
    assert result["summary"]["fromCache"] == 1
    assert result["summary"]["cacheHitRate"] == 33

    again = await fetcher.fetch_range("FRPNO", "FRLYS", "2026-11-02", "2026-11-04")
    assert len(driver.requests) == 2
    assert again["summary"]["cacheHitRate"] == 100


@pytest.mark.asyncio
async def test_failed_day_does_not_stop_the_others(clock):
    def flaky(descriptor):
        if day_of(descriptor) == "2026-11-03":
            return RemoteResponse(502, "Bad gateway")
        return availability(descriptor)

    driver = FakeSessionDriver(responder=flaky)
    fetcher = make_fetcher(clock, driver, max_concurrent=2)

    result = await fetcher.fetch_range("FRPNO", "FRLYS", "2026-11-02", "2026-11-08")

    assert result["results"]["2026-11-03"] == {"proposals": [], "ratio": 0}
    assert [e["date"] for e in result["errors"]] == ["2026-11-03"]
    assert result["summary"]["fetched"] == 6
    assert result["summary"]["errors"] == 1
    assert result["results"]["2026-11-08"]["ratio"] == 0.4
    assert fetcher.cache.get(CacheKey("FRPNO", "FRLYS", date(2026, 11, 3))) is None


@pytest.mark.asyncio
async def test_fetch_month(clock):
    driver = FakeSessionDriver(responder=availability)
    fetcher = make_fetcher(clock, driver)

    result = await fetcher.fetch_month("FRPNO", "FRLYS", 2026, 11)

    assert result["month"] == "2026-11"
    assert result["startDate"] == "2026-11-01"
    assert result["endDate"] == "2026-11-30"
    assert result["summary"]["totalDays"] == 29, "November 1st is in the past"


@pytest.mark.asyncio
async def test_fetch_range_rejects_reversed_range(clock):
    fetcher = make_fetcher(clock, FakeSessionDriver())
    with pytest.raises(ValidationError):
        await fetcher.fetch_range("FRPNO", "FRLYS", "2026-11-10", "2026-11-02")


@pytest.mark.asyncio
async def test_search_stations(clock):
    driver = FakeSessionDriver(responder=lambda d: RemoteResponse(200, [{"codeStation": "FRLYS", "label": "LYON (toutes gares)"}]))
    fetcher = make_fetcher(clock, driver)

    stations = await fetcher.search_stations("lyon")

    assert stations[0]["codeStation"] == "FRLYS"
    assert "label=lyon" in driver.requests[0][1].url
    with pytest.raises(ValidationError):
        await fetcher.search_stations("l")
