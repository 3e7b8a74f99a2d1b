"""Date utilities for day ranges, departures and cache distances"""

import datetime
from typing import List, Union

from dateutil.parser import parse as parse_date
from dateutil.rrule import DAILY, rrule
from loguru import logger


DayLike = Union[str, datetime.date, datetime.datetime]


def to_day(value: DayLike) -> datetime.date:
    """
    Normalize a day given as a date, a datetime or a string.

    Args:
        value: A date, a datetime or a string such as YYYY-MM-DD

    Returns:
        The calendar day

    Raises:
        ValueError: If the string cannot be parsed
    """
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    try:
        return parse_date(value).date()
    except (TypeError, OverflowError, ValueError) as e:
        raise ValueError(f"Invalid date '{value}': {e}")


def parse_departure(value: Union[str, datetime.datetime]) -> datetime.datetime:
    """
    Parse a departure timestamp into an aware datetime.

    Naive values are interpreted in the local timezone.
    """
    if isinstance(value, datetime.datetime):
        parsed = value
    else:
        try:
            parsed = parse_date(value)
        except (TypeError, OverflowError, ValueError) as e:
            raise ValueError(f"Invalid departure '{value}': {e}")
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed


def days_until(target: DayLike, today: datetime.date) -> int:
    """Calendar days between today and the target (negative in the past)"""
    return (to_day(target) - today).days


def day_range(start: DayLike, end: DayLike) -> List[datetime.date]:
    """
    All days from start to end, inclusive.

    Raises:
        ValueError: If end is before start
    """
    start_day = to_day(start)
    end_day = to_day(end)
    if end_day < start_day:
        raise ValueError(f"End date {end_day} is before start date {start_day}")
    return [dt.date() for dt in rrule(DAILY, dtstart=start_day, until=end_day)]


def month_days(year: int, month: int) -> List[datetime.date]:
    """Every day of a calendar month"""
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month: {month}")
    first = datetime.date(year, month, 1)
    if month == 12:
        last = datetime.date(year, 12, 31)
    else:
        last = datetime.date(year, month + 1, 1) - datetime.timedelta(days=1)
    return day_range(first, last)


def parse_date_or_range(date_spec: str) -> List[datetime.date]:
    """
    Parse a single date (YYYY-MM-DD) or a range (YYYY-MM-DD:YYYY-MM-DD).

    Raises:
        ValueError: If the format is invalid or the range is reversed
    """
    if ":" in date_spec:
        start_str, end_str = date_spec.split(":", 1)
        try:
            return day_range(start_str, end_str)
        except ValueError as e:
            raise ValueError(f"Invalid date range '{date_spec}': {e}")
    return [to_day(date_spec)]


def parse_date_list(date_specs: List[str]) -> List[datetime.date]:
    """Parse several date specs into a sorted list of unique days"""
    all_days: List[datetime.date] = []
    for spec in date_specs:
        all_days.extend(parse_date_or_range(spec))

    unique_days = sorted(set(all_days))
    if len(unique_days) != len(all_days):
        logger.warning(f"Removed {len(all_days) - len(unique_days)} duplicate dates from input")

    return unique_days


def departure_query_param(day: datetime.date) -> str:
    """
    Departure parameter for a day search.

    The search API takes a UTC timestamp; 01:00Z keeps the query on the
    requested day in French local time.
    """
    return datetime.datetime(
        day.year, day.month, day.day, 1, tzinfo=datetime.timezone.utc
    ).strftime("%Y-%m-%dT%H:%M:%S.000Z")
