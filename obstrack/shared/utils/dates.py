"""Bucket key helpers.

Bucket keys are ISO strings so they sort lexicographically by time:
- day:   YYYY-MM-DD
- week:  YYYY-MM-DD of the Sunday starting the week
- month: YYYY-MM
"""
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Union

DateLike = Union[date, datetime]


class Granularity(Enum):
    """Time bucket size for an observation type."""
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


def day_key(value: DateLike) -> str:
    return _as_date(value).isoformat()


def week_start_key(value: DateLike) -> str:
    """Key of the school week containing value; weeks start on Sunday."""
    d = _as_date(value)
    # Monday is 0 in Python, Sunday is 6
    offset = (d.weekday() + 1) % 7
    return (d - timedelta(days=offset)).isoformat()


def month_key(value: DateLike) -> str:
    return _as_date(value).strftime("%Y-%m")


def bucket_key_for(granularity: Granularity, value: DateLike) -> str:
    """Bucket key of value at the given granularity."""
    if granularity is Granularity.DAY:
        return day_key(value)
    if granularity is Granularity.WEEK:
        return week_start_key(value)
    return month_key(value)


def is_valid_bucket_key(granularity: Granularity, key: str) -> bool:
    """Check that key is a well-formed bucket key for granularity.

    Week keys must fall on a Sunday.
    """
    if not isinstance(key, str):
        return False
    try:
        if granularity is Granularity.MONTH:
            parsed = datetime.strptime(key, "%Y-%m").date()
            return month_key(parsed) == key
        parsed = datetime.strptime(key, "%Y-%m-%d").date()
    except ValueError:
        return False

    if parsed.isoformat() != key:
        return False
    if granularity is Granularity.WEEK:
        return week_start_key(parsed) == key
    return True


def utc_now_iso() -> str:
    return datetime.utcnow().isoformat()


def _as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO timestamp, including the trailing Z written by JS clients."""
    if value.endswith("Z"):
        value = value[:-1]
    return datetime.fromisoformat(value)
