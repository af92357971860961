import datetime
import os
import re
from typing import Optional, Tuple

import pytz

from .errors import InvalidDate

# Reference zone for "what day is it"; the puzzle flips at local midnight.
TZ = pytz.timezone(os.getenv("PUZZLE_TIME_ZONE", "America/New_York"))

_KEY_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(pytz.utc)


def _as_utc(now: Optional[datetime.datetime]) -> datetime.datetime:
    now = now or utc_now()
    if now.tzinfo is None:
        # naive instants are UTC everywhere in this app
        return pytz.utc.localize(now)
    return now.astimezone(pytz.utc)


def parse_key(key: str) -> datetime.date:
    """Parse a YYYY-MM-DD civil day key, raising InvalidDate on bad input."""
    if not isinstance(key, str) or not _KEY_RE.match(key):
        raise InvalidDate(f"invalid date {key!r}, expected YYYY-MM-DD")
    try:
        return datetime.date.fromisoformat(key)
    except ValueError:
        raise InvalidDate(f"invalid calendar date {key!r}")


def key_for_instant(instant: datetime.datetime) -> str:
    return _as_utc(instant).astimezone(TZ).date().isoformat()


def today_key(now: Optional[datetime.datetime] = None) -> str:
    return key_for_instant(_as_utc(now))


def yesterday_key(now: Optional[datetime.datetime] = None) -> str:
    return shift_key(today_key(now), -1)


def shift_key(key: str, days: int) -> str:
    return (parse_key(key) + datetime.timedelta(days=days)).isoformat()


def _local_midnight(day: datetime.date) -> datetime.datetime:
    # is_dst=None would raise on ambiguous times; US midnight is never ambiguous
    local = TZ.localize(datetime.datetime(day.year, day.month, day.day), is_dst=None)
    return local.astimezone(pytz.utc)


def utc_range_for_day(key: str) -> Tuple[datetime.datetime, datetime.datetime]:
    """Half-open [start, end) UTC interval covering the civil day.

    The interval is 23 or 25 hours long on DST transition days.
    """
    day = parse_key(key)
    return _local_midnight(day), _local_midnight(day + datetime.timedelta(days=1))


def canonical_day_instant(key: str) -> datetime.datetime:
    """UTC instant of local midnight; the unique storage key of a puzzle day."""
    return utc_range_for_day(key)[0]


def to_storage(instant: datetime.datetime) -> datetime.datetime:
    # persisted datetimes are always aware UTC
    return _as_utc(instant)


def from_storage(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Aware UTC view of a column value; some drivers hand back naive UTC."""
    if value is None:
        return None
    return _as_utc(value)
