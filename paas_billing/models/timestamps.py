"""UTC time helpers shared by models and services.

Every datetime that crosses a module boundary is timezone-aware UTC. SQLite
hands back naive values, so anything read from the database goes through
``as_utc`` first.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Union

# Stand-ins for -infinity / +infinity on the time axis.
NEGATIVE_INFINITY = datetime.min.replace(tzinfo=timezone.utc)
INFINITY = datetime.max.replace(tzinfo=timezone.utc)
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """Parse RFC3339, ``YYYY-MM-DD`` or ``-infinity`` into an aware UTC datetime."""
    if isinstance(value, datetime):
        return as_utc(value)
    text = value.strip()
    if text == "-infinity":
        return NEGATIVE_INFINITY
    if text == "infinity":
        return INFINITY
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


def format_timestamp(value: datetime) -> str:
    value = as_utc(value)
    if value.microsecond:
        return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def is_month_boundary(value: datetime) -> bool:
    value = as_utc(value)
    return (value.day, value.hour, value.minute, value.second, value.microsecond) == (1, 0, 0, 0, 0)


def month_start(value: datetime) -> datetime:
    value = as_utc(value)
    return datetime(value.year, value.month, 1, tzinfo=timezone.utc)


def next_month(value: datetime) -> datetime:
    start = month_start(value)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def month_key(value: datetime) -> str:
    return as_utc(value).strftime("%Y-%m")


def parse_month_key(key: str) -> datetime:
    try:
        return datetime.strptime(key, "%Y-%m").replace(tzinfo=timezone.utc)
    except ValueError as exc:
        raise ValueError(f"invalid month '{key}' - expected format 2006-01") from exc


def seconds_between(start: datetime, stop: datetime) -> Decimal:
    """Exact length of ``[start, stop)`` in seconds."""
    delta: timedelta = stop - start
    micros = (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds
    return Decimal(micros) / Decimal(1_000_000)
