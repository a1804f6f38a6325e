"""
clock.py

All timestamps inside the core are naive UTC datetimes, so they compare the
same way on Postgres and SQLite.
"""

import datetime

import pytz


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(pytz.UTC).replace(tzinfo=None)


def to_utc(value) -> datetime.datetime:
    """Normalise a datetime (or ISO string) to naive UTC."""
    if isinstance(value, str):
        value = datetime.datetime.fromisoformat(value)
    elif isinstance(value, datetime.date) and not isinstance(value, datetime.datetime):
        value = datetime.datetime(value.year, value.month, value.day)
    if value.tzinfo is None:
        return value
    return value.astimezone(pytz.UTC).replace(tzinfo=None)
