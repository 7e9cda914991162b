"""UTC timestamp helpers.

Timestamps are persisted as fixed-width ISO-8601 strings (naive UTC, always
with microseconds) so that string comparison in SQL orders them correctly.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_iso(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


def now_iso() -> str:
    return to_iso(utcnow())
