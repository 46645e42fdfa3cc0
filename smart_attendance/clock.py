"""Time-window helpers shared by every session component.

Nothing outside the HTTP layer reads the wall clock; callers pass ``now``
explicitly so expiry decisions are reproducible in tests.
"""
from datetime import datetime, timedelta, timezone

ZERO = timedelta(0)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def deadline(start: datetime, seconds: float) -> datetime:
    return start + timedelta(seconds=seconds)


def is_expired(now: datetime, expires_at: datetime) -> bool:
    return now > expires_at


def remaining(now: datetime, expires_at: datetime) -> timedelta:
    left = expires_at - now
    return left if left > ZERO else ZERO


def isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
