"""Local calendar day helpers.

Sparks belong to the user's local day, but the store keeps UTC timestamps,
so every range query goes through :func:`local_day_bounds`.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta, tzinfo


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def as_utc(value: datetime) -> datetime:
    """Normalize to an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def local_date(moment: datetime, tz: tzinfo) -> date:
    """The calendar date of ``moment`` as seen in ``tz``."""
    return as_utc(moment).astimezone(tz).date()


def local_day_bounds(day: date, tz: tzinfo) -> tuple[datetime, datetime]:
    """Return the half-open UTC range ``[start, end)`` covering ``day`` in ``tz``.

    ``end`` is the next local midnight, so days that are 23 or 25 hours long
    around DST transitions are covered exactly.
    """
    start_local = datetime.combine(day, time.min, tzinfo=tz)
    end_local = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start_local.astimezone(UTC), end_local.astimezone(UTC)
