"""Civil-day boundaries in an IANA timezone, expressed as UTC instants."""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo


def today_in_tz(tz: str, *, now: datetime | None = None) -> date:
    """Today's calendar date in the given timezone."""

    current = now or datetime.now(tz=UTC)
    return current.astimezone(ZoneInfo(tz)).date()


def date_range_in_tz(day: date, tz: str) -> tuple[datetime, datetime]:
    """Half-open UTC range ``[start, end)`` covering ``day`` in ``tz``.

    Each boundary is resolved with its own UTC offset, so days that contain a
    DST transition are 23 or 25 hours long.
    """

    zone = ZoneInfo(tz)
    start = datetime.combine(day, time.min, tzinfo=zone)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=zone)
    return start.astimezone(UTC), end.astimezone(UTC)


def parse_day(value: str) -> date:
    """Parse a ``YYYY-MM-DD`` string."""

    try:
        return date.fromisoformat(value)
    except ValueError as error:
        raise ValueError(f"Expected date in YYYY-MM-DD format, got {value!r}") from error
