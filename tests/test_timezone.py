from __future__ import annotations

from datetime import UTC, date, datetime

import allure
import pytest

from flowmate.timezone import date_range_in_tz, parse_day, today_in_tz

pytestmark = [
    allure.epic("Execution Runtime"),
    allure.feature("Budget Control"),
]


def test_utc_day_range_is_midnight_to_midnight() -> None:
    start, end = date_range_in_tz(date(2026, 3, 1), "UTC")

    assert start == datetime(2026, 3, 1, tzinfo=UTC)
    assert end == datetime(2026, 3, 2, tzinfo=UTC)


def test_day_range_uses_zone_offset() -> None:
    start, end = date_range_in_tz(date(2026, 1, 15), "Asia/Tokyo")

    assert start == datetime(2026, 1, 14, 15, tzinfo=UTC)
    assert end == datetime(2026, 1, 15, 15, tzinfo=UTC)


def test_dst_transition_day_is_23_hours() -> None:
    start, end = date_range_in_tz(date(2026, 3, 8), "America/New_York")

    assert (end - start).total_seconds() == 23 * 3600


def test_today_in_tz_crosses_date_line() -> None:
    now = datetime(2026, 5, 1, 20, 0, tzinfo=UTC)

    assert today_in_tz("UTC", now=now) == date(2026, 5, 1)
    assert today_in_tz("Asia/Tokyo", now=now) == date(2026, 5, 2)


def test_parse_day_rejects_bad_format() -> None:
    assert parse_day("2026-02-03") == date(2026, 2, 3)
    with pytest.raises(ValueError, match="YYYY-MM-DD"):
        parse_day("03/02/2026")
