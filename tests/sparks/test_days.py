"""Tests for local-day helpers."""

from datetime import UTC, date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from incurio.sparks.days import as_utc, local_date, local_day_bounds

NEW_YORK = ZoneInfo("America/New_York")
TOKYO = ZoneInfo("Asia/Tokyo")


class TestAsUtc:
    def test_naive_is_taken_as_utc(self):
        result = as_utc(datetime(2026, 3, 14, 9, 0))
        assert result == datetime(2026, 3, 14, 9, 0, tzinfo=UTC)

    def test_aware_is_converted(self):
        plus_two = timezone(timedelta(hours=2))
        result = as_utc(datetime(2026, 3, 14, 9, 0, tzinfo=plus_two))
        assert result == datetime(2026, 3, 14, 7, 0, tzinfo=UTC)
        assert result.utcoffset() == timedelta(0)


class TestLocalDate:
    def test_ahead_of_utc_rolls_forward(self):
        moment = datetime(2026, 3, 14, 20, 0, tzinfo=UTC)
        assert local_date(moment, TOKYO) == date(2026, 3, 15)

    def test_behind_utc_rolls_back(self):
        moment = datetime(2026, 3, 14, 2, 0, tzinfo=UTC)
        assert local_date(moment, NEW_YORK) == date(2026, 3, 13)

    def test_utc_zone(self):
        moment = datetime(2026, 3, 14, 23, 59, tzinfo=UTC)
        assert local_date(moment, UTC) == date(2026, 3, 14)


class TestLocalDayBounds:
    def test_utc_day(self):
        start, end = local_day_bounds(date(2026, 3, 14), UTC)
        assert start == datetime(2026, 3, 14, tzinfo=UTC)
        assert end == datetime(2026, 3, 15, tzinfo=UTC)

    def test_bounds_are_utc(self):
        start, end = local_day_bounds(date(2026, 3, 14), TOKYO)
        assert start.utcoffset() == timedelta(0)
        assert end.utcoffset() == timedelta(0)

    def test_tokyo_midnight_is_previous_utc_day(self):
        start, end = local_day_bounds(date(2026, 3, 14), TOKYO)
        assert start == datetime(2026, 3, 13, 15, 0, tzinfo=UTC)
        assert end == datetime(2026, 3, 14, 15, 0, tzinfo=UTC)

    def test_spring_forward_day_is_23_hours(self):
        # US DST starts on 2026-03-08
        start, end = local_day_bounds(date(2026, 3, 8), NEW_YORK)
        assert start == datetime(2026, 3, 8, 5, 0, tzinfo=UTC)
        assert end == datetime(2026, 3, 9, 4, 0, tzinfo=UTC)
        assert end - start == timedelta(hours=23)

    def test_fall_back_day_is_25_hours(self):
        # US DST ends on 2026-11-01
        start, end = local_day_bounds(date(2026, 11, 1), NEW_YORK)
        assert end - start == timedelta(hours=25)

    def test_consecutive_days_tile_without_gaps(self):
        _, end_first = local_day_bounds(date(2026, 3, 7), NEW_YORK)
        start_second, _ = local_day_bounds(date(2026, 3, 8), NEW_YORK)
        assert end_first == start_second

    def test_moment_falls_inside_its_own_day(self):
        moment = datetime(2026, 3, 14, 14, 59, 59, tzinfo=UTC)
        day = local_date(moment, TOKYO)
        start, end = local_day_bounds(day, TOKYO)
        assert start <= moment < end
