"""Tests for calendar-day helpers."""

from datetime import date, datetime, timedelta, timezone

import pytest

from catalogrank.core.time import (
    MISSING_AGE_DAYS,
    age_in_days,
    format_day_key,
    parse_day_key,
    today_in_timezone,
)


@pytest.mark.parametrize("key,expected", [
    ('2026-01-05', date(2026, 1, 5)),
    ('5-01-2026', date(2026, 1, 5)),
    ('25-12-2025', date(2025, 12, 25)),
    (' 2026-03-01 ', date(2026, 3, 1)),
    ('2026-02-30', None),
    ('31-02-2025', None),
    ('2026/01/05', None),
    ('', None),
    (20260105, None),
])
def test_parse_day_key(key, expected):
    assert parse_day_key(key) == expected


def test_format_day_key_sorts_chronologically():
    days = [date(2025, 12, 9), date(2026, 1, 10), date(2025, 1, 31)]
    assert sorted(format_day_key(day) for day in days) == [format_day_key(day) for day in sorted(days)]


def test_today_in_timezone():
    now = datetime(2026, 1, 1, 23, 30, tzinfo=timezone.utc)
    assert today_in_timezone('Europe/Paris', now) == date(2026, 1, 2)
    assert today_in_timezone('UTC', now) == date(2026, 1, 1)


def test_today_in_unknown_timezone_falls_back_to_utc():
    now = datetime(2026, 1, 1, 23, 30, tzinfo=timezone.utc)
    assert today_in_timezone('Mars/Olympus', now) == date(2026, 1, 1)


def test_age_in_days():
    now = datetime(2026, 1, 10, tzinfo=timezone.utc)

    assert age_in_days(now - timedelta(days=2), now) == pytest.approx(2.0)
    assert age_in_days(datetime(2026, 1, 9), now) == pytest.approx(1.0)
    assert age_in_days(now + timedelta(days=1), now) == 0.0
    assert age_in_days(None, now) == MISSING_AGE_DAYS
