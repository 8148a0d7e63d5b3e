from datetime import datetime, timedelta, timezone

import pytest

from time_utils import format_clock, format_remaining, format_until, from_ms, parse_time_arg, to_ms


def _now() -> datetime:
    return datetime(2025, 1, 1, 6, 0, tzinfo=timezone.utc)


def test_parse_relative_offsets():
    assert parse_time_arg("+15m", now=_now()) == _now() + timedelta(minutes=15)
    assert parse_time_arg("+30s", now=_now()) == _now() + timedelta(seconds=30)
    assert parse_time_arg("+2h", now=_now()) == _now() + timedelta(hours=2)
    assert parse_time_arg("+5", now=_now()) == _now() + timedelta(minutes=5)


def test_parse_relative_end_counts_from_start():
    start = parse_time_arg("07:30", now=_now())
    end = parse_time_arg("+10m", now=_now(), after=start)
    assert end == datetime(2025, 1, 1, 7, 40, tzinfo=timezone.utc)


def test_parse_clock_time_same_day():
    result = parse_time_arg("7:30", now=_now())
    assert result == datetime(2025, 1, 1, 7, 30, tzinfo=timezone.utc)


def test_parse_clock_time_rolls_to_tomorrow():
    result = parse_time_arg("05:45", now=_now())
    assert result == datetime(2025, 1, 2, 5, 45, tzinfo=timezone.utc)


def test_parse_clock_end_before_start_rolls_over_midnight():
    start = parse_time_arg("23:50", now=_now())
    end = parse_time_arg("00:10", now=_now(), after=start)
    assert end == datetime(2025, 1, 2, 0, 10, tzinfo=timezone.utc)


def test_parse_iso_takes_timezone_of_now():
    result = parse_time_arg("2025-03-04T08:15:00", now=_now())
    assert result == datetime(2025, 3, 4, 8, 15, tzinfo=timezone.utc)


@pytest.mark.parametrize("text", ["", "tomorrow", "25:00", "7:61", "+m"])
def test_parse_rejects_garbage(text):
    with pytest.raises(ValueError):
        parse_time_arg(text, now=_now())


def test_millisecond_conversions():
    value = to_ms(_now())
    assert from_ms(value, timezone.utc) == _now()
    assert format_clock(value + 61_000, timezone.utc) == "06:01:01"


@pytest.mark.parametrize(
    "millis, expected",
    [(0, "Time's up!"), (-5, "Time's up!"), (999, "00:00"), (65_000, "01:05"), (3_725_000, "01:02:05")],
)
def test_format_remaining(millis, expected):
    assert format_remaining(millis) == expected


@pytest.mark.parametrize(
    "millis, expected",
    [(0, "Starting now"), (30_000, "Less than 1m"), (5 * 60_000, "5m"), (2 * 3_600_000 + 15 * 60_000, "2h 15m")],
)
def test_format_until(millis, expected):
    assert format_until(millis) == expected
