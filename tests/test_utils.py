from datetime import date, datetime, time, timezone

import pytest

from app.core.utils import (
    combine,
    format_range,
    iter_weekday_dates,
    parse_hhmm,
    shift,
    to_minutes,
    to_naive_local,
    to_time,
)


def test_parse_hhmm_accepts_seconds_and_single_digit_hours():
    assert parse_hhmm("09:30") == 570
    assert parse_hhmm("9:05") == 545
    assert parse_hhmm("23:59:00") == 1439


@pytest.mark.parametrize("value", ["24:00", "12:60", "noon", "12-30", ""])
def test_parse_hhmm_rejects_garbage(value):
    with pytest.raises(ValueError):
        parse_hhmm(value)


def test_to_minutes_and_back():
    assert to_minutes(time(10, 45)) == 645
    assert to_time(645) == time(10, 45)
    with pytest.raises(ValueError):
        to_time(24 * 60)


def test_shift_within_day():
    assert shift("09:00", 30) == "09:30"
    assert shift(time(10, 15), -75) == "09:00"


def test_shift_refuses_to_cross_midnight():
    with pytest.raises(ValueError):
        shift("23:30", 45)
    with pytest.raises(ValueError):
        shift("00:10", -15)


def test_combine_drops_seconds():
    assert combine(date(2030, 1, 14), time(9, 15, 42)) == datetime(2030, 1, 14, 9, 15)
    assert combine(date(2030, 1, 14), "18:00") == datetime(2030, 1, 14, 18, 0)


def test_format_range():
    assert format_range(time(9, 0), "09:30") == "09:00-09:30"


def test_iter_weekday_dates_covers_the_window():
    monday = date(2030, 1, 14)
    dates = list(iter_weekday_dates(["monday", "Wednesday"], monday, 2))
    assert dates == [
        date(2030, 1, 14),
        date(2030, 1, 16),
        date(2030, 1, 21),
        date(2030, 1, 23),
    ]


def test_iter_weekday_dates_is_lazy_and_restartable():
    monday = date(2030, 1, 14)
    first = iter_weekday_dates(["friday"], monday, 4)
    assert next(first) == date(2030, 1, 18)
    assert list(iter_weekday_dates(["friday"], monday, 4))[0] == date(2030, 1, 18)
    assert len(list(iter_weekday_dates(["friday"], monday, 4))) == 4


def test_iter_weekday_dates_empty_set():
    assert list(iter_weekday_dates([], date(2030, 1, 14), 4)) == []


def test_to_naive_local():
    naive = datetime(2030, 1, 14, 8, 0)
    assert to_naive_local(naive) is naive

    aware = datetime(2030, 1, 14, 8, 0, tzinfo=timezone.utc)
    converted = to_naive_local(aware)
    assert converted.tzinfo is None
    assert converted.astimezone(timezone.utc) == aware
