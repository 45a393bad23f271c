from datetime import datetime, timezone

import pytest

from prime_clock import DAY_MS, add_months, remaining_days, step_month, to_datetime, to_epoch_ms, year_month


def ms(*args) -> int:
    return to_epoch_ms(datetime(*args, tzinfo=timezone.utc))


@pytest.mark.parametrize(
    "start,n,expected",
    [
        ((2024, 1), 1, (2024, 2)),
        ((2024, 12), 1, (2025, 1)),
        ((2024, 11), 14, (2026, 1)),
        ((2024, 1), 0, (2024, 1)),
    ],
)
def test_step_month_rolls_year(start, n, expected):
    assert step_month(*start, n) == expected


def test_add_months_is_calendar_aware():
    assert add_months(ms(2024, 11, 15, 8, 30), 3) == ms(2025, 2, 15, 8, 30)


def test_add_months_clamps_to_month_end():
    assert add_months(ms(2024, 1, 31), 1) == ms(2024, 2, 29)
    assert add_months(ms(2023, 1, 31), 1) == ms(2023, 2, 28)
    assert add_months(ms(2024, 8, 31), 1) == ms(2024, 9, 30)


def test_epoch_conversion_keeps_milliseconds():
    value = 1715774400123
    assert to_epoch_ms(to_datetime(value)) == value
    assert year_month(ms(2024, 5, 31, 23, 59)) == (2024, 5)


def test_remaining_days_rounds_up():
    now = ms(2024, 5, 15)
    assert remaining_days(now + 2 * DAY_MS, now) == 2
    assert remaining_days(now + 2 * DAY_MS + 1, now) == 3
    assert remaining_days(now - 1, now) == 0
