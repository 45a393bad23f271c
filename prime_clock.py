import calendar
import math
from datetime import datetime, timedelta, timezone

DAY_MS = 24 * 60 * 60 * 1000
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def now_ms() -> int:
    return to_epoch_ms(datetime.now(timezone.utc))


def to_datetime(epoch_ms: int) -> datetime:
    return EPOCH + timedelta(milliseconds=epoch_ms)


def to_epoch_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - EPOCH) // timedelta(milliseconds=1)


def add_days(epoch_ms: int, days: int) -> int:
    return epoch_ms + days * DAY_MS


def step_month(year: int, month: int, n: int) -> tuple[int, int]:
    """Move (year, month) by n calendar months, rolling the year at 12 -> 1."""
    index = year * 12 + (month - 1) + n
    return index // 12, index % 12 + 1


def add_months(epoch_ms: int, months: int) -> int:
    """Add calendar months in UTC, clamping the day to the target month's length."""
    dt = to_datetime(epoch_ms)
    year, month = step_month(dt.year, dt.month, months)
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return to_epoch_ms(dt.replace(year=year, month=month, day=day))


def year_month(epoch_ms: int) -> tuple[int, int]:
    dt = to_datetime(epoch_ms)
    return dt.year, dt.month


def remaining_days(expiry_ms: int, now: int) -> int:
    # rounded up, same as the backup sheet's "Remaining Days" column
    return math.ceil((expiry_ms - now) / DAY_MS)


def fmt_expiry(epoch_ms: int) -> str:
    return to_datetime(epoch_ms).strftime("%Y-%m-%d %H:%M UTC")
