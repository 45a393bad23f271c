from dataclasses import dataclass

import prime_clock
from prime_ports import AllocationRecord, InvalidArgument, PrimeContext

DEFAULT = "default"
SINGLE = "single"
RANGE = "range"
DEFAULT_WINDOW_MONTHS = 3


@dataclass(frozen=True)
class MonthTotal:
    year: int
    month: int
    total: int


@dataclass(frozen=True)
class RevenueFilter:
    kind: str = DEFAULT
    start: tuple[int, int] | None = None
    end: tuple[int, int] | None = None

    @classmethod
    def single(cls, year: int, month: int) -> "RevenueFilter":
        _check_month(year, month)
        return cls(kind=SINGLE, start=(year, month), end=(year, month))

    @classmethod
    def between(cls, start: tuple[int, int], end: tuple[int, int]) -> "RevenueFilter":
        _check_month(*start)
        _check_month(*end)
        if start > end:
            raise InvalidArgument(f"range start {start} is after end {end}")
        return cls(kind=RANGE, start=start, end=end)

    def bounds(self, now: int) -> tuple[tuple[int, int], tuple[int, int]]:
        if self.kind == DEFAULT:
            first = prime_clock.year_month(now)
            return first, prime_clock.step_month(*first, DEFAULT_WINDOW_MONTHS - 1)
        return self.start, self.end


def _check_month(year: int, month: int):
    if not 1 <= month <= 12:
        raise InvalidArgument(f"month must be 1-12, got {month}")
    if year < 1:
        raise InvalidArgument(f"year must be positive, got {year}")


def aggregate(
    allocations: list[AllocationRecord],
    revenue_filter: RevenueFilter | None = None,
    now: int | None = None,
) -> list[MonthTotal]:
    """Sum allocations per (year, month), oldest first.

    The default window (this month and the next two) always reports all three
    months, zeros included. Single-month and range filters only report months
    that actually have allocations, so an empty list means "no data" rather
    than "zero revenue".
    """
    revenue_filter = revenue_filter or RevenueFilter()
    now = prime_clock.now_ms() if now is None else now
    start, end = revenue_filter.bounds(now)

    totals: dict[tuple[int, int], int] = {}
    if revenue_filter.kind == DEFAULT:
        for i in range(DEFAULT_WINDOW_MONTHS):
            totals[prime_clock.step_month(*start, i)] = 0
    for allocation in allocations:
        key = (allocation.year, allocation.month)
        if start <= key <= end:
            totals[key] = totals.get(key, 0) + allocation.amount
    return [MonthTotal(year=y, month=m, total=t) for (y, m), t in sorted(totals.items())]


def query_revenue(ctx: PrimeContext, revenue_filter: RevenueFilter | None = None, now: int | None = None) -> list[MonthTotal]:
    revenue_filter = revenue_filter or RevenueFilter()
    now = prime_clock.now_ms() if now is None else now
    start, end = revenue_filter.bounds(now)
    return aggregate(ctx.store.query_allocations(start, end), revenue_filter, now)


def format_revenue_report(totals: list[MonthTotal]) -> str:
    if not totals:
        return "No revenue data for that period."
    lines = ["**Prime revenue**"]
    for entry in totals:
        lines.append(f"- {entry.year:04d}-{entry.month:02d}: **{entry.total} GP**")
    lines.append(f"Total: **{sum(e.total for e in totals)} GP**")
    return "\n".join(lines)
