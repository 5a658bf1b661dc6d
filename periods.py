from dataclasses import dataclass
from datetime import date
from typing import Optional

from errors import InvalidRange


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def month_start(d: date) -> date:
    return d.replace(day=1)


def month_end(d: date) -> date:
    return add_months(month_start(d), 1) - date.resolution


def add_months(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def trailing_months(end: date, count: int) -> list[date]:
    """First days of the ``count`` calendar months ending with ``end``'s month, oldest first."""
    last = month_start(end)
    return [add_months(last, offset) for offset in range(-(count - 1), 1)]


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if period == "all":
        return Period("all", date(1970, 1, 1), today)
    if period == "last_month":
        last_month_end = month_start(today) - date.resolution
        return Period("last_month", month_start(last_month_end), last_month_end)
    if period == "last_3_months":
        return Period(
            "last_3_months", add_months(month_start(today), -2), month_end(today)
        )
    if period == "custom":
        if not start or not end:
            raise InvalidRange("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise InvalidRange("Start date must be before end date")
        return Period("custom", start_date, end_date)

    return Period("this_month", month_start(today), month_end(today))
