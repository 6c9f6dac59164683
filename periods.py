from dataclasses import dataclass
from datetime import date


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def month_period(year: int, month: int) -> Period:
    first = date(year, month, 1)
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return Period(f"{year:04d}-{month:02d}", first, next_month - date.resolution)


def current_month(today: date) -> Period:
    return month_period(today.year, today.month)


def previous_month(today: date) -> Period:
    last_month_end = today.replace(day=1) - date.resolution
    return month_period(last_month_end.year, last_month_end.month)
