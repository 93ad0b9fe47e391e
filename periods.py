import calendar
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Optional

LEDGER_EPOCH = datetime(2000, 1, 1)


@dataclass(frozen=True)
class Period:
    slug: str
    start: datetime
    end: datetime


def month_start(year: int, month: int) -> date:
    return date(year, month, 1)


def month_end(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def month_window(year: int, month: int) -> Period:
    """First and last instant of a calendar month, both inclusive."""
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12")
    start = datetime.combine(month_start(year, month), time.min)
    end = datetime.combine(month_end(year, month), time.max)
    return Period(f"{year:04d}-{month:02d}", start, end)


def resolve_period(
    start: Optional[datetime],
    end: Optional[datetime],
    *,
    now: Optional[datetime] = None,
) -> Period:
    now = now or datetime.utcnow()
    if start is None and end is None:
        return Period("all", LEDGER_EPOCH, now)
    if start is None or end is None:
        raise ValueError("Date range requires both start and end")
    if start > end:
        raise ValueError("Start date must be before end date")
    return Period("custom", start, end)
