from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable


@dataclass(frozen=True)
class MonthWindow:
    year: int
    month: int
    start: datetime
    end: datetime


def to_utc_naive(moment: datetime) -> datetime:
    """Stored timestamps are naive UTC; aware inputs are shifted to UTC."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def month_window(year: int, month: int) -> MonthWindow:
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12")
    start = datetime(year, month, 1)
    if month == 12:
        end = datetime(year + 1, 1, 1)
    else:
        end = datetime(year, month + 1, 1)
    return MonthWindow(year=year, month=month, start=start, end=end)


def covering_window(periods: Iterable[tuple[int, int]]) -> tuple[datetime, datetime]:
    """Smallest [start, end) range holding every (year, month) given."""
    windows = [month_window(year, month) for year, month in periods]
    if not windows:
        raise ValueError("At least one month is required")
    return min(w.start for w in windows), max(w.end for w in windows)
