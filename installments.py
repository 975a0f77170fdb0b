from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from money import AmountLike, from_cents, to_cents


@dataclass(frozen=True)
class Installment:
    amount: Decimal
    occurred_at: datetime
    installment_number: int

    @property
    def amount_cents(self) -> int:
        return to_cents(self.amount)


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: datetime, months: int) -> datetime:
    """Calendar-month addition; the day snaps to the end of shorter months."""
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return base.replace(year=year, month=month, day=day)


def split_cents(total_cents: int, count: int) -> list[int]:
    count = max(1, count)
    base = total_cents // count
    remainder = total_cents - base * count
    # earliest installments absorb the leftover cents
    return [base + (1 if index < remainder else 0) for index in range(count)]


def build_schedule(
    total: AmountLike, count: int, start: datetime
) -> list[Installment]:
    parts = split_cents(to_cents(total), count)
    return [
        Installment(
            amount=from_cents(cents),
            occurred_at=add_months(start, index),
            installment_number=index + 1,
        )
        for index, cents in enumerate(parts)
    ]
