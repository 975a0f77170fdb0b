"""Pure folds that derive balances and budget actuals from ledger rows.

Nothing here touches the database: the services feed in grouped sums or
raw rows and get totals back, which keeps the arithmetic testable on its
own and guarantees every read recomputes from source rows.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from models import TransactionType, TransferDirection


@dataclass
class AccountTotals:
    income: int = 0
    expense: int = 0
    transfer_in: int = 0
    transfer_out: int = 0

    @property
    def transfer_net(self) -> int:
        return self.transfer_in - self.transfer_out

    def add(
        self,
        txn_type: TransactionType,
        direction: Optional[TransferDirection],
        amount_cents: int,
    ) -> None:
        if txn_type == TransactionType.income:
            self.income += amount_cents
        elif txn_type == TransactionType.expense:
            self.expense += amount_cents
        elif txn_type == TransactionType.transfer:
            if direction == TransferDirection.incoming:
                self.transfer_in += amount_cents
            elif direction == TransferDirection.outgoing:
                self.transfer_out += amount_cents
            elif amount_cents >= 0:
                # legacy rows without a direction carry it in the sign
                self.transfer_in += amount_cents
            else:
                self.transfer_out += abs(amount_cents)

    def balance(self, initial_balance_cents: int) -> int:
        return (
            initial_balance_cents
            + self.income
            + self.transfer_in
            - self.expense
            - self.transfer_out
        )


def fold_totals(
    rows: Iterable[tuple[TransactionType, Optional[TransferDirection], int]],
) -> AccountTotals:
    totals = AccountTotals()
    for txn_type, direction, amount_cents in rows:
        totals.add(txn_type, direction, int(amount_cents or 0))
    return totals


def fold_totals_by_account(
    rows: Iterable[tuple[int, TransactionType, Optional[TransferDirection], int]],
) -> dict[int, AccountTotals]:
    by_account: dict[int, AccountTotals] = defaultdict(AccountTotals)
    for account_id, txn_type, direction, amount_cents in rows:
        by_account[account_id].add(txn_type, direction, int(amount_cents or 0))
    return dict(by_account)


BudgetKey = tuple[int, int, int]


def fold_budget_actuals(
    rows: Iterable[tuple[Optional[int], datetime, int]],
) -> dict[BudgetKey, int]:
    """Sum expense rows per (category_id, year, month) of their UTC timestamp."""
    actuals: dict[BudgetKey, int] = defaultdict(int)
    for category_id, occurred_at, amount_cents in rows:
        if category_id is None:
            continue
        key = (category_id, occurred_at.year, occurred_at.month)
        actuals[key] += int(amount_cents or 0)
    return dict(actuals)
