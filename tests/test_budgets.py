from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import Conflict, NotFound
from models import TransactionType
from schemas import AccountIn, BudgetIn, BudgetUpdate, CategoryIn, TransactionIn
from services import AccountService, BudgetService, CategoryService, TransactionService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def spend(session, account_id, category_id, amount, occurred_at, txn_type=None):
    return TransactionService(session, 1).create(
        TransactionIn(
            type=txn_type or TransactionType.expense,
            account_id=account_id,
            category_id=category_id,
            amount=Decimal(amount),
            occurred_at=occurred_at,
        )
    )


def seed(session):
    wallet = AccountService(session, 1).create(AccountIn(name="Wallet", type="cash"))
    food = CategoryService(session, 1).create(CategoryIn(name="Food"))
    spend(session, wallet.id, food.id, "40.00", datetime(2025, 3, 5, 10, 0))
    spend(session, wallet.id, food.id, "60.00", datetime(2025, 3, 31, 23, 59))
    spend(session, wallet.id, food.id, "1000.00", datetime(2025, 4, 1, 0, 0))
    spend(
        session,
        wallet.id,
        food.id,
        "30.00",
        datetime(2025, 3, 15),
        txn_type=TransactionType.income,
    )
    return wallet, food


def test_budget_actual_counts_expenses_in_month_only() -> None:
    session = make_session()
    wallet, food = seed(session)

    budget = BudgetService(session, 1).create(
        BudgetIn(category_id=food.id, year=2025, month=3, planned_amount=Decimal("150"))
    )

    assert budget.planned_amount == Decimal("150.00")
    assert budget.actual_amount == Decimal("100.00")
    assert budget.category_name == "Food"


def test_budget_list_batches_actuals_and_orders_newest_first() -> None:
    session = make_session()
    wallet, food = seed(session)
    transport = CategoryService(session, 1).create(CategoryIn(name="Transport"))
    budgets = BudgetService(session, 1)
    budgets.create(BudgetIn(category_id=food.id, year=2025, month=3, planned_amount=150))
    budgets.create(BudgetIn(category_id=food.id, year=2025, month=4, planned_amount=900))
    budgets.create(
        BudgetIn(category_id=transport.id, year=2025, month=3, planned_amount=50)
    )

    listed = budgets.list(year=2025)

    assert [(b.month, b.category_name) for b in listed] == [
        (4, "Food"),
        (3, "Food"),
        (3, "Transport"),
    ]
    assert [b.actual_amount for b in listed] == [
        Decimal("1000.00"),
        Decimal("100.00"),
        Decimal("0.00"),
    ]
    assert [b.month for b in budgets.list(year=2025, month=4)] == [4]
    assert budgets.list(year=2024) == []


def test_duplicate_budget_period_conflicts() -> None:
    session = make_session()
    wallet, food = seed(session)
    budgets = BudgetService(session, 1)
    budgets.create(BudgetIn(category_id=food.id, year=2025, month=3, planned_amount=1))

    with pytest.raises(Conflict):
        budgets.create(
            BudgetIn(category_id=food.id, year=2025, month=3, planned_amount=2)
        )


def test_budget_update_recomputes_actual() -> None:
    session = make_session()
    wallet, food = seed(session)
    budgets = BudgetService(session, 1)
    budget = budgets.create(
        BudgetIn(category_id=food.id, year=2025, month=3, planned_amount=1)
    )

    updated = budgets.update(
        budget.id, BudgetUpdate(month=4, planned_amount=Decimal("1200.50"))
    )

    assert updated.month == 4
    assert updated.planned_amount == Decimal("1200.50")
    assert updated.actual_amount == Decimal("1000.00")


def test_budget_is_scoped_to_owner() -> None:
    session = make_session()
    wallet, food = seed(session)
    budget = BudgetService(session, 1).create(
        BudgetIn(category_id=food.id, year=2025, month=3, planned_amount=1)
    )
    intruder = BudgetService(session, 2)

    with pytest.raises(NotFound):
        intruder.get(budget.id)
    with pytest.raises(NotFound):
        intruder.delete(budget.id)
    with pytest.raises(NotFound):
        intruder.create(
            BudgetIn(category_id=food.id, year=2025, month=5, planned_amount=1)
        )

    BudgetService(session, 1).delete(budget.id)
    with pytest.raises(NotFound):
        BudgetService(session, 1).get(budget.id)
