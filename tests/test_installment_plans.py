from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import Conflict
from models import Transaction, TransactionGroupType, TransactionType
from schemas import AccountIn, CategoryIn, TransactionIn, TransactionUpdate
from services import AccountService, CategoryService, TransactionService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def setup_ledger(session):
    card = AccountService(session, 1).create(AccountIn(name="Card", type="credit"))
    gadgets = CategoryService(session, 1).create(CategoryIn(name="Gadgets"))
    return card, gadgets


def plan_rows(session, group_id: str) -> list[Transaction]:
    return session.scalars(
        select(Transaction)
        .where(Transaction.group_id == group_id)
        .order_by(Transaction.installment_number)
    ).all()


def test_installment_plan_splits_amount_and_dates() -> None:
    session = make_session()
    card, gadgets = setup_ledger(session)

    view = TransactionService(session, 1).create(
        TransactionIn(
            type=TransactionType.expense,
            account_id=card.id,
            category_id=gadgets.id,
            amount=Decimal("100.00"),
            occurred_at=datetime(2025, 1, 31, 15, 0),
            installments_total=3,
            tags=["Laptop"],
        )
    )

    assert view.group_type == TransactionGroupType.installment
    assert view.installment_number == 1
    assert view.amount == Decimal("33.34")

    rows = plan_rows(session, view.group_id)
    assert [r.amount_cents for r in rows] == [3334, 3333, 3333]
    assert [r.occurred_at for r in rows] == [
        datetime(2025, 1, 31, 15, 0),
        datetime(2025, 2, 28, 15, 0),
        datetime(2025, 3, 31, 15, 0),
    ]
    assert all(r.installments_total == 3 for r in rows)
    assert all(r.category_id == gadgets.id for r in rows)
    assert AccountService(session, 1).get(card.id).balance == Decimal("-100.00")


def test_single_transaction_has_no_group() -> None:
    session = make_session()
    card, gadgets = setup_ledger(session)

    view = TransactionService(session, 1).create(
        TransactionIn(
            type=TransactionType.expense,
            account_id=card.id,
            category_id=gadgets.id,
            amount=Decimal("19.99"),
            occurred_at=datetime(2025, 2, 1, tzinfo=timezone(timedelta(hours=2))),
            installments_total=1,
        )
    )

    assert view.group_id is None
    assert view.group_type is None
    assert view.occurred_at == datetime(2025, 1, 31, 22, 0)


def test_installment_plan_rejects_later_installment_number() -> None:
    session = make_session()
    card, gadgets = setup_ledger(session)

    with pytest.raises(Conflict):
        TransactionService(session, 1).create(
            TransactionIn(
                type=TransactionType.expense,
                account_id=card.id,
                amount=Decimal("90.00"),
                occurred_at=datetime(2025, 1, 1),
                installments_total=3,
                installment_number=2,
            )
        )
    assert session.scalars(select(Transaction)).all() == []


def test_installment_rows_are_edited_one_at_a_time() -> None:
    session = make_session()
    card, gadgets = setup_ledger(session)
    service = TransactionService(session, 1)
    view = service.create(
        TransactionIn(
            type=TransactionType.expense,
            account_id=card.id,
            amount=Decimal("90.00"),
            occurred_at=datetime(2025, 1, 1),
            installments_total=3,
            notes="Phone",
        )
    )
    second = plan_rows(session, view.group_id)[1]

    updated = service.update(
        second.id, TransactionUpdate(amount=Decimal("35.00"), notes="Phone, repriced")
    )

    assert updated.amount == Decimal("35.00")
    rows = plan_rows(session, view.group_id)
    assert [r.amount_cents for r in rows] == [3000, 3500, 3000]
    assert [r.notes for r in rows] == ["Phone", "Phone, repriced", "Phone"]


def test_deleting_installment_removes_only_that_row() -> None:
    session = make_session()
    card, gadgets = setup_ledger(session)
    service = TransactionService(session, 1)
    view = service.create(
        TransactionIn(
            type=TransactionType.expense,
            account_id=card.id,
            amount=Decimal("90.00"),
            occurred_at=datetime(2025, 1, 1),
            installments_total=3,
        )
    )

    service.delete(view.id)

    rows = plan_rows(session, view.group_id)
    assert [r.installment_number for r in rows] == [2, 3]
    assert AccountService(session, 1).get(card.id).balance == Decimal("-60.00")


def test_non_transfer_update_rejects_zero_amount() -> None:
    session = make_session()
    card, gadgets = setup_ledger(session)
    service = TransactionService(session, 1)
    view = service.create(
        TransactionIn(
            type=TransactionType.income,
            account_id=card.id,
            amount=Decimal("10.00"),
            occurred_at=datetime(2025, 1, 1),
        )
    )

    with pytest.raises(Conflict):
        service.update(view.id, TransactionUpdate(amount=Decimal("0.00")))
    assert service.get(view.id).amount == Decimal("10.00")


def test_installment_plan_needs_a_cent_per_installment() -> None:
    session = make_session()
    card, gadgets = setup_ledger(session)
    service = TransactionService(session, 1)

    with pytest.raises(Conflict):
        service.create(
            TransactionIn(
                type=TransactionType.expense,
                account_id=card.id,
                amount=Decimal("0.01"),
                occurred_at=datetime(2025, 1, 1),
                installments_total=3,
            )
        )
    assert session.scalars(select(Transaction)).all() == []

    view = service.create(
        TransactionIn(
            type=TransactionType.expense,
            account_id=card.id,
            amount=Decimal("0.03"),
            occurred_at=datetime(2025, 1, 1),
            installments_total=3,
        )
    )
    assert [r.amount_cents for r in plan_rows(session, view.group_id)] == [1, 1, 1]


def test_attachment_url_must_be_http_url() -> None:
    session = make_session()
    card, gadgets = setup_ledger(session)

    with pytest.raises(ValidationError):
        TransactionIn(
            type=TransactionType.expense,
            account_id=card.id,
            amount=Decimal("5.00"),
            occurred_at=datetime(2025, 1, 1),
            attachment_url="not a url",
        )
    with pytest.raises(ValidationError):
        TransactionUpdate(attachment_url="ftp://files.example.com/receipt.pdf")

    view = TransactionService(session, 1).create(
        TransactionIn(
            type=TransactionType.expense,
            account_id=card.id,
            amount=Decimal("5.00"),
            occurred_at=datetime(2025, 1, 1),
            attachment_url="https://files.example.com/receipt.pdf",
        )
    )
    assert view.attachment_url == "https://files.example.com/receipt.pdf"
